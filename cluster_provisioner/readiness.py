"""Bounded-timeout readiness polling.

``wait_until`` polls an arbitrary predicate until it returns a truthy value or
the timeout elapses. The Kubernetes helpers built on it cover the readiness
checks the provisioning pipeline blocks on: the cluster API answering, a
deployment rolling out, and a pod reaching the Running phase.
"""

import math
import time
from collections.abc import Callable
from typing import Any, TypeVar

import urllib3
from kubernetes.client.rest import ApiException
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from cluster_provisioner.exceptions import ReadinessTimeoutError
from cluster_provisioner.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL = 5.0

# Errors that mean "not reachable yet" while a cluster or workload comes up
TRANSIENT_API_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)


def wait_until(
    check: Callable[[], T],
    description: str,
    timeout: float,
    interval: float = DEFAULT_POLL_INTERVAL,
    retry_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Poll ``check`` until it returns a truthy value.

    Args:
        check: Predicate returning a falsy value while not ready
        description: What is being waited for, used in logs and errors
        timeout: Seconds to wait before giving up
        interval: Seconds between polls
        retry_on: Exception types treated as "not ready yet"
        sleep: Sleep function, replaceable in tests

    Returns:
        The first truthy value returned by ``check``

    Raises:
        ReadinessTimeoutError: If ``check`` never succeeds within the timeout
    """
    max_attempts = max(1, math.ceil(timeout / interval)) + 1
    retry = retry_if_result(lambda result: not result)
    if retry_on:
        retry = retry | retry_if_exception_type(retry_on)

    logger.info(f"Waiting up to {timeout}s for {description}")
    try:
        for attempt in Retrying(
            stop=stop_after_delay(timeout) | stop_after_attempt(max_attempts),
            wait=wait_fixed(interval),
            retry=retry,
            sleep=sleep,
        ):
            with attempt:
                result = check()
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(result)
    except RetryError as e:
        last = e.last_attempt
        detail = None
        if last.failed:
            detail = f"Last error: {last.exception()}"
        logger.error(f"Timed out after {timeout}s waiting for {description}")
        raise ReadinessTimeoutError(
            f"timed out after {timeout}s waiting for {description}", detail
        ) from None

    logger.info(f"{description} is ready")
    return result


def wait_for_cluster_api(core_api, timeout: float, interval: float = DEFAULT_POLL_INTERVAL, **kwargs):
    """Wait until the cluster API server answers a namespace list."""

    def _check():
        return core_api.list_namespace(limit=1) is not None

    return wait_until(
        _check,
        "cluster API to become reachable",
        timeout,
        interval,
        retry_on=TRANSIENT_API_ERRORS,
        **kwargs,
    )


def find_deployment(
    apps_api,
    label_key: str,
    label_value: str,
    namespace: str,
    timeout: float,
    interval: float = DEFAULT_POLL_INTERVAL,
    **kwargs,
):
    """Wait for a deployment matching ``label_key=label_value`` to exist and return it."""

    def _check():
        deployments = apps_api.list_namespaced_deployment(
            namespace, label_selector=f"{label_key}={label_value}"
        )
        return deployments.items[0] if deployments.items else None

    return wait_until(
        _check,
        f"deployment with label {label_key}={label_value} in namespace {namespace}",
        timeout,
        interval,
        retry_on=TRANSIENT_API_ERRORS,
        **kwargs,
    )


def deployment_is_ready(deployment) -> bool:
    """Return True when every desired replica of ``deployment`` is ready and current."""
    desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    status = deployment.status
    if status is None:
        return False
    generation = deployment.metadata.generation or 0
    if (status.observed_generation or 0) < generation:
        return False
    return (status.ready_replicas or 0) >= desired and (status.updated_replicas or 0) >= desired


def wait_for_deployment_ready(
    apps_api, deployment, timeout: float, interval: float = DEFAULT_POLL_INTERVAL, **kwargs
):
    """Wait for ``deployment`` to finish rolling out and return its latest state."""
    name = deployment.metadata.name
    namespace = deployment.metadata.namespace

    def _check():
        current = apps_api.read_namespaced_deployment_status(name, namespace)
        return current if deployment_is_ready(current) else None

    return wait_until(
        _check,
        f"deployment {namespace}/{name} to become ready",
        timeout,
        interval,
        retry_on=TRANSIENT_API_ERRORS,
        **kwargs,
    )


def wait_for_pod_running(
    core_api,
    namespace: str,
    label_selector: str,
    timeout: float,
    interval: float = DEFAULT_POLL_INTERVAL,
    **kwargs,
):
    """Wait for a pod matching ``label_selector`` to reach the Running phase and return it."""

    def _check():
        pods = core_api.list_namespaced_pod(namespace, label_selector=label_selector)
        for pod in pods.items:
            if pod.status and pod.status.phase == "Running":
                return pod
        return None

    return wait_until(
        _check,
        f"pod with label {label_selector} in namespace {namespace} to be running",
        timeout,
        interval,
        retry_on=TRANSIENT_API_ERRORS,
        **kwargs,
    )
