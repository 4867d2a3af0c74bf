"""Scoped port forwards to pods inside the cluster.

A ``PortForward`` listens on a local port and relays every accepted connection
to a pod port through the Kubernetes API. It runs on background threads until
its cancel event is set; ``open_port_forward`` ties that lifetime to a ``with``
block so the forward is released on every exit path.
"""

import select
import socket
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from kubernetes.client.rest import ApiException
from kubernetes.stream import portforward

from cluster_provisioner.exceptions import TunnelError
from cluster_provisioner.logging_config import get_logger

logger = get_logger(__name__)

_ACCEPT_TIMEOUT = 0.5
_BUFFER_SIZE = 65536


def resolve_pod(core_api, pod: str, namespace: str) -> str:
    """Return a pod name for ``pod``, which is either a name or a ``key=value`` selector.

    Raises:
        TunnelError: If no running pod matches the selector
    """
    if "=" not in pod:
        return pod
    try:
        pods = core_api.list_namespaced_pod(namespace, label_selector=pod)
    except ApiException as e:
        raise TunnelError(f"Failed to list pods for selector {pod} in {namespace}: {e.reason}")
    for item in pods.items:
        if item.status and item.status.phase == "Running":
            return item.metadata.name
    raise TunnelError(f"No running pod matches {pod} in namespace {namespace}")


class PortForward:
    """A local-to-pod port forward with an explicit cancel signal."""

    def __init__(self, core_api, pod_name: str, namespace: str, local_port: int, remote_port: int):
        self.core_api = core_api
        self.pod_name = pod_name
        self.namespace = namespace
        self.local_port = local_port
        self.remote_port = remote_port
        self.stop_event = threading.Event()
        self._server: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def endpoint(self) -> str:
        return f"{self.namespace}/{self.pod_name}:{self.remote_port}"

    @property
    def local_address(self) -> str:
        return f"127.0.0.1:{self.local_port}"

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> "PortForward":
        """Bind the local port and start forwarding in the background.

        Raises:
            TunnelError: If the local port cannot be bound
        """
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server.bind(("127.0.0.1", self.local_port))
        except OSError as e:
            server.close()
            raise TunnelError(
                f"Cannot listen on 127.0.0.1:{self.local_port} for {self.endpoint}: {e}",
                "Another process may be using the port; stop it and retry",
            )
        server.listen()
        server.settimeout(_ACCEPT_TIMEOUT)
        # Port 0 asks the OS for a free port
        self.local_port = server.getsockname()[1]
        self._server = server

        self._accept_thread = threading.Thread(
            target=self._serve, name=f"port-forward-{self.pod_name}", daemon=True
        )
        self._accept_thread.start()
        logger.info(f"Port forward opened: {self.local_address} -> {self.endpoint}")
        return self

    def close(self) -> None:
        """Cancel the forward. Safe to call more than once."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self.stop_event.set()
        if self._server is not None:
            self._server.close()
        if self._accept_thread is not None and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(timeout=5)
        logger.info(f"Port forward closed: {self.local_address} -> {self.endpoint}")

    def __enter__(self) -> "PortForward":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _serve(self) -> None:
        while not self.stop_event.is_set():
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                # Listener closed by close()
                break
            threading.Thread(target=self._relay, args=(conn,), daemon=True).start()

    def _relay(self, conn: socket.socket) -> None:
        forward = None
        remote = None
        try:
            forward = portforward(
                self.core_api.connect_get_namespaced_pod_portforward,
                self.pod_name,
                self.namespace,
                ports=str(self.remote_port),
            )
            remote = forward.socket(self.remote_port)
            remote.setblocking(True)
            peers = {conn: remote, remote: conn}
            while not self.stop_event.is_set():
                readable, _, _ = select.select(list(peers), [], [], _ACCEPT_TIMEOUT)
                for sock in readable:
                    data = sock.recv(_BUFFER_SIZE)
                    if not data:
                        return
                    peers[sock].sendall(data)
        except ApiException as e:
            logger.warning(f"Port forward to {self.endpoint} failed: {e.reason}")
        except OSError as e:
            logger.debug(f"Port forward connection to {self.endpoint} ended: {e}")
        finally:
            conn.close()
            if remote is not None:
                remote.close()
            if forward is not None:
                forward.close()


@contextmanager
def open_port_forward(
    core_api, pod: str, namespace: str, local_port: int, remote_port: int
) -> Iterator[PortForward]:
    """Open a port forward for the duration of a ``with`` block.

    Args:
        core_api: CoreV1Api client for the target cluster
        pod: Pod name or ``key=value`` label selector
        namespace: Pod namespace
        local_port: Local port to listen on (0 picks a free port)
        remote_port: Pod port to forward to

    Yields:
        The started PortForward

    Raises:
        TunnelError: If the pod cannot be resolved or the port cannot be bound
    """
    pod_name = resolve_pod(core_api, pod, namespace)
    tunnel = PortForward(core_api, pod_name, namespace, local_port, remote_port).start()
    try:
        yield tunnel
    finally:
        tunnel.close()
