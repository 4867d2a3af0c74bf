"""DNS lookups over HTTPS, independent of the local resolver's cache."""

import requests

from cluster_provisioner.logging_config import get_logger

logger = get_logger(__name__)

DOH_RESOLVER_URL = "https://dns.google/resolve"
TXT_RECORD_TYPE = 16


def resolve_txt(name: str, session: requests.Session | None = None, resolver_url: str = DOH_RESOLVER_URL) -> list[str]:
    """Return the TXT values published for ``name``, or an empty list.

    Lookup failures are reported as "no records" so callers can poll.
    """
    session = session or requests.Session()
    try:
        response = session.get(
            resolver_url,
            params={"name": name, "type": "TXT"},
            headers={"Accept": "application/dns-json"},
            timeout=10,
        )
    except requests.RequestException as e:
        logger.debug(f"TXT lookup for {name} failed: {e}")
        return []
    if response.status_code != 200:
        logger.debug(f"TXT lookup for {name} returned HTTP {response.status_code}")
        return []

    try:
        answers = response.json().get("Answer", [])
    except ValueError as e:
        logger.debug(f"TXT lookup for {name} returned a non-JSON reply: {e}")
        return []
    return [a["data"].strip('"') for a in answers if a.get("type") == TXT_RECORD_TYPE]
