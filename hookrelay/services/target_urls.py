"""Outbound target URL policy for tenant-supplied webhook endpoints."""

import ipaddress
from urllib.parse import urlsplit

MAX_URL_LENGTH = 2048
ALLOWED_SCHEMES = ("http", "https")
_LOCAL_HOSTNAMES = ("localhost", "localhost.localdomain")


class TargetUrlError(ValueError):
    """Raised when a webhook target URL is malformed or not allowed."""


def _is_internal_host(host: str) -> bool:
    if host in _LOCAL_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


def validate_target_url(url: str, allow_private: bool = False) -> str:
    """Return ``url`` stripped if it is an acceptable absolute http(s) target.

    Hostnames are not resolved; only literal internal addresses and
    ``localhost`` are rejected when ``allow_private`` is off.
    """
    if not isinstance(url, str):
        raise TargetUrlError("URL must be a string")
    url = url.strip()
    if not url:
        raise TargetUrlError("URL is required")
    if len(url) > MAX_URL_LENGTH:
        raise TargetUrlError(f"URL must be at most {MAX_URL_LENGTH} characters")

    try:
        parts = urlsplit(url)
        host = parts.hostname
        parts.port  # raises on a malformed port
    except ValueError as exc:
        raise TargetUrlError(f"Malformed URL: {exc}") from exc

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise TargetUrlError("URL scheme must be http or https")
    if not host:
        raise TargetUrlError("URL must include a host")
    if parts.username or parts.password:
        raise TargetUrlError("URL must not embed credentials")
    if not allow_private and _is_internal_host(host.lower()):
        raise TargetUrlError(f"Target host {host} is not allowed")
    return url
