from __future__ import annotations

from urllib.parse import urlparse

DEFAULT_PORTS = {"http": "80", "https": "443"}
FETCHABLE_SCHEMES = {"https"}
INSECURE_FETCHABLE_SCHEMES = {"http", "https"}


def uri_authority(raw_uri: str | None) -> str | None:
    if not raw_uri or not isinstance(raw_uri, str):
        return None
    try:
        parsed = urlparse(raw_uri.strip())
        port = parsed.port
    except ValueError:
        return None

    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").rstrip(".")
    if not scheme or not host:
        return None

    if port is None or DEFAULT_PORTS.get(scheme) == str(port):
        return host
    return f"{host}:{port}"


def same_authority(base_uri: str | None, comparison_uri: str | None) -> bool:
    base = uri_authority(base_uri)
    comparison = uri_authority(comparison_uri)
    if base is None or comparison is None:
        return False
    return base == comparison


def is_fetchable_uri(raw_uri: str | None, *, allow_insecure: bool = False) -> bool:
    if not raw_uri or not isinstance(raw_uri, str):
        return False
    try:
        parsed = urlparse(raw_uri.strip())
    except ValueError:
        return False
    schemes = INSECURE_FETCHABLE_SCHEMES if allow_insecure else FETCHABLE_SCHEMES
    return parsed.scheme.lower() in schemes and bool(parsed.hostname)


def uri_path_segments(raw_uri: str) -> list[str]:
    parsed = urlparse(raw_uri.strip())
    return [segment for segment in parsed.path.split("/") if segment]
