"""
Request fingerprints for deduplication.
"""
import hashlib
import json
from typing import Any, Iterable, Mapping, Optional

from .types import RequestDescriptor

_SEPARATOR = b"\x00"


def normalize_payload(value: Any) -> bytes:
    """Serialize params/body so that key order does not matter."""
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str).encode()


def select_headers(
    headers: Optional[Mapping[str, str]],
    header_keys: Iterable[str],
) -> dict:
    """Pick the headers that take part in the fingerprint (case-insensitive)."""
    if not headers:
        return {}
    wanted = {key.lower() for key in header_keys}
    return {k.lower(): v for k, v in headers.items() if k.lower() in wanted}


def generate_fingerprint(
    descriptor: RequestDescriptor,
    header_keys: Iterable[str] = (),
) -> str:
    """
    Generate a deterministic SHA-256 fingerprint for a request.

    Covers method, target, normalized params and body, and the headers named
    in `header_keys`. Other headers (e.g. credentials) are ignored.

    Args:
        descriptor: The request
        header_keys: Header names that distinguish otherwise equal requests

    Returns:
        Hex digest
    """
    hasher = hashlib.sha256()
    hasher.update(descriptor.method.upper().encode())
    hasher.update(_SEPARATOR)
    hasher.update(descriptor.target.encode())
    hasher.update(_SEPARATOR)
    hasher.update(normalize_payload(descriptor.params))
    hasher.update(_SEPARATOR)
    hasher.update(normalize_payload(descriptor.body))

    selected = select_headers(descriptor.headers, header_keys)
    if selected:
        hasher.update(_SEPARATOR)
        sorted_headers = "|".join(f"{k}:{v}" for k, v in sorted(selected.items()))
        hasher.update(sorted_headers.encode())

    return hasher.hexdigest()
