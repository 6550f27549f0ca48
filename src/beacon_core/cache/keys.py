"""Deterministic cache keys derived from the logical request shape."""

from __future__ import annotations

import json

_FNV_OFFSET_BASIS = 0x811C9DC5
_FNV_PRIME = 0x01000193


def serialize_body(body: object) -> str:
    """Serialize a request body so equal payloads produce equal text."""
    if body is None:
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        return body
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def build_cache_key(method: str, url: str, body: object = None) -> str:
    """Return ``METHOD:url:body``, for example ``GET:/risks:{}``."""
    return f"{method.upper()}:{url}:{serialize_body(body)}"


def fnv1a_32(text: str) -> str:
    """Return the 32-bit FNV-1a hash of ``text`` as lowercase hex."""
    value = _FNV_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return f"{value:x}"


def hashed_cache_key(method: str, url: str, body: object = None) -> str:
    """Return a compact hashed form of ``build_cache_key``."""
    return fnv1a_32(build_cache_key(method, url, body))
