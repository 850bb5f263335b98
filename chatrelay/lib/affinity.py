"""
Thread -> worker affinity.

Every rendered answer ends with a marker ``_ref:<conversationId>:<parentMessageId>:<workerId>_``.
On a follow-up we read the thread back, newest first, and route to the worker
named by the first marker we can parse. The replier also keeps a copy of the
latest marker per thread in the store so an edited or truncated thread still
finds its worker.
"""

from __future__ import annotations

import re
from typing import Iterable, NamedTuple

from chatrelay.lib.errors import MalformedAffinity

DEFAULT_TTL_SECONDS = 86400

# Tail-anchored: the marker must be the last thing in the message.
_MARKER_RE = re.compile(r"_ref:([^\s:]+):([^\s:]+):([^\s:]+)_\s*\Z")
_TOKEN_RE = re.compile(r"[^\s:]+")


class AffinityMarker(NamedTuple):
    conversation_id: str
    parent_message_id: str
    worker_id: str


def encode_marker(conversation_id: str, parent_message_id: str, worker_id: str) -> str:
    """
    ``_ref:<conversation>:<parent>:<worker>_``. Each token must be non-empty
    and free of whitespace and ``:``; those are the only triples
    ``decode_marker`` gives back unchanged, anything else raises ValueError.
    Backend ids (UUIDs) and worker ids (hex) always qualify.
    """
    for name, token in (
        ("conversation_id", conversation_id),
        ("parent_message_id", parent_message_id),
        ("worker_id", worker_id),
    ):
        if not isinstance(token, str) or not _TOKEN_RE.fullmatch(token):
            raise ValueError(f"{name} cannot be embedded in a marker: {token!r}")
    return f"_ref:{conversation_id}:{parent_message_id}:{worker_id}_"


def parse_marker(text: str) -> AffinityMarker:
    if not isinstance(text, str):
        raise MalformedAffinity("marker text must be a string")
    match = _MARKER_RE.search(text.strip())
    if not match:
        raise MalformedAffinity("no affinity marker at end of text")
    return AffinityMarker(*match.groups())


def decode_marker(text: str) -> AffinityMarker | None:
    try:
        return parse_marker(text)
    except MalformedAffinity:
        return None


def append_marker(text: str, marker: str) -> str:
    return f"{text}\n\n{marker}"


def recover_affinity(
    messages: Iterable[dict], *, own_user_id: str | None = None
) -> AffinityMarker | None:
    """
    Scan thread history (oldest first, as chat platforms return it) from the
    newest message back and return the first marker found in one of our own
    replies.
    """
    for message in reversed(list(messages or [])):
        if not isinstance(message, dict):
            continue
        if own_user_id and message.get("user") != own_user_id:
            continue
        marker = decode_marker(message.get("text") or "")
        if marker:
            return marker
    return None


# ------------------------------------------------------------------
def thread_key(channel: str, thread_ts: str) -> str:
    return f"affinity.{channel}.{thread_ts}"


def remember_affinity(
    store, key: str, marker: AffinityMarker, ttl_seconds: int = DEFAULT_TTL_SECONDS
) -> None:
    store.set_value(key, encode_marker(*marker), ttl_seconds)


def lookup_affinity(store, key: str) -> AffinityMarker | None:
    raw = store.get_value(key)
    if not raw:
        return None
    return decode_marker(raw)


__all__ = [
    "AffinityMarker",
    "DEFAULT_TTL_SECONDS",
    "append_marker",
    "decode_marker",
    "encode_marker",
    "lookup_affinity",
    "parse_marker",
    "recover_affinity",
    "remember_affinity",
    "thread_key",
]
