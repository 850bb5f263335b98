from __future__ import annotations

import hashlib

DEFAULT_ID_LENGTH = 10


def derive_worker_id(credential: str, length: int = DEFAULT_ID_LENGTH) -> str:
    """
    Short, stable fingerprint of a backend credential.

    Same credential -> same id across restarts, so a worker's private queue
    (and every thread pinned to it) survives a redeploy. The id is the head of
    a SHA-256 digest and never exposes the credential itself. With 10 hex
    chars (40 bits) collisions stay negligible for any realistic pool size.
    """
    if not credential:
        raise ValueError("credential is required to derive a worker id")
    if not 8 <= int(length) <= 10:
        raise ValueError(f"worker id length must be 8-10, got {length}")
    digest = hashlib.sha256(credential.encode("utf-8")).hexdigest()
    return digest[: int(length)]


__all__ = ["DEFAULT_ID_LENGTH", "derive_worker_id"]
