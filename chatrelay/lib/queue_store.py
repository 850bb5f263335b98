"""
Named-list queue store shared by the front end and the answerer workers.

Every element is a UTF-8 JSON document. ``push`` appends at the tail, ``pop``
removes the head or returns None without blocking. There is no visibility
timeout and no ack: an item that leaves the queue never comes back.

Two backends exist. Redis lists when REDIS_URL is set, otherwise the Supabase
``job_queue`` table. Both also carry a small expiring key/value area used for
the durable thread -> worker affinity map.
"""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import redis
from postgrest.exceptions import APIError
from supabase import ClientOptions, create_client

from chatrelay.lib.errors import StoreUnavailable

JOB_TABLE = "job_queue"
KV_TABLE = "kv_store"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(stamp: Any) -> datetime:
    """PostgREST timestamptz text ("...Z" or "+00:00"), naive values taken as UTC."""
    when = datetime.fromisoformat(str(stamp).strip().replace("Z", "+00:00"))
    return when if when.tzinfo else when.replace(tzinfo=timezone.utc)


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _decode(raw: Any) -> Any:
    # jsonb columns come back already decoded
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


class _ScopedStore:
    _client: Any = None

    def connect(self):
        raise NotImplementedError

    def close(self) -> None:
        self._client = None

    @property
    def client(self):
        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} is not connected")
        return self._client

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *_exc) -> None:
        self.close()


# ------------------------------------------------------------------
class RedisQueueStore(_ScopedStore):
    def __init__(self, url: str, *, client=None):
        self.url = url
        self._client = client

    @contextmanager
    def _guard(self, op: str):
        try:
            yield
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
            raise StoreUnavailable(f"redis {op} failed: {exc}") from exc

    def connect(self) -> "RedisQueueStore":
        if self._client is None:
            self._client = redis.Redis.from_url(self.url, decode_responses=True)
        with self._guard("ping"):
            self._client.ping()
        return self

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None

    def push(self, queue: str, value: Any) -> None:
        with self._guard("rpush"):
            self.client.rpush(queue, _encode(value))

    def pop(self, queue: str) -> Any | None:
        with self._guard("lpop"):
            raw = self.client.lpop(queue)
        if raw is None:
            return None
        return _decode(raw)

    def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._guard("setex"):
            self.client.setex(key, int(ttl_seconds), value)

    def get_value(self, key: str) -> str | None:
        with self._guard("get"):
            return self.client.get(key)


# ------------------------------------------------------------------
class SupabaseQueueStore(_ScopedStore):
    """
    Queue rows live in ``job_queue`` (queue, payload, available_at). A pop
    claims the oldest row by deleting it by id: whoever gets the deleted row
    back owns the item, a caller that deletes nothing lost the race.
    """

    def __init__(
        self,
        url: str | None = None,
        key: str | None = None,
        *,
        client=None,
        claim_attempts: int = 5,
    ):
        self.url = url
        self.key = key
        self.claim_attempts = max(1, int(claim_attempts))
        self._client = client

    @contextmanager
    def _guard(self, op: str):
        try:
            yield
        except (APIError, httpx.HTTPError) as exc:
            raise StoreUnavailable(f"supabase {op} failed: {exc}") from exc

    def connect(self) -> "SupabaseQueueStore":
        if self._client is None:
            if not self.url or not self.key:
                raise RuntimeError("Supabase credentials missing for queue store")
            self._client = create_client(
                self.url,
                self.key,
                options=ClientOptions(headers={"Authorization": f"Bearer {self.key}"}),
            )
        return self

    def push(self, queue: str, value: Any) -> None:
        with self._guard("insert"):
            self.client.table(JOB_TABLE).insert(
                {"queue": queue, "payload": _encode(value)}
            ).execute()

    def pop(self, queue: str) -> Any | None:
        for _ in range(self.claim_attempts):
            with self._guard("select"):
                rows = (
                    self.client.table(JOB_TABLE)
                    .select("id,payload")
                    .eq("queue", queue)
                    .lte("available_at", _utcnow().isoformat())
                    .order("id")
                    .limit(1)
                    .execute()
                    .data
                )
            if not rows:
                return None

            row_id = rows[0]["id"]
            with self._guard("delete"):
                claimed = (
                    self.client.table(JOB_TABLE).delete().eq("id", row_id).execute().data
                )
            if claimed:
                return _decode(rows[0]["payload"])
        return None

    def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = _utcnow() + timedelta(seconds=int(ttl_seconds))
        with self._guard("upsert"):
            self.client.table(KV_TABLE).upsert(
                {"key": key, "value": value, "expires_at": expires_at.isoformat()},
                on_conflict="key",
            ).execute()

    def get_value(self, key: str) -> str | None:
        with self._guard("select"):
            rows = (
                self.client.table(KV_TABLE)
                .select("value,expires_at")
                .eq("key", key)
                .limit(1)
                .execute()
                .data
                or []
            )
        if not rows:
            return None
        expires_at = rows[0].get("expires_at")
        if expires_at and _as_utc(expires_at) <= _utcnow():
            return None
        return rows[0].get("value")


# ------------------------------------------------------------------
def open_store():
    """Build the configured store. The caller owns connect()/close()."""
    redis_url = os.getenv("REDIS_URL")
    if redis_url:
        return RedisQueueStore(redis_url)

    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if supabase_url and supabase_key:
        return SupabaseQueueStore(supabase_url, supabase_key)

    raise RuntimeError(
        "No queue store configured: set REDIS_URL or SUPABASE_URL + SUPABASE_SERVICE_ROLE_KEY"
    )


__all__ = ["RedisQueueStore", "SupabaseQueueStore", "open_store"]
