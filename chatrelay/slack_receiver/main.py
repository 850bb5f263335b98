"""
Slack Events webhook: turns direct messages and @mentions into queued
questions. Follow-ups inside a thread are pinned to the worker that answered
the thread before.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

import requests
from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from chatrelay.lib.affinity import AffinityMarker, lookup_affinity, recover_affinity, thread_key
from chatrelay.lib.dispatch import DEFAULT_RESPONSE_QUEUE, submit
from chatrelay.lib.errors import SlackApiError, StoreUnavailable
from chatrelay.lib.queue_store import open_store
from chatrelay.lib.slack_api import SlackClient, reaction_names

SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN")
SLACK_BOT_USER_ID = os.getenv("SLACK_BOT_USER_ID")
SLACK_SIGNING_SECRET = os.getenv("SLACK_SIGNING_SECRET")
RESPONSE_QUEUE = os.getenv("CHAT_RESPONSE_QUEUE_NAME", DEFAULT_RESPONSE_QUEUE)
REACTIONS = reaction_names()

SIGNATURE_MAX_AGE_SECONDS = 60 * 5


@asynccontextmanager
async def _lifespan(app: FastAPI):
    owned = None
    if getattr(app.state, "store", None) is None:
        owned = open_store().connect()
        app.state.store = owned
    if getattr(app.state, "slack", None) is None:
        app.state.slack = SlackClient(SLACK_BOT_TOKEN)
    print(f"[SlackReceiver] started - answers come back on {RESPONSE_QUEUE}", flush=True)
    try:
        yield
    finally:
        if owned is not None:
            owned.close()
            app.state.store = None


app = FastAPI(lifespan=_lifespan)


# -------------- helpers --------------
def verify_signature(
    secret: str,
    timestamp: str | None,
    body: bytes,
    signature: str | None,
    now: float | None = None,
) -> bool:
    """Slack v0 request signature (HMAC-SHA256 over "v0:<ts>:<body>")."""
    if not timestamp or not signature:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    now = time.time() if now is None else now
    if abs(now - ts) > SIGNATURE_MAX_AGE_SECONDS:
        return False
    base = f"v0:{timestamp}:".encode("utf-8") + body
    expected = "v0=" + hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def extract_prompt(event: Dict[str, Any], bot_user_id: str | None) -> str | None:
    """
    Prompt text for events we answer, None for everything else. Direct
    messages are answered as-is; in channels only mentions of the bot count.
    """
    kind = event.get("type")
    text = event.get("text") or ""

    if kind == "message":
        if event.get("subtype") or event.get("bot_id"):
            return None
        if bot_user_id and event.get("user") == bot_user_id:
            return None
        if event.get("channel_type") != "im":
            return None
        return text.strip()

    if kind == "app_mention":
        if not bot_user_id:
            return text.strip()
        tag = f"<@{bot_user_id}>"
        if tag not in text:
            return None
        return text.replace(tag, "").strip()

    return None


def find_thread_affinity(store, slack, channel: str, thread_ts: str) -> AffinityMarker | None:
    """Marker from the thread itself first, then the copy the replier stored."""
    marker = None
    try:
        messages = slack.thread_replies(channel, thread_ts)
        marker = recover_affinity(messages, own_user_id=SLACK_BOT_USER_ID)
    except (SlackApiError, requests.RequestException) as exc:
        print(f"[SlackReceiver] thread history unavailable for {channel}/{thread_ts}: {exc}", flush=True)

    if marker is None:
        try:
            marker = lookup_affinity(store, thread_key(channel, thread_ts))
        except StoreUnavailable as exc:
            print(f"[SlackReceiver] affinity lookup failed: {exc}", flush=True)
    return marker


def _report_not_queued(slack, meta: Dict[str, Any]) -> None:
    # Slack's redeliveries are skipped, so this request was the only chance
    channel, ts = meta["channel"], meta["ts"]
    try:
        if REACTIONS.get("failed"):
            slack.add_reaction(channel, REACTIONS["failed"], ts)
        if REACTIONS.get("loading"):
            slack.remove_reaction(channel, REACTIONS["loading"], ts)
        slack.post_message(
            channel,
            "Error: the question queue is unavailable \nPlease ask again...",
            thread_ts=meta.get("thread_ts") or ts,
        )
    except (SlackApiError, requests.RequestException) as exc:
        print(f"[SlackReceiver] failure notice not delivered on {channel}/{ts}: {exc}", flush=True)


def handle_prompt(store, slack, prompt: str, meta: Dict[str, Any]) -> str | None:
    if not prompt or not prompt.strip():
        return None

    channel = meta["channel"]
    affinity = None
    if meta.get("thread_ts"):
        affinity = find_thread_affinity(store, slack, channel, meta["thread_ts"])

    if REACTIONS.get("loading"):
        try:
            slack.add_reaction(channel, REACTIONS["loading"], meta["ts"])
        except (SlackApiError, requests.RequestException) as exc:
            print(f"[SlackReceiver] loading reaction failed: {exc}", flush=True)

    try:
        queue = submit(
            store,
            prompt,
            response_queue=RESPONSE_QUEUE,
            affinity=affinity,
            extra=meta,
        )
    except StoreUnavailable as exc:
        print(f"[SlackReceiver] could not queue prompt from {channel}/{meta.get('ts')}: {exc}", flush=True)
        _report_not_queued(slack, meta)
        raise
    print(
        f"[SlackReceiver] queued prompt from {channel}/{meta.get('ts')} -> {queue}",
        flush=True,
    )
    return queue


# -------------- HTTP endpoints --------------
@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.post("/slack/events")
async def slack_events(request: Request):
    body = await request.body()
    if SLACK_SIGNING_SECRET and not verify_signature(
        SLACK_SIGNING_SECRET,
        request.headers.get("x-slack-request-timestamp"),
        body,
        request.headers.get("x-slack-signature"),
    ):
        raise HTTPException(401, "invalid slack signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(400, "body is not JSON") from exc

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    # Slack re-sends events it thinks we missed; the first delivery was already queued.
    if request.headers.get("x-slack-retry-num"):
        return {"ok": True, "skipped": "retry"}

    if payload.get("type") != "event_callback":
        return {"ok": True}

    event = payload.get("event") or {}
    prompt = extract_prompt(event, SLACK_BOT_USER_ID)
    if not prompt:
        return {"ok": True}

    meta = {
        "channel": event.get("channel"),
        "ts": event.get("ts"),
        "thread_ts": event.get("thread_ts"),
    }
    # thread history, reactions and the store push are all blocking I/O
    try:
        queue = await run_in_threadpool(
            handle_prompt, request.app.state.store, request.app.state.slack, prompt, meta
        )
    except StoreUnavailable as exc:
        raise HTTPException(503, f"queue store unavailable: {exc}") from exc
    return {"ok": True, "queue": queue}


# run with: uvicorn chatrelay.slack_receiver.main:app
