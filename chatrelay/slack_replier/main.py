"""
Slack replier: drains the response queue and posts each answer (or error)
back into the originating thread, with the affinity marker appended so a
follow-up finds the same worker.
"""

from __future__ import annotations

import os
import time
import traceback
from typing import Any, Callable, Dict

import requests

from chatrelay.lib.affinity import (
    DEFAULT_TTL_SECONDS,
    AffinityMarker,
    append_marker,
    encode_marker,
    remember_affinity,
    thread_key,
)
from chatrelay.lib.dispatch import DEFAULT_RESPONSE_QUEUE
from chatrelay.lib.errors import SlackApiError, StoreUnavailable
from chatrelay.lib.queue_store import open_store
from chatrelay.lib.slack_api import SlackClient, reaction_names

SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN")
RESPONSE_QUEUE = os.getenv("CHAT_RESPONSE_QUEUE_NAME", DEFAULT_RESPONSE_QUEUE)
POLL_INTERVAL_MS = int(os.getenv("SLACK_REPLIER_POLL_INTERVAL_MS", "1000"))
AFFINITY_TTL_SECONDS = int(os.getenv("AFFINITY_TTL_SECONDS", str(DEFAULT_TTL_SECONDS)))
REACTIONS = reaction_names()


def marker_for(envelope: Dict[str, Any]) -> AffinityMarker | None:
    answer = envelope.get("answer") or {}
    try:
        marker = AffinityMarker(
            answer.get("conversationId"),
            answer.get("messageId"),
            envelope.get("workerId"),
        )
        encode_marker(*marker)
    except ValueError:
        return None
    return marker


def render_answer(envelope: Dict[str, Any]) -> str:
    text = (envelope.get("answer") or {}).get("responseText") or ""
    marker = marker_for(envelope)
    if marker is None:
        return text
    return append_marker(text, encode_marker(*marker))


def render_error(envelope: Dict[str, Any]) -> str:
    message = (envelope.get("error") or {}).get("message") or "unknown error"
    return f"Error: {message} \nPlease ask again..."


def _swap_reactions(slack, channel: str, ts: str, status: str) -> None:
    try:
        if REACTIONS.get(status):
            slack.add_reaction(channel, REACTIONS[status], ts)
        if REACTIONS.get("loading"):
            slack.remove_reaction(channel, REACTIONS["loading"], ts)
    except (SlackApiError, requests.RequestException) as exc:
        print(f"[SlackReplier] reaction update failed on {channel}/{ts}: {exc}", flush=True)


def deliver(envelope: Any, *, slack, store) -> bool:
    if not isinstance(envelope, dict):
        print(f"[SlackReplier] ignoring non-object envelope: {envelope!r}", flush=True)
        return False

    meta = envelope.get("correlationExtra") or {}
    channel = meta.get("channel")
    ts = meta.get("ts")
    if not channel or not ts:
        print(f"[SlackReplier] envelope without channel/ts from <{envelope.get('workerId')}>", flush=True)
        return False

    thread_root = meta.get("thread_ts") or ts
    success = bool(envelope.get("success")) and isinstance(envelope.get("answer"), dict)

    text = render_answer(envelope) if success else render_error(envelope)
    try:
        slack.post_message(channel, text, thread_ts=thread_root)
    except (SlackApiError, requests.RequestException) as exc:
        # the envelope is already off the queue; at least stop the spinner
        print(f"[SlackReplier] reply to {channel}/{ts} not posted: {exc}", flush=True)
        _swap_reactions(slack, channel, ts, "failed")
        return False

    if success:
        marker = marker_for(envelope)
        if marker is not None:
            try:
                remember_affinity(
                    store, thread_key(channel, thread_root), marker, AFFINITY_TTL_SECONDS
                )
            except StoreUnavailable as exc:
                print(f"[SlackReplier] could not store affinity: {exc}", flush=True)

    _swap_reactions(slack, channel, ts, "success" if success else "failed")
    return True


def poll_once(store, slack, queue: str = RESPONSE_QUEUE) -> bool:
    envelope = store.pop(queue)
    if envelope is None:
        return False
    deliver(envelope, slack=slack, store=store)
    return True


def run(
    store,
    slack,
    *,
    queue: str = RESPONSE_QUEUE,
    poll_interval_seconds: float = POLL_INTERVAL_MS / 1000,
    sleep: Callable[[float], None] = time.sleep,
    max_cycles: int | None = None,
) -> None:
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        try:
            poll_once(store, slack, queue)
        except Exception as exc:  # noqa: BLE001
            print("[SlackReplier] error:", exc, flush=True)
            traceback.print_exc()
        sleep(poll_interval_seconds)
        cycles += 1


def main() -> None:
    slack = SlackClient(SLACK_BOT_TOKEN)
    with open_store() as store:
        print(f"[SlackReplier] started - waiting for answers on {RESPONSE_QUEUE}", flush=True)
        run(store, slack)


if __name__ == "__main__":
    main()
