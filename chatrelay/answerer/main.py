"""
Answerer worker: drains the common queue and its own private queue, asks the
chat backend and pushes exactly one response envelope per question.

One process per backend credential. The worker id is derived from the
credential, so a restarted worker with the same key keeps its private queue
and every thread pinned to it.
"""

from __future__ import annotations

import os
import time
import traceback
from typing import Any, Callable, Dict

from chatrelay.lib.chat_backend import DEFAULT_MODEL, ChatBackend, translate_error
from chatrelay.lib.dispatch import COMMON_QUEUE, worker_queue
from chatrelay.lib.errors import SessionExpired, StoreUnavailable
from chatrelay.lib.messages import (
    MALFORMED_ITEM,
    failure_envelope,
    queue_wait_seconds,
    response_queue_of,
    success_envelope,
    validate_question,
)
from chatrelay.lib.queue_store import open_store
from chatrelay.lib.worker_identity import derive_worker_id

OPENAI_API_KEY = os.getenv("ANSWERER_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")
MODEL = os.getenv("ANSWERER_MODEL", DEFAULT_MODEL)
SYSTEM_PROMPT = os.getenv("ANSWERER_SYSTEM_PROMPT")
MAX_HISTORY = int(os.getenv("ANSWERER_MAX_HISTORY", "20"))

POLL_INTERVAL_MS = int(os.getenv("ANSWERER_POLL_INTERVAL_MS", "1000"))
REQUEST_TIMEOUT_MS = int(os.getenv("ANSWERER_REQUEST_TIMEOUT_MS", "300000"))
REAUTH_COOLDOWN_MS = int(os.getenv("ANSWERER_REAUTH_COOLDOWN_MS", "10000"))

# first call + one retry after a forced session refresh
MAX_ATTEMPTS = 2


def ask_with_reauth(
    backend,
    question: Dict[str, Any],
    *,
    worker_id: str,
    cooldown_seconds: float = REAUTH_COOLDOWN_MS / 1000,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, str]:
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            return backend.ask(
                question["prompt"],
                question.get("conversationId"),
                question.get("parentMessageId"),
            )
        except SessionExpired as exc:
            if attempt >= MAX_ATTEMPTS:
                raise
            print(
                f"[Answerer] <{worker_id}> session expired ({exc}); refreshing and retrying in {cooldown_seconds}s",
                flush=True,
            )
            backend.refresh_session()
            sleep(cooldown_seconds)
    raise RuntimeError("retry loop exited without a result")


def handle_item(
    item: Any,
    *,
    store,
    backend,
    worker_id: str,
    cooldown_seconds: float = REAUTH_COOLDOWN_MS / 1000,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any] | None:
    """
    Answer one popped item and push its envelope. Returns the envelope, or
    None when the item names no response queue and cannot be answered at all.
    """
    response_queue = response_queue_of(item)
    if not response_queue:
        print(f"[Answerer] <{worker_id}> dropping item without responseQueueName: {item}", flush=True)
        return None

    try:
        question = validate_question(item)
    except ValueError as exc:
        envelope = failure_envelope(item, str(exc), MALFORMED_ITEM, worker_id)
    else:
        wait = queue_wait_seconds(item)
        print(
            f"[Answerer] <{worker_id}> request conversation={question.get('conversationId')} "
            f"parent={question.get('parentMessageId')} waited={wait if wait is None else round(wait, 2)}s",
            flush=True,
        )
        try:
            answer = ask_with_reauth(
                backend,
                question,
                worker_id=worker_id,
                cooldown_seconds=cooldown_seconds,
                sleep=sleep,
            )
        except Exception as exc:  # noqa: BLE001
            err = translate_error(exc)
            print(f"[Answerer] <{worker_id}> error ({err.classification}): {err}", flush=True)
            envelope = failure_envelope(item, str(err), err.classification, worker_id)
        else:
            print(
                f"[Answerer] <{worker_id}> response conversation={answer['conversationId']} "
                f"message={answer['messageId']} chars={len(answer['responseText'])}",
                flush=True,
            )
            envelope = success_envelope(item, answer, worker_id)

    store.push(response_queue, envelope)
    return envelope


def poll_once(
    store,
    backend,
    worker_id: str,
    *,
    cooldown_seconds: float = REAUTH_COOLDOWN_MS / 1000,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """One cycle: common queue first, then our own. Returns how many items were handled."""
    handled = 0
    for queue in (COMMON_QUEUE, worker_queue(worker_id)):
        try:
            item = store.pop(queue)
        except StoreUnavailable as exc:
            print(f"[Answerer] <{worker_id}> store unavailable on {queue}: {exc}", flush=True)
            continue
        except ValueError as exc:
            print(f"[Answerer] <{worker_id}> discarded undecodable item on {queue}: {exc}", flush=True)
            continue
        if item is None:
            continue

        handled += 1
        try:
            handle_item(
                item,
                store=store,
                backend=backend,
                worker_id=worker_id,
                cooldown_seconds=cooldown_seconds,
                sleep=sleep,
            )
        except StoreUnavailable as exc:
            # popped but never answered; there is no redelivery
            print(f"[Answerer] <{worker_id}> lost response for item from {queue}: {exc}", flush=True)
    return handled


def run(
    store,
    backend,
    worker_id: str,
    *,
    poll_interval_seconds: float = POLL_INTERVAL_MS / 1000,
    cooldown_seconds: float = REAUTH_COOLDOWN_MS / 1000,
    sleep: Callable[[float], None] = time.sleep,
    max_cycles: int | None = None,
) -> None:
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        try:
            poll_once(store, backend, worker_id, cooldown_seconds=cooldown_seconds, sleep=sleep)
        except Exception as exc:  # noqa: BLE001
            print(f"[Answerer] <{worker_id}> error:", exc, flush=True)
            traceback.print_exc()
        sleep(poll_interval_seconds)
        cycles += 1


def main() -> None:
    if not OPENAI_API_KEY:
        raise RuntimeError("Missing OPENAI_API_KEY for Answerer")

    worker_id = derive_worker_id(OPENAI_API_KEY)
    backend = ChatBackend(
        OPENAI_API_KEY,
        model=MODEL,
        base_url=OPENAI_BASE_URL,
        timeout_seconds=REQUEST_TIMEOUT_MS / 1000,
        system_prompt=SYSTEM_PROMPT,
        max_history=MAX_HISTORY,
    )
    print(f"[Answerer] <{worker_id}> starting backend session", flush=True)
    backend.start_session()

    with open_store() as store:
        print(
            f"[Answerer] <{worker_id}> started - listening on {COMMON_QUEUE} and {worker_queue(worker_id)}",
            flush=True,
        )
        run(store, backend, worker_id)


if __name__ == "__main__":
    main()
