from __future__ import annotations

from typing import Any

from chatrelay.lib.affinity import AffinityMarker
from chatrelay.lib.messages import build_question, build_queue_item

COMMON_QUEUE = "queue.common"
DEFAULT_RESPONSE_QUEUE = "queue.answers.slackbot"


def worker_queue(worker_id: str) -> str:
    return f"queue.{worker_id}"


def target_queue(affinity: AffinityMarker | None) -> str:
    """Pinned threads go to their worker's private queue, everything else to the common one."""
    if affinity is not None and affinity.worker_id:
        return worker_queue(affinity.worker_id)
    return COMMON_QUEUE


def submit(
    store,
    prompt: str,
    *,
    response_queue: str,
    affinity: AffinityMarker | None = None,
    extra: Any = None,
) -> str | None:
    """
    Enqueue a question and return the queue it went to.

    Fire-and-forget: nothing here waits for a worker. Blank prompts are dropped
    and return None.
    """
    text = (prompt or "").strip()
    if not text:
        return None

    question = build_question(
        text,
        conversation_id=affinity.conversation_id if affinity else None,
        parent_message_id=affinity.parent_message_id if affinity else None,
    )
    queue = target_queue(affinity)
    item = build_queue_item(
        question,
        response_queue,
        extra=extra,
        target_worker_id=affinity.worker_id if affinity else None,
    )
    store.push(queue, item)
    return queue


__all__ = ["COMMON_QUEUE", "DEFAULT_RESPONSE_QUEUE", "submit", "target_queue", "worker_queue"]
