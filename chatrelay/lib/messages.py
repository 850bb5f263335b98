"""
JSON payloads exchanged through the queue store.

Keys are camelCase on the wire:

    QueueItem        {question, responseQueueName, correlationExtra?, targetWorkerId?, enqueuedAt}
    Question         {prompt, conversationId?, parentMessageId?}
    ResponseEnvelope {success, answer? | error?, question, workerId, correlationExtra?}
    Answer           {responseText, conversationId, messageId}
    ErrorInfo        {message, classification}
"""

from __future__ import annotations

import datetime
from typing import Any, Dict

import pytz

MALFORMED_ITEM = "malformed_item"


def _utcnow_iso() -> str:
    return datetime.datetime.now(pytz.UTC).isoformat()


def _compact(blob: dict) -> dict:
    return {key: value for key, value in blob.items() if value is not None}


def build_question(
    prompt: str,
    conversation_id: str | None = None,
    parent_message_id: str | None = None,
) -> Dict[str, Any]:
    return _compact(
        {
            "prompt": prompt,
            "conversationId": conversation_id,
            "parentMessageId": parent_message_id,
        }
    )


def build_queue_item(
    question: dict,
    response_queue: str,
    *,
    extra: Any = None,
    target_worker_id: str | None = None,
) -> Dict[str, Any]:
    return _compact(
        {
            "question": question,
            "responseQueueName": response_queue,
            "correlationExtra": extra,
            "targetWorkerId": target_worker_id,
            "enqueuedAt": _utcnow_iso(),
        }
    )


def build_answer(response_text: str, conversation_id: str, message_id: str) -> Dict[str, Any]:
    return {
        "responseText": response_text,
        "conversationId": conversation_id,
        "messageId": message_id,
    }


def success_envelope(item: dict, answer: dict, worker_id: str) -> Dict[str, Any]:
    return _compact(
        {
            "success": True,
            "answer": answer,
            "question": item.get("question"),
            "workerId": worker_id,
            "correlationExtra": item.get("correlationExtra"),
        }
    )


def failure_envelope(
    item: dict, message: str, classification: str, worker_id: str
) -> Dict[str, Any]:
    return _compact(
        {
            "success": False,
            "error": {"message": message, "classification": classification},
            "question": item.get("question"),
            "workerId": worker_id,
            "correlationExtra": item.get("correlationExtra"),
        }
    )


def response_queue_of(item: Any) -> str | None:
    if not isinstance(item, dict):
        return None
    name = item.get("responseQueueName")
    if isinstance(name, str) and name.strip():
        return name
    return None


def validate_question(item: dict) -> Dict[str, Any]:
    """Return the item's question or raise ValueError describing what is wrong."""
    question = item.get("question")
    if not isinstance(question, dict):
        raise ValueError("queue item has no question")
    prompt = question.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValueError("question prompt is empty")
    for key in ("conversationId", "parentMessageId"):
        value = question.get(key)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"question {key} must be a string")
    return question


def queue_wait_seconds(item: dict) -> float | None:
    raw = item.get("enqueuedAt") if isinstance(item, dict) else None
    if not raw:
        return None
    try:
        enqueued = datetime.datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    if enqueued.tzinfo is None:
        enqueued = pytz.UTC.localize(enqueued)
    now = datetime.datetime.now(pytz.UTC)
    return (now - enqueued).total_seconds()


__all__ = [
    "MALFORMED_ITEM",
    "build_answer",
    "build_question",
    "build_queue_item",
    "failure_envelope",
    "queue_wait_seconds",
    "response_queue_of",
    "success_envelope",
    "validate_question",
]
