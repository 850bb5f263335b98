"""
Conversational backend client used by the answerer workers.

The OpenAI chat completions API is stateless, so the conversation tree lives
here, in process memory: every user/assistant turn gets a message id and a
parent pointer, and a follow-up replays the chain ending at its parent. That
memory is the reason a follow-up must come back to the same worker.
"""

from __future__ import annotations

import re
import uuid
from collections import OrderedDict
from typing import Any, Callable, Dict, List

import openai
from openai import OpenAI

from chatrelay.lib.errors import BackendError, BackendTimeout, SessionExpired
from chatrelay.lib.messages import build_answer

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant answering questions in a team chat. "
    "Be accurate and concise."
)
AUTH_STATUS_CODES = {401, 403}
# "Error code: 403", "error 403: forbidden"; a 403 inside some other number does not count
_AUTH_TEXT_RE = re.compile(r"\b(?:error|status|code)\b\D{0,12}\b40[13]\b", re.IGNORECASE)


def translate_error(exc: BaseException) -> BackendError:
    """Map an OpenAI client failure onto the backend error taxonomy."""
    if isinstance(exc, BackendError):
        return exc
    if isinstance(exc, openai.APITimeoutError):
        return BackendTimeout(f"backend request timed out: {exc}")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return SessionExpired(str(exc))
    if getattr(exc, "status_code", None) in AUTH_STATUS_CODES or _AUTH_TEXT_RE.search(str(exc)):
        return SessionExpired(str(exc))
    return BackendError(str(exc) or exc.__class__.__name__)


class ChatBackend:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str | None = None,
        timeout_seconds: float = 300.0,
        system_prompt: str | None = None,
        max_history: int = 20,
        max_messages: int = 5000,
        client_factory: Callable[..., Any] = OpenAI,
    ):
        if not api_key:
            raise RuntimeError("Backend credential is required")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout_seconds = float(timeout_seconds)
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.max_history = max(0, int(max_history))
        self.max_messages = max(2, int(max_messages))
        self._client_factory = client_factory
        self._client = None
        self._messages: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    # -------------- session --------------
    def _new_client(self):
        # The deadline is ours to enforce; the SDK's own retries would stretch it.
        return self._client_factory(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            max_retries=0,
        )

    def start_session(self) -> None:
        """Open a client and prove the credential works. Failure here is fatal for the worker."""
        client = self._new_client()
        try:
            client.models.list()
        except Exception as exc:  # noqa: BLE001
            raise translate_error(exc) from exc
        self._client = client

    def refresh_session(self) -> None:
        old = self._client
        self._client = self._new_client()
        close = getattr(old, "close", None)
        if callable(close):
            try:
                close()
            except Exception:  # noqa: BLE001
                pass

    # -------------- conversation memory --------------
    def _remember(self, message_id: str, blob: Dict[str, Any]) -> None:
        self._messages[message_id] = blob
        while len(self._messages) > self.max_messages:
            self._messages.popitem(last=False)

    def history(self, parent_message_id: str | None) -> List[Dict[str, str]]:
        turns: List[Dict[str, str]] = []
        cursor = parent_message_id
        limit = self.max_history * 2
        while cursor and len(turns) < limit:
            blob = self._messages.get(cursor)
            if not blob:
                break
            turns.append({"role": blob["role"], "content": blob["content"]})
            cursor = blob.get("parent_message_id")
        turns.reverse()
        return turns

    def knows(self, message_id: str | None) -> bool:
        return bool(message_id) and message_id in self._messages

    # -------------- ask --------------
    def ask(
        self,
        prompt: str,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
    ) -> Dict[str, str]:
        if self._client is None:
            raise BackendError("backend session not started")

        if parent_message_id and not self.knows(parent_message_id):
            print(
                f"[ChatBackend] parent {parent_message_id} not in memory; answering without history",
                flush=True,
            )

        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(self.history(parent_message_id))
        messages.append({"role": "user", "content": prompt})

        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                timeout=self.timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            raise translate_error(exc) from exc

        text = (
            resp.choices[0].message.content
            if resp and resp.choices and resp.choices[0].message
            else ""
        ) or ""

        conversation_id = conversation_id or str(uuid.uuid4())
        user_message_id = str(uuid.uuid4())
        reply_message_id = str(uuid.uuid4())
        self._remember(
            user_message_id,
            {
                "role": "user",
                "content": prompt,
                "conversation_id": conversation_id,
                "parent_message_id": parent_message_id,
            },
        )
        self._remember(
            reply_message_id,
            {
                "role": "assistant",
                "content": text,
                "conversation_id": conversation_id,
                "parent_message_id": user_message_id,
            },
        )
        return build_answer(text, conversation_id, reply_message_id)


__all__ = ["ChatBackend", "DEFAULT_MODEL", "DEFAULT_SYSTEM_PROMPT", "translate_error"]
