"""Thin Slack Web API client over requests. Only the calls the bot needs."""

from __future__ import annotations

import os
from typing import Any, Dict, List

import requests

from chatrelay.lib.errors import SlackApiError

SLACK_API_BASE = "https://slack.com/api"

DEFAULT_REACTIONS = {
    "loading": "thinking_face",
    "success": "white_check_mark",
    "failed": "x",
}


def reaction_names() -> Dict[str, str]:
    """Status reactions; set SLACK_REACTION_<NAME> to "" to turn one off."""
    return {
        name: os.getenv(f"SLACK_REACTION_{name.upper()}", default)
        for name, default in DEFAULT_REACTIONS.items()
    }

# reactions.add / reactions.remove on something already (or never) there
_BENIGN_REACTION_ERRORS = {"already_reacted", "no_reaction"}


class SlackClient:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = SLACK_API_BASE,
        timeout: float = 30,
        session: requests.Session | None = None,
    ):
        if not token:
            raise RuntimeError("SLACK_BOT_TOKEN is not set")
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _call(self, method: str, payload: Dict[str, Any], *, http_get: bool = False) -> dict:
        url = f"{self.base_url}/{method}"
        headers = {"Authorization": f"Bearer {self.token}"}
        if http_get:
            resp = self.session.get(url, headers=headers, params=payload, timeout=self.timeout)
        else:
            headers["Content-Type"] = "application/json; charset=utf-8"
            resp = self.session.post(url, headers=headers, json=payload, timeout=self.timeout)
        if resp.status_code >= 400:
            raise SlackApiError(method, f"http_{resp.status_code}")
        data = resp.json()
        if not data.get("ok"):
            raise SlackApiError(method, str(data.get("error") or "unknown_error"))
        return data

    def post_message(self, channel: str, text: str, thread_ts: str | None = None) -> dict:
        payload = {"channel": channel, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        return self._call("chat.postMessage", payload)

    def add_reaction(self, channel: str, name: str, timestamp: str) -> None:
        try:
            self._call("reactions.add", {"channel": channel, "name": name, "timestamp": timestamp})
        except SlackApiError as exc:
            if exc.error not in _BENIGN_REACTION_ERRORS:
                raise

    def remove_reaction(self, channel: str, name: str, timestamp: str) -> None:
        try:
            self._call("reactions.remove", {"channel": channel, "name": name, "timestamp": timestamp})
        except SlackApiError as exc:
            if exc.error not in _BENIGN_REACTION_ERRORS:
                raise

    def thread_replies(self, channel: str, thread_ts: str, limit: int = 200) -> List[dict]:
        """All messages of a thread, oldest first (parent included)."""
        messages: List[dict] = []
        cursor = None
        while True:
            params: Dict[str, Any] = {"channel": channel, "ts": thread_ts, "limit": limit}
            if cursor:
                params["cursor"] = cursor
            data = self._call("conversations.replies", params, http_get=True)
            messages.extend(data.get("messages") or [])
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return messages


__all__ = ["DEFAULT_REACTIONS", "SLACK_API_BASE", "SlackClient", "reaction_names"]
