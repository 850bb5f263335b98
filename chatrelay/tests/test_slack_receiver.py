import hashlib
import hmac
import json
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

from fastapi.testclient import TestClient

from chatrelay.lib.affinity import AffinityMarker, remember_affinity, thread_key
from chatrelay.lib.dispatch import COMMON_QUEUE
from chatrelay.lib.errors import SlackApiError, StoreUnavailable
from chatrelay.slack_receiver import main as receiver
from chatrelay.tests._fakes import FakeSlack, MemoryStore


def _sign(secret: str, ts: str, body: bytes) -> str:
    base = f"v0:{ts}:".encode() + body
    return "v0=" + hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()


class _DownStore(MemoryStore):
    def push(self, queue, value):
        raise StoreUnavailable("redis unreachable")


class ExtractPromptTests(unittest.TestCase):
    def test_mention_tag_is_stripped(self):
        event = {"type": "app_mention", "text": "<@UBOT> what is 2+2?"}
        self.assertEqual("what is 2+2?", receiver.extract_prompt(event, "UBOT"))

    def test_mention_of_someone_else_is_ignored(self):
        event = {"type": "app_mention", "text": "<@UOTHER> hi"}
        self.assertIsNone(receiver.extract_prompt(event, "UBOT"))

    def test_direct_message(self):
        event = {"type": "message", "channel_type": "im", "user": "U1", "text": " hi "}
        self.assertEqual("hi", receiver.extract_prompt(event, "UBOT"))

    def test_ignores_bots_edits_and_channel_chatter(self):
        events = [
            {"type": "message", "channel_type": "im", "user": "UBOT", "text": "4"},
            {"type": "message", "channel_type": "im", "bot_id": "B1", "text": "4"},
            {"type": "message", "channel_type": "im", "subtype": "message_changed", "text": "x"},
            {"type": "message", "channel_type": "channel", "user": "U1", "text": "x"},
            {"type": "reaction_added"},
        ]
        for event in events:
            self.assertIsNone(receiver.extract_prompt(event, "UBOT"))


class SignatureTests(unittest.TestCase):
    def test_valid_signature(self):
        body = b'{"type":"event_callback"}'
        now = time.time()
        ts = str(int(now))
        self.assertTrue(receiver.verify_signature("s3cret", ts, body, _sign("s3cret", ts, body), now=now))

    def test_rejects_tampering_and_stale_requests(self):
        body = b'{"type":"event_callback"}'
        now = time.time()
        ts = str(int(now))
        sig = _sign("s3cret", ts, body)
        self.assertFalse(receiver.verify_signature("s3cret", ts, body + b" ", sig, now=now))
        self.assertFalse(receiver.verify_signature("s3cret", ts, body, sig, now=now + 600))
        self.assertFalse(receiver.verify_signature("s3cret", None, body, sig, now=now))
        self.assertFalse(receiver.verify_signature("s3cret", "abc", body, sig, now=now))


class SlackEventsEndpointTests(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.slack = FakeSlack()
        receiver.app.state.store = self.store
        receiver.app.state.slack = self.slack
        self.client = TestClient(receiver.app)
        self._patches = [
            patch.object(receiver, "SLACK_BOT_USER_ID", "UBOT"),
            patch.object(receiver, "SLACK_SIGNING_SECRET", None),
            patch.object(receiver, "RESPONSE_QUEUE", "queue.answers.test"),
        ]
        for p in self._patches:
            p.start()

    def tearDown(self):
        for p in self._patches:
            p.stop()
        receiver.app.state.store = None
        receiver.app.state.slack = None

    def _mention(self, text, ts="200.1", thread_ts=None, headers=None):
        event = {"type": "app_mention", "text": text, "channel": "C1", "ts": ts}
        if thread_ts:
            event["thread_ts"] = thread_ts
        return self.client.post(
            "/slack/events",
            content=json.dumps({"type": "event_callback", "event": event}),
            headers=headers or {},
        )

    def test_url_verification(self):
        resp = self.client.post("/slack/events", json={"type": "url_verification", "challenge": "abc"})
        self.assertEqual(200, resp.status_code)
        self.assertEqual({"challenge": "abc"}, resp.json())

    def test_fresh_mention_goes_to_common_queue(self):
        resp = self._mention("<@UBOT> 2+2?")

        self.assertEqual(200, resp.status_code)
        self.assertEqual(COMMON_QUEUE, resp.json()["queue"])
        item = self.store.pop(COMMON_QUEUE)
        self.assertEqual({"prompt": "2+2?"}, item["question"])
        self.assertEqual("queue.answers.test", item["responseQueueName"])
        self.assertEqual({"channel": "C1", "ts": "200.1", "thread_ts": None}, item["correlationExtra"])
        self.assertIn(("add", "C1", "thinking_face", "200.1"), self.slack.reactions)

    def test_follow_up_in_thread_is_pinned(self):
        self.slack.replies[("C1", "200.1")] = [
            {"user": "U1", "text": "<@UBOT> 2+2?"},
            {"user": "UBOT", "text": "4\n\n_ref:c1:m1:W1_"},
        ]
        resp = self._mention("<@UBOT> and 2+3?", ts="200.5", thread_ts="200.1")

        self.assertEqual("queue.W1", resp.json()["queue"])
        item = self.store.pop("queue.W1")
        self.assertEqual("c1", item["question"]["conversationId"])
        self.assertEqual("m1", item["question"]["parentMessageId"])
        self.assertIsNone(self.store.pop(COMMON_QUEUE))

    def test_falls_back_to_stored_affinity_when_thread_lost_marker(self):
        remember_affinity(self.store, thread_key("C1", "200.1"), AffinityMarker("c9", "m9", "W9"))
        self.slack.replies[("C1", "200.1")] = [{"user": "UBOT", "text": "(message deleted)"}]

        resp = self._mention("<@UBOT> still there?", ts="200.7", thread_ts="200.1")
        self.assertEqual("queue.W9", resp.json()["queue"])

    def test_history_error_does_not_block_submission(self):
        def _broken(*_args):
            raise SlackApiError("conversations.replies", "missing_scope")

        self.slack.thread_replies = _broken
        resp = self._mention("<@UBOT> hi", ts="200.9", thread_ts="200.1")
        self.assertEqual(COMMON_QUEUE, resp.json()["queue"])

    def test_blank_mention_is_dropped(self):
        resp = self._mention("<@UBOT>   ")
        self.assertEqual({"ok": True}, resp.json())
        self.assertEqual([], self.store.pushes)
        self.assertEqual([], self.slack.reactions)

    def test_slack_retries_are_not_resubmitted(self):
        resp = self._mention("<@UBOT> 2+2?", headers={"X-Slack-Retry-Num": "1"})
        self.assertEqual("retry", resp.json()["skipped"])
        self.assertEqual([], self.store.pushes)

    def test_signature_enforced_when_secret_set(self):
        with patch.object(receiver, "SLACK_SIGNING_SECRET", "s3cret"):
            resp = self._mention("<@UBOT> 2+2?")
            self.assertEqual(401, resp.status_code)

            body = json.dumps({"type": "url_verification", "challenge": "xyz"}).encode()
            ts = str(int(time.time()))
            resp = self.client.post(
                "/slack/events",
                content=body,
                headers={"X-Slack-Request-Timestamp": ts, "X-Slack-Signature": _sign("s3cret", ts, body)},
            )
            self.assertEqual({"challenge": "xyz"}, resp.json())

    def test_store_outage_clears_pending_reaction_and_tells_the_user(self):
        store = _DownStore()
        receiver.app.state.store = store

        resp = self._mention("<@UBOT> 2+2?", ts="1.1")
        self.assertEqual(503, resp.status_code)
        self.assertEqual(
            [
                ("add", "C1", "thinking_face", "1.1"),
                ("add", "C1", "x", "1.1"),
                ("remove", "C1", "thinking_face", "1.1"),
            ],
            self.slack.reactions,
        )
        self.assertEqual(1, len(self.slack.posted))
        self.assertEqual("1.1", self.slack.posted[0]["thread_ts"])
        self.assertTrue(self.slack.posted[0]["text"].startswith("Error:"))

        # Slack's redelivery of the same event is still acknowledged without requeueing
        resp = self._mention("<@UBOT> 2+2?", ts="1.1", headers={"X-Slack-Retry-Num": "1"})
        self.assertEqual("retry", resp.json()["skipped"])
        self.assertEqual(1, len(self.slack.posted))

    def test_slow_thread_fetch_does_not_block_other_requests(self):
        entered = threading.Event()
        release = threading.Event()
        timed_out = []

        def _slow_replies(channel, thread_ts):
            entered.set()
            timed_out.append(not release.wait(2))
            return []

        self.slack.thread_replies = _slow_replies
        with TestClient(receiver.app) as client, ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(
                client.post,
                "/slack/events",
                content=json.dumps(
                    {
                        "type": "event_callback",
                        "event": {
                            "type": "app_mention",
                            "text": "<@UBOT> again?",
                            "channel": "C1",
                            "ts": "5.2",
                            "thread_ts": "5.1",
                        },
                    }
                ),
            )
            self.assertTrue(entered.wait(2))
            self.assertEqual({"ok": True}, client.get("/healthz").json())
            release.set()
            resp = pending.result(timeout=5)

        self.assertEqual([False], timed_out)
        self.assertEqual(COMMON_QUEUE, resp.json()["queue"])

    def test_healthz(self):
        self.assertEqual({"ok": True}, self.client.get("/healthz").json())


if __name__ == "__main__":
    unittest.main()
