"""Tests for the sealed memory token."""

import base64
import json

import pytest

from mentor.core.errors import ConfigurationError
from mentor.memory.token import (
    GENERAL_TOPIC_ID,
    is_valid_topic_id,
    recover_summary,
    seal,
    unseal,
)

SECRET = "s3cret"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class TestSealUnseal:
    def test_round_trip(self):
        token = seal(SECRET, "user-1", "3-12", "likes concrete examples")
        unsealed = unseal(SECRET, token)

        assert unsealed is not None
        assert unsealed.subject_id == "user-1"
        assert unsealed.topic_id == "3-12"
        assert unsealed.summary == "likes concrete examples"
        assert unsealed.issued_at > 0

    def test_non_ascii_summary(self):
        token = seal(SECRET, "user-1", GENERAL_TOPIC_ID, "予算は300万円、期限は4月")
        assert unseal(SECRET, token).summary == "予算は300万円、期限は4月"

    def test_wire_format(self):
        token = seal(SECRET, "user-1", "3-12", "x")
        prefix, payload_part, _ = token.split(".")
        payload = json.loads(base64.urlsafe_b64decode(payload_part + "=" * (-len(payload_part) % 4)))

        assert prefix == "SS1"
        assert payload["v"] == 1
        assert payload["uid"] == "user-1"
        assert payload["taskId"] == "3-12"
        assert isinstance(payload["ts"], int)

    def test_every_seal_is_new(self):
        first = seal(SECRET, "user-1", "3-12", "same")
        second = seal(SECRET, "user-1", "3-12", "same")
        assert first != second
        assert first.split(".")[2] != second.split(".")[2]

    def test_seal_requires_secret(self):
        with pytest.raises(ConfigurationError):
            seal("", "user-1", "3-12", "x")

    def test_seal_requires_subject_and_topic(self):
        with pytest.raises(ValueError):
            seal(SECRET, "", "3-12", "x")
        with pytest.raises(ValueError):
            seal(SECRET, "user-1", "", "x")


class TestUnsealRejects:
    def test_wrong_secret(self):
        token = seal(SECRET, "user-1", "3-12", "x")
        assert unseal("other-secret", token) is None

    def test_tampered_payload(self):
        prefix, _, signature = seal(SECRET, "user-1", "3-12", "x").split(".")
        forged = _b64(json.dumps({"v": 1, "uid": "admin", "taskId": "3-12", "summary": "x", "ts": 1}).encode())
        assert unseal(SECRET, f"{prefix}.{forged}.{signature}") is None

    def test_any_single_character_change(self):
        token = seal(SECRET, "user-1", "3-12", "likes concrete examples")
        for i, original in enumerate(token):
            for replacement in ("A" if original != "A" else "B", "é"):
                changed = token[:i] + replacement + token[i + 1:]
                assert unseal(SECRET, changed) is None, (i, replacement)

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "SS1",
            "SS1.abc",
            "SS1.a.b.c",
            "XX1.abc.def",
            "SS1.ペイロード.署名",
            "not a token at all",
        ],
    )
    def test_malformed(self, token):
        assert unseal(SECRET, token) is None

    def test_validly_signed_garbage(self):
        # correct signature over something that is not a valid payload
        from mentor.memory.token import _sign

        for raw in (b"not json", b"[1, 2]", json.dumps({"v": 1, "uid": 5}).encode()):
            part = _b64(raw)
            assert unseal(SECRET, f"SS1.{part}.{_sign(SECRET, part)}") is None

    def test_bool_timestamp_rejected(self):
        from mentor.memory.token import _sign

        part = _b64(json.dumps({"v": 1, "uid": "u", "taskId": "1-2", "summary": "", "ts": True}).encode())
        assert unseal(SECRET, f"SS1.{part}.{_sign(SECRET, part)}") is None


class TestRecoverSummary:
    def test_ok(self):
        token = seal(SECRET, "user-1", "3-12", "summary text")
        assert recover_summary(SECRET, token, "user-1", "3-12") == ("summary text", "ok")

    def test_absent(self):
        assert recover_summary(SECRET, None, "user-1", "3-12") == ("", "absent")

    def test_invalid(self):
        assert recover_summary(SECRET, "SS1.x.y", "user-1", "3-12") == ("", "invalid")

    def test_subject_mismatch(self):
        token = seal(SECRET, "user-1", "3-12", "private")
        assert recover_summary(SECRET, token, "user-2", "3-12") == ("", "subject_mismatch")

    def test_topic_mismatch(self):
        token = seal(SECRET, "user-1", "3-12", "private")
        assert recover_summary(SECRET, token, "user-1", "3-13") == ("", "topic_mismatch")


class TestTopicIds:
    @pytest.mark.parametrize("topic_id", [GENERAL_TOPIC_ID, "1-1", "12-345"])
    def test_valid(self, topic_id):
        assert is_valid_topic_id(topic_id)

    @pytest.mark.parametrize("topic_id", [None, "", "general", "1-", "-1", "1-2-3", "a-1", "1-2\n", " 1-2", "３-１", "٣-١"])
    def test_invalid(self, topic_id):
        assert not is_valid_topic_id(topic_id)
