from __future__ import annotations

import pytest

from src.kernel.hashing import build_fingerprint, build_message_digest


@pytest.mark.unit
def test_build_fingerprint_is_stable():
    assert build_fingerprint("tool", None, "call_1") == "tool||call_1"


@pytest.mark.unit
def test_build_message_digest_is_hex_sha256():
    digest = build_message_digest("user", "hello")
    assert len(digest) == 64


@pytest.mark.unit
def test_build_message_digest_does_not_normalize_whitespace():
    assert build_message_digest("user", "hello") != build_message_digest("user", "hello ")


@pytest.mark.unit
def test_build_message_digest_covers_role_and_tool_call_id():
    base = build_message_digest("tool", "{}", "call_1")
    assert base != build_message_digest("tool", "{}", "call_2")
    assert base != build_message_digest("assistant", "{}", "call_1")


@pytest.mark.unit
def test_build_message_digest_treats_missing_content_as_empty():
    assert build_message_digest("assistant", None) == build_message_digest("assistant", "")
