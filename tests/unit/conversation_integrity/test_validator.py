from __future__ import annotations

import pytest

from src.contexts.conversation_integrity.application.policy import IntegrityPolicy
from src.contexts.conversation_integrity.application.types import (
    Violation,
    ViolationKind,
)
from src.contexts.conversation_integrity.application.validator import (
    compute_health_score,
    longest_valid_prefix,
    validate,
)
from tests.support.conversations import assistant, build_chat, tool, user


def _kinds(report) -> list[ViolationKind]:
    return [violation.kind for violation in report.violations]


@pytest.mark.unit
def test_well_formed_tool_exchange_is_healthy():
    chat = build_chat(
        user("add milk to my list"),
        assistant("", calls=("call_a1", "call_b2")),
        tool("call_a1"),
        tool("call_b2"),
        assistant("Done"),
    )

    report = validate(chat)

    assert report.is_healthy
    assert report.health_score == 100
    assert report.message_count == 5


@pytest.mark.unit
def test_empty_chat_is_healthy():
    report = validate(build_chat())
    assert report.is_healthy
    assert report.health_score == 100


@pytest.mark.unit
def test_tool_call_id_with_wrong_format_is_malformed():
    chat = build_chat(user(), tool("bogus"))

    report = validate(chat)

    assert _kinds(report) == [ViolationKind.MALFORMED_TOOL_CALL_ID]
    assert report.violations[0].message_id == "msg_2"
    assert report.health_score == 90


@pytest.mark.unit
@pytest.mark.parametrize("call_id", [None, "", "   "])
def test_blank_tool_call_id_is_malformed(call_id):
    report = validate(build_chat(user(), tool(call_id)))
    assert _kinds(report) == [ViolationKind.MALFORMED_TOOL_CALL_ID]


@pytest.mark.unit
def test_response_to_unknown_call_is_orphaned():
    chat = build_chat(user(), assistant(calls=("call_a1",)), tool("call_a1"), tool("call_zz"))

    report = validate(chat)

    assert _kinds(report) == [ViolationKind.ORPHANED_TOOL_MESSAGE]
    assert report.violations[0].tool_call_id == "call_zz"


@pytest.mark.unit
def test_unanswered_call_is_reported_against_the_assistant_message():
    chat = build_chat(user(), assistant(calls=("call_42",)), user("still there?"))

    report = validate(chat)

    assert _kinds(report) == [ViolationKind.MISSING_TOOL_RESPONSE]
    violation = report.violations[0]
    assert violation.message_id == "msg_2"
    assert violation.tool_call_id == "call_42"


@pytest.mark.unit
def test_unanswered_call_at_end_of_chat_is_missing():
    report = validate(build_chat(user(), assistant(calls=("call_42",))))
    assert _kinds(report) == [ViolationKind.MISSING_TOOL_RESPONSE]


@pytest.mark.unit
def test_second_response_to_same_call_is_duplicate():
    chat = build_chat(
        user(),
        assistant(calls=("call_a1",)),
        tool("call_a1"),
        tool("call_a1"),
    )

    report = validate(chat)

    assert _kinds(report) == [ViolationKind.DUPLICATE_TOOL_RESPONSE]
    assert report.violations[0].message_id == "msg_4"


@pytest.mark.unit
def test_response_after_window_closed_is_dangling():
    chat = build_chat(
        user(),
        assistant(calls=("call_a1",)),
        user("interrupting"),
        tool("call_a1"),
    )

    report = validate(chat)

    assert sorted(_kinds(report)) == sorted(
        [ViolationKind.MISSING_TOOL_RESPONSE, ViolationKind.DANGLING_TOOL_RESPONSE]
    )
    dangling = next(v for v in report.violations if v.kind == ViolationKind.DANGLING_TOOL_RESPONSE)
    assert dangling.message_id == "msg_4"


@pytest.mark.unit
def test_position_gap_is_out_of_order():
    chat = build_chat(user(position=1), assistant(position=3))

    report = validate(chat)

    assert _kinds(report) == [ViolationKind.OUT_OF_ORDER_MESSAGE]
    assert report.violations[0].detail == "Expected position 2"
    assert report.health_score == 95


@pytest.mark.unit
def test_duplicate_position_is_out_of_order():
    chat = build_chat(user(position=1), assistant(position=2), user(position=2))

    report = validate(chat)

    assert _kinds(report) == [ViolationKind.OUT_OF_ORDER_MESSAGE]
    assert report.violations[0].detail == "Duplicate position"


@pytest.mark.unit
def test_validation_does_not_mutate_the_chat():
    chat = build_chat(user(), tool("bogus"))
    before = chat.messages

    validate(chat)

    assert chat.messages is before


@pytest.mark.unit
def test_health_score_floors_at_zero():
    violations = [
        Violation(kind=ViolationKind.MISSING_TOOL_RESPONSE, message_id=f"msg_{i}")
        for i in range(10)
    ]
    assert compute_health_score(violations) == 0


@pytest.mark.unit
def test_health_score_uses_policy_weights():
    policy = IntegrityPolicy(violation_weights={ViolationKind.MALFORMED_TOOL_CALL_ID: 40})
    violations = [Violation(kind=ViolationKind.MALFORMED_TOOL_CALL_ID, message_id="msg_1")]
    assert compute_health_score(violations, policy) == 60


@pytest.mark.unit
def test_dominant_kind_is_most_frequent():
    chat = build_chat(user(), tool("bogus"), tool("call_x1"), tool("call_x2"))

    report = validate(chat)

    assert report.counts() == {
        ViolationKind.MALFORMED_TOOL_CALL_ID.value: 1,
        ViolationKind.ORPHANED_TOOL_MESSAGE.value: 2,
    }
    assert report.dominant_kind() == ViolationKind.ORPHANED_TOOL_MESSAGE


@pytest.mark.unit
def test_longest_valid_prefix_of_healthy_chat_is_whole_chat():
    chat = build_chat(user(), assistant(calls=("call_a1",)), tool("call_a1"), assistant("ok"))
    assert longest_valid_prefix(chat) == 4


@pytest.mark.unit
def test_longest_valid_prefix_stops_before_first_broken_message():
    chat = build_chat(user(), assistant("hi"), tool("call_x1"), user(), tool("call_x2"))
    assert longest_valid_prefix(chat) == 2


@pytest.mark.unit
def test_longest_valid_prefix_never_ends_inside_open_group():
    chat = build_chat(
        user(),
        assistant(calls=("call_a1", "call_b2")),
        tool("call_a1"),
        tool("bogus"),
    )
    # The group opened at msg_2 is unresolved when msg_4 breaks.
    assert longest_valid_prefix(chat) == 1


@pytest.mark.unit
def test_longest_valid_prefix_excludes_trailing_open_group():
    chat = build_chat(user(), assistant("hi"), assistant(calls=("call_a1",)))
    assert longest_valid_prefix(chat) == 2


@pytest.mark.unit
def test_longest_valid_prefix_ignores_position_gaps():
    chat = build_chat(user(position=1), assistant(position=5))
    assert longest_valid_prefix(chat) == 2


@pytest.mark.unit
def test_longest_valid_prefix_is_zero_when_first_message_is_broken():
    assert longest_valid_prefix(build_chat(tool("bogus"), user())) == 0
