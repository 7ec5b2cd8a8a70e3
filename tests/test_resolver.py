"""
Tests for resolver.py sender resolution.
"""

from datetime import datetime, timezone

import pytest

from chat_import.importer.models import (
    NormalizedMessage,
    Participant,
    SourceFormat,
    SystemGeneratedMessage,
    UserMessage,
)
from chat_import.importer.resolver import (
    CONTAINMENT,
    DEFAULT,
    EXACT,
    FUZZY,
    SenderMatch,
    apply_sender_map,
    build_sender_map,
    match_label,
    resolve,
)


def make_message(sender: str, text: str = "hi", row_index: int = 1) -> NormalizedMessage:
    return NormalizedMessage(
        sender_label=sender,
        text=text,
        original_text=text,
        was_normalized=False,
        timestamp=datetime(2024, 1, 1, 10, row_index, tzinfo=timezone.utc),
        source_format=SourceFormat.GENERIC,
        row_index=row_index,
    )


@pytest.fixture
def people():
    return [Participant("p1", "John Smith"), Participant("p2", "Jane")]


class TestMatchLabel:
    """Tests for match_label function."""

    def test_exact_match(self, participants):
        match, ambiguity = match_label("Alice", participants)
        assert match == SenderMatch("Alice", "alice", EXACT)
        assert ambiguity is None

    def test_case_and_whitespace_insensitive(self, participants):
        match, _ = match_label("  aLiCe ", participants)
        assert match.participant_id == "alice"
        assert match.method == EXACT

    def test_label_contained_in_name(self, people):
        match, _ = match_label("john", people)
        assert match.participant_id == "p1"
        assert match.method == CONTAINMENT

    def test_name_contained_in_label(self, people):
        match, _ = match_label("Jane (work)", people)
        assert match.participant_id == "p2"
        assert match.method == CONTAINMENT

    def test_fuzzy_transposition(self, participants):
        match, _ = match_label("Alcie", participants)
        assert match.participant_id == "alice"
        assert match.method == FUZZY
        assert match.distance == 2

    def test_fuzzy_short_label(self, people):
        match, _ = match_label("Jnae", people)
        assert match.participant_id == "p2"
        assert match.method == FUZZY

    def test_edit_distance_is_bounded(self, participants):
        match, _ = match_label("Alcie", participants, max_edit_distance=0)
        assert match is None

    def test_distance_limited_by_label_length(self, participants):
        """A three-letter label tolerates a single edit."""
        assert match_label("Zed", participants)[0] is None
        assert match_label("Bop", participants)[0].participant_id == "bob"

    def test_two_letter_label_uses_containment_only(self, participants):
        assert match_label("Al", participants)[0].method == CONTAINMENT
        assert match_label("Xy", participants)[0] is None

    def test_empty_label(self, participants):
        assert match_label("   ", participants) == (None, None)

    def test_exact_outranks_containment(self):
        people = [Participant("p1", "Anna"), Participant("p2", "Ann")]
        match, ambiguity = match_label("Ann", people)
        assert match.participant_id == "p2"
        assert match.method == EXACT
        assert ambiguity is None

    def test_exact_name_beats_earlier_longer_name(self):
        people = [Participant("p1", "Johnny"), Participant("p2", "John")]
        match, _ = match_label("john", people)
        assert match.participant_id == "p2"

    def test_tie_goes_to_participant_order(self):
        people = [Participant("p1", "Sam Lee"), Participant("p2", "Sam Roy")]
        match, ambiguity = match_label("Sam", people)
        assert match.participant_id == "p1"
        assert ambiguity is not None
        assert ambiguity.candidates == ["p1", "p2"]
        assert ambiguity.chosen == "p1"


class TestBuildSenderMap:
    """Tests for build_sender_map function."""

    def test_unresolved_labels_fall_back(self, participants):
        sender_map, unresolved, _ = build_sender_map(
            ["Alice", "Stranger", "Bob"], participants, "alice"
        )
        assert sender_map["Stranger"] == SenderMatch("Stranger", "alice", DEFAULT)
        assert sender_map["Stranger"].resolved is False
        assert sender_map["Bob"].resolved is True
        assert unresolved == ["Stranger"]

    def test_duplicate_labels_resolved_once(self, participants):
        sender_map, unresolved, _ = build_sender_map(
            ["Ghost", "Ghost", "Alice"], participants, "bob"
        )
        assert list(sender_map) == ["Ghost", "Alice"]
        assert unresolved == ["Ghost"]

    def test_ambiguities_are_collected(self):
        people = [Participant("p1", "Sam Lee"), Participant("p2", "Sam Roy")]
        _, _, ambiguities = build_sender_map(["Sam", "Sam"], people, "p1")
        assert len(ambiguities) == 1
        assert ambiguities[0].label == "Sam"


class TestResolve:
    """Tests for resolve and apply_sender_map."""

    def test_two_participants(self):
        people = [Participant("john", "John"), Participant("jane", "Jane")]
        messages = [make_message("John", "hi", 1), make_message("Jane", "hello", 2)]
        result = resolve(messages, people, "john")
        assert [m.participant_id for m in result.resolved_messages] == ["john", "jane"]
        assert result.sender_breakdown == {"John": 1, "Jane": 1}
        assert result.unresolved_labels == []

    def test_system_messages_bypass_resolution(self, participants):
        messages = [make_message(""), make_message("Alice", row_index=2)]
        result = resolve(messages, participants, "bob")
        system, user = result.resolved_messages
        assert isinstance(system, SystemGeneratedMessage)
        assert system.participant_id is None
        assert system.kind == "system"
        assert isinstance(user, UserMessage)
        assert user.kind == "user"
        assert result.sender_breakdown == {"Alice": 1}

    def test_resolution_does_not_mutate_input(self, participants):
        message = make_message("Bob")
        resolved = resolve([message], participants, "alice").resolved_messages[0]
        assert message.resolved_participant_id is None
        assert resolved.message.resolved_participant_id == "bob"

    def test_deterministic(self, participants):
        labels = ["Alcie", "bob", "Stranger", "Al"]
        messages = [make_message(label, row_index=i) for i, label in enumerate(labels, 1)]
        first = resolve(messages, participants, "alice")
        second = resolve(messages, participants, "alice")
        assert first.sender_map == second.sender_map
        assert first.resolved_messages == second.resolved_messages

    def test_apply_sender_map(self, participants):
        sender_map = {"Bob": SenderMatch("Bob", "bob", EXACT)}
        resolved = apply_sender_map(make_message("Bob"), sender_map)
        assert resolved.participant_id == "bob"
