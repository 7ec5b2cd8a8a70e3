"""
Sender resolution for imported messages.

Maps the free-text sender labels of an export ("Johnny", "jane doe") to the
chat's canonical participants. Resolution is a pure function of the labels
and the participant list, so previews and re-validations always agree with
the real import.

Design Decisions:
    1. Matching is case-insensitive (casefold) and whitespace-trimmed
    2. Ties go to participant-list order and are recorded, never raised
    3. Unresolved labels fall back to the importing user and are listed
    4. System-generated messages bypass resolution entirely

Resolution Strategy:
    1. Containment: label within name or name within label (2+ characters);
       an exact match outranks a partial one
    2. Bounded edit distance (Levenshtein) for labels of 3+ characters,
       at most max_edit_distance and at most half the label length
    3. Otherwise the importing user
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from rapidfuzz.distance import Levenshtein

from chat_import.importer.errors import ResolutionAmbiguity
from chat_import.importer.models import (
    NormalizedMessage,
    Participant,
    ResolvedMessage,
    SystemGeneratedMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)

MIN_CONTAINMENT_LENGTH = 2
MIN_FUZZY_LENGTH = 3

# Match methods
EXACT = "exact"
CONTAINMENT = "containment"
FUZZY = "fuzzy"
DEFAULT = "default"


@dataclass(frozen=True)
class SenderMatch:
    """How one sender label was resolved."""

    label: str
    participant_id: str
    method: str
    distance: Optional[int] = None

    @property
    def resolved(self) -> bool:
        return self.method != DEFAULT


@dataclass
class ResolutionResult:
    """Result of resolving a list of messages."""

    resolved_messages: List[ResolvedMessage] = field(default_factory=list)
    sender_breakdown: Dict[str, int] = field(default_factory=dict)
    unresolved_labels: List[str] = field(default_factory=list)
    ambiguities: List[ResolutionAmbiguity] = field(default_factory=list)
    sender_map: Dict[str, SenderMatch] = field(default_factory=dict)


def _fold(value: str) -> str:
    return value.strip().casefold()


def _pick(
    label: str, ranked: List[Tuple[int, Participant]]
) -> Tuple[Participant, int, Optional[ResolutionAmbiguity]]:
    """Pick the best-ranked participant; participant order breaks ties."""
    best_rank = min(rank for rank, _ in ranked)
    tied = [p for rank, p in ranked if rank == best_rank]
    chosen = tied[0]
    ambiguity = None
    if len(tied) > 1:
        ambiguity = ResolutionAmbiguity(label, [p.id for p in tied], chosen.id)
    return chosen, best_rank, ambiguity


def match_label(
    label: str,
    participants: Sequence[Participant],
    max_edit_distance: int = 2,
) -> Tuple[Optional[SenderMatch], Optional[ResolutionAmbiguity]]:
    """
    Match one sender label against the participant list.

    Args:
        label: Sender label from the export.
        participants: Participants in directory order.
        max_edit_distance: Largest Levenshtein distance accepted.

    Returns:
        (match or None, ambiguity or None).

    Examples:
        >>> people = [Participant("p1", "John Smith"), Participant("p2", "Jane")]
        >>> match_label("john", people)[0].participant_id
        'p1'
        >>> match_label("Jnae", people)[0].method
        'fuzzy'
    """
    folded = _fold(label)
    if not folded:
        return None, None

    contained: List[Tuple[int, Participant]] = []
    if len(folded) >= MIN_CONTAINMENT_LENGTH:
        for participant in participants:
            name = _fold(participant.display_name)
            if len(name) < MIN_CONTAINMENT_LENGTH:
                continue
            if name == folded:
                contained.append((0, participant))
            elif folded in name or name in folded:
                contained.append((1, participant))

    if contained:
        chosen, rank, ambiguity = _pick(label, contained)
        method = EXACT if rank == 0 else CONTAINMENT
        return SenderMatch(label, chosen.id, method), ambiguity

    if len(folded) < MIN_FUZZY_LENGTH:
        return None, None

    cutoff = min(max_edit_distance, len(folded) // 2)
    close: List[Tuple[int, Participant]] = []
    for participant in participants:
        distance = Levenshtein.distance(folded, _fold(participant.display_name))
        if distance <= cutoff:
            close.append((distance, participant))

    if not close:
        return None, None

    chosen, distance, ambiguity = _pick(label, close)
    return SenderMatch(label, chosen.id, FUZZY, distance), ambiguity


def build_sender_map(
    labels: Iterable[str],
    participants: Sequence[Participant],
    default_participant_id: str,
    max_edit_distance: int = 2,
) -> Tuple[Dict[str, SenderMatch], List[str], List[ResolutionAmbiguity]]:
    """
    Resolve every distinct label once.

    Args:
        labels: Sender labels, in first-seen order (duplicates ignored).
        participants: Participants in directory order.
        default_participant_id: Fallback for unresolved labels (the importing user).
        max_edit_distance: Largest Levenshtein distance accepted.

    Returns:
        (label → SenderMatch, unresolved labels in first-seen order, ambiguities).
    """
    sender_map: Dict[str, SenderMatch] = {}
    unresolved: List[str] = []
    ambiguities: List[ResolutionAmbiguity] = []

    for label in labels:
        if label in sender_map:
            continue
        match, ambiguity = match_label(label, participants, max_edit_distance)
        if ambiguity is not None:
            logger.warning(
                f"Sender '{label}' matches {len(ambiguity.candidates)} participants, "
                f"using {ambiguity.chosen}"
            )
            ambiguities.append(ambiguity)
        if match is None:
            match = SenderMatch(label, default_participant_id, DEFAULT)
            unresolved.append(label)
        sender_map[label] = match

    if unresolved:
        logger.info(f"{len(unresolved)} sender label(s) fell back to the importing user")
    return sender_map, unresolved, ambiguities


def apply_sender_map(
    message: NormalizedMessage, sender_map: Dict[str, SenderMatch]
) -> ResolvedMessage:
    """
    Wrap a normalized message as a user or system message.

    Args:
        message: Parsed message.
        sender_map: Map from build_sender_map; must contain the message's label.

    Returns:
        SystemGeneratedMessage for sender-less rows, else a UserMessage with
        the resolved participant id.
    """
    if message.is_system:
        return SystemGeneratedMessage(message)
    match = sender_map[message.sender_label]
    return UserMessage(replace(message, resolved_participant_id=match.participant_id))


def resolve(
    messages: Sequence[NormalizedMessage],
    participants: Sequence[Participant],
    default_participant_id: str,
    max_edit_distance: int = 2,
) -> ResolutionResult:
    """
    Resolve the senders of a list of messages.

    Identical inputs always produce identical outputs.

    Args:
        messages: Parsed messages.
        participants: Participants in directory order.
        default_participant_id: Fallback for unresolved labels (the importing user).
        max_edit_distance: Largest Levenshtein distance accepted.

    Returns:
        ResolutionResult with resolved messages, per-label counts,
        unresolved labels and recorded ambiguities.
    """
    labels = [m.sender_label for m in messages if not m.is_system]
    sender_map, unresolved, ambiguities = build_sender_map(
        labels, participants, default_participant_id, max_edit_distance
    )

    result = ResolutionResult(
        unresolved_labels=unresolved, ambiguities=ambiguities, sender_map=sender_map
    )
    for message in messages:
        result.resolved_messages.append(apply_sender_map(message, sender_map))
        if not message.is_system:
            label = message.sender_label
            result.sender_breakdown[label] = result.sender_breakdown.get(label, 0) + 1

    return result
