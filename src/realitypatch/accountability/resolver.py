from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Sequence

from realitypatch.accountability.phrases import (
    assignment_text,
    claims_completion,
    claims_mass_completion,
    has_assignment,
    keyword_categories,
)
from realitypatch.schemas.records import Interaction


class MatchKind(str, Enum):
    NONE = "none"
    UNCLEAR = "unclear"
    MASS_UNCLEAR = "mass_unclear"
    MATCHED = "matched"


@dataclass(frozen=True)
class AssignmentMatch:
    """Which pending assignment a follow-up reports on, if any."""

    kind: MatchKind
    assignment_id: Optional[int] = None

    @classmethod
    def none(cls) -> "AssignmentMatch":
        return cls(MatchKind.NONE)

    @classmethod
    def unclear(cls) -> "AssignmentMatch":
        return cls(MatchKind.UNCLEAR)

    @classmethod
    def mass_unclear(cls) -> "AssignmentMatch":
        return cls(MatchKind.MASS_UNCLEAR)

    @classmethod
    def matched(cls, assignment_id: int) -> "AssignmentMatch":
        return cls(MatchKind.MATCHED, assignment_id)

    @property
    def is_ambiguous(self) -> bool:
        return self.kind in (MatchKind.UNCLEAR, MatchKind.MASS_UNCLEAR)


def is_assignment(interaction: Interaction) -> bool:
    """Eligible to be tracked for completion at all."""
    return not interaction.is_follow_up and has_assignment(interaction.response)


def pending_assignments(history: Sequence[Interaction], window: int = 5) -> List[Interaction]:
    """The most recent `window` incomplete assignments, oldest first."""
    pending = [item for item in history if is_assignment(item) and not item.completed]
    if window <= 0:
        return []
    return pending[-window:]


def completed_assignments(history: Sequence[Interaction], limit: int = 3) -> List[Interaction]:
    """The most recently completed assignments, newest completion first."""
    completed = [item for item in history if is_assignment(item) and item.completed]
    completed.sort(
        key=lambda item: item.completed_at or item.timestamp,
        reverse=True,
    )
    return completed[:limit]


class AssignmentResolver(Protocol):
    def resolve(self, message: str, history: Sequence[Interaction]) -> AssignmentMatch: ...


class KeywordAssignmentResolver:
    """
    Guesses which pending assignment a follow-up reports completing.

    A vague claim of finishing everything is never accepted while two or more
    assignments are outstanding; the caller has to ask for specifics instead.
    """

    def __init__(self, window: int = 5):
        self.window = window

    def resolve(self, message: str, history: Sequence[Interaction]) -> AssignmentMatch:
        pending = pending_assignments(history, self.window)

        if claims_mass_completion(message):
            if len(pending) == 1:
                return AssignmentMatch.matched(pending[0].id)
            if not pending:
                return AssignmentMatch.none()
            return AssignmentMatch.mass_unclear()

        if not claims_completion(message):
            return AssignmentMatch.none()

        if not pending:
            return AssignmentMatch.none()
        if len(pending) == 1:
            return AssignmentMatch.matched(pending[0].id)

        message_categories = keyword_categories(message)
        if message_categories:
            for item in pending:
                if message_categories & keyword_categories(assignment_text(item.response)):
                    return AssignmentMatch.matched(item.id)

        return AssignmentMatch.unclear()
