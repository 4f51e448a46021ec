"""Builds the text handed to the generator for a message, given what the user still owes."""

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from realitypatch.accountability.phrases import claims_mass_completion
from realitypatch.accountability.resolver import AssignmentMatch, MatchKind
from realitypatch.schemas.records import Interaction


def elapsed_label(timestamp: datetime, now: datetime) -> str:
    days = (now - timestamp).days
    if days <= 0:
        return "today"
    if days == 1:
        return "1 day ago"
    return f"{days} days ago"


def _completed_section(completed: Sequence[Interaction], now: datetime) -> List[str]:
    if not completed:
        return []
    lines = ["Assignments the user already completed:"]
    for item in completed:
        when = elapsed_label(item.completed_at or item.timestamp, now)
        lines.append(f'- "{item.input}" (completed {when})')
    return lines


def build_context(
    message: str,
    last_interaction: Optional[Interaction],
    is_follow_up: bool,
    pending: Sequence[Interaction],
    completed: Sequence[Interaction],
    match: Optional[AssignmentMatch] = None,
    now: Optional[datetime] = None,
) -> str:
    if not is_follow_up:
        return message

    now = now or datetime.now(timezone.utc)
    lines: List[str] = ["FOLLOW-UP."]

    if not pending:
        completed_lines = _completed_section(completed, now)
        if completed_lines:
            lines.extend(completed_lines)
        elif last_interaction is not None:
            lines.append(f'Previous situation: "{last_interaction.input}"')
            lines.append(f'My last response: "{last_interaction.response}"')
        lines.append(f'User now says: "{message}"')
        lines.append(
            "Nothing is outstanding. Acknowledge their progress and issue the next assignment."
        )
        return "\n".join(lines)

    if len(pending) == 1:
        assignment = pending[0]
        lines.append(
            f'Original situation ({elapsed_label(assignment.timestamp, now)}): "{assignment.input}"'
        )
        lines.append(f'The assignment was given in this response: "{assignment.response}"')
        lines.extend(_completed_section(completed, now))
        lines.append(f'User now says: "{message}"')
        lines.append(
            "Judge whether they actually completed the assignment or are making an excuse. "
            "Acknowledge real completion, call out excuses, then give the next assignment."
        )
        return "\n".join(lines)

    lines.append(f"The user has {len(pending)} outstanding assignments:")
    for number, assignment in enumerate(pending, start=1):
        lines.append(
            f'{number}. ({elapsed_label(assignment.timestamp, now)}) situation "{assignment.input}"; '
            f'assignment given in: "{assignment.response}"'
        )
    lines.extend(_completed_section(completed, now))
    lines.append(f'User now says: "{message}"')

    if (match is not None and match.kind == MatchKind.MASS_UNCLEAR) or claims_mass_completion(message):
        lines.append(
            "They claim to have done everything without saying what they did. Do not accept this. "
            "Challenge the vagueness and ask for concrete specifics on each assignment before "
            "giving credit for any of them."
        )
    elif match is not None and match.kind == MatchKind.MATCHED:
        number = next(
            (n for n, item in enumerate(pending, start=1) if item.id == match.assignment_id),
            None,
        )
        lines.append(
            f"They appear to be reporting on assignment {number}. Judge that one, then remind them "
            "what is still outstanding from the others."
        )
    else:
        lines.append(
            "It is unclear which assignment they mean. Ask them to say which one, "
            "and respond to each assignment separately."
        )
    return "\n".join(lines)
