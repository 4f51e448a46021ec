from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from realitypatch.accountability.resolver import is_assignment, pending_assignments
from realitypatch.schemas.records import Interaction, UserRecord


def epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def next_interaction_id(record: UserRecord, now: datetime) -> int:
    """Creation time in epoch ms, bumped past the newest id so two appends in one tick differ."""
    candidate = epoch_millis(now)
    if record.history:
        newest = max(item.id for item in record.history)
        if candidate <= newest:
            candidate = newest + 1
    return candidate


def prune(record: UserRecord, max_len: int) -> int:
    """Drop the oldest entries beyond `max_len`. Returns how many were dropped."""
    overflow = len(record.history) - max(max_len, 0)
    if overflow <= 0:
        return 0
    del record.history[:overflow]
    return overflow


def append(
    record: UserRecord,
    user_input: str,
    response: str,
    is_follow_up: bool,
    max_len: int,
    now: Optional[datetime] = None,
) -> Interaction:
    now = now or datetime.now(timezone.utc)
    interaction = Interaction(
        id=next_interaction_id(record, now),
        input=user_input,
        response=response,
        timestamp=now,
        is_follow_up=is_follow_up,
        completed=False,
    )
    record.history.append(interaction)
    prune(record, max_len)
    return interaction


def _find(record: UserRecord, assignment_id: int) -> Optional[Interaction]:
    for item in record.history:
        if item.id == assignment_id:
            return item
    # Ids from older clients were the timestamp in ms
    for item in record.history:
        if epoch_millis(item.timestamp) == assignment_id:
            return item
    return None


def mark_completed(
    record: UserRecord, assignment_id: int, now: Optional[datetime] = None
) -> Optional[Interaction]:
    """
    Flag an assignment as done. Lookup order: exact id, timestamp in ms, then the
    most recent pending assignment. Returns the completed interaction, or None when
    nothing eligible was found.
    """
    now = now or datetime.now(timezone.utc)

    target = _find(record, assignment_id)
    if target is None:
        pending = pending_assignments(record.history, window=len(record.history))
        target = pending[-1] if pending else None

    if target is None or not is_assignment(target):
        return None

    if not target.completed:
        target.completed = True
        target.completed_at = now
    return target


def import_legacy(items: List[Dict[str, Any]], now: Optional[datetime] = None) -> List[Interaction]:
    """Convert history saved by the browser client into interactions, skipping unusable entries."""
    now = now or datetime.now(timezone.utc)
    imported: List[Interaction] = []
    last_id = 0
    for raw in items:
        if not isinstance(raw, dict) or not raw.get("input") or not raw.get("response"):
            continue
        data = {key: value for key, value in raw.items() if key != "id"}
        data.setdefault("timestamp", now)
        try:
            interaction = Interaction.model_validate(data | {"id": 0})
        except ValueError:
            continue

        if interaction.timestamp.tzinfo is None:
            interaction.timestamp = interaction.timestamp.replace(tzinfo=timezone.utc)
        if interaction.completed_at is not None and interaction.completed_at.tzinfo is None:
            interaction.completed_at = interaction.completed_at.replace(tzinfo=timezone.utc)
        if interaction.completed and interaction.completed_at is None:
            interaction.completed_at = interaction.timestamp

        try:
            candidate = int(raw.get("id"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            candidate = epoch_millis(interaction.timestamp)
        interaction.id = candidate if candidate > last_id else last_id + 1
        last_id = interaction.id

        imported.append(interaction)
    return imported
