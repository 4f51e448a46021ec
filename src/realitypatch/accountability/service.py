"""
Request-level operations over the record store: submit a message, fetch user
data, grant credits, migrate legacy browser data.

Every write is a read-modify-write guarded by the record version. When a
concurrent request wins the race the mutation is re-applied to a fresh read,
so usage counts, credit balances and history appends are never lost. A fresh
read that shows the quota already spent denies the submission instead of
committing it. The model is called once per submission, before the commit loop.
"""

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union
from litestar.types.protocols import Logger
from pydantic_ai import Agent

from realitypatch.accountability.classifier import FollowUpClassifier, KeywordFollowUpClassifier
from realitypatch.accountability.context import build_context
from realitypatch.accountability.history import append, import_legacy, mark_completed, prune
from realitypatch.accountability.ledger import (
    Allowance,
    GrantResult,
    add_credits,
    check_allowance,
    effective_count,
    effective_extra_credits,
    expire_credits,
    record_request,
    today_utc,
    utc_now,
    verify_credits,
)
from realitypatch.accountability.resolver import (
    AssignmentMatch,
    AssignmentResolver,
    KeywordAssignmentResolver,
    MatchKind,
    completed_assignments,
    pending_assignments,
)
from realitypatch.database.manager import RecordStore
from realitypatch.errors import GenerationError, MalformedInputError, VersionConflictError
from realitypatch.schemas.api import MigrateRequest, MigrationSummary
from realitypatch.schemas.records import Interaction, StoredRecord, UserRecord

SESSION_ALPHABET = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class SessionPolicy:
    daily_limit: int = 10
    max_history: int = 50
    pending_window: int = 5
    completed_context: int = 3
    follow_up_threshold: timedelta = timedelta(hours=12)
    default_expiry_hours: float = 24
    conflict_retries: int = 5
    verify_attempts: int = 3
    verify_delay: float = 0.2
    max_input_chars: int = 4000

    @classmethod
    def from_settings(cls, settings: Any) -> "SessionPolicy":
        return cls(
            daily_limit=int(settings.quota.daily_limit),
            max_history=int(settings.history.max_retention),
            pending_window=int(settings.history.pending_window),
            completed_context=int(settings.history.completed_context),
            follow_up_threshold=timedelta(hours=float(settings.follow_up.threshold_hours)),
            default_expiry_hours=float(settings.credits.default_expiry_hours),
            conflict_retries=int(settings["store"].conflict_retries),
            verify_attempts=int(settings.credits.verify_attempts),
            verify_delay=float(settings.credits.verify_delay_seconds),
        )


@dataclass(frozen=True)
class SubmitResult:
    text: str
    session_id: str
    is_follow_up: bool
    completed_assignment_id: Optional[int]
    match: AssignmentMatch
    using_credit: bool
    count: int
    remaining: int
    limit: int


@dataclass(frozen=True)
class QuotaDenied:
    session_id: str
    allowance: Allowance


@dataclass(frozen=True)
class UserData:
    record: UserRecord
    count: int
    remaining: int
    limit: int
    extra_credits: int
    last_sync: datetime


@dataclass(frozen=True)
class MigrationOutcome:
    success: bool
    migrated: MigrationSummary
    preserve_local_data: bool


def generate_session_id(now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    suffix = "".join(secrets.choice(SESSION_ALPHABET) for _ in range(9))
    return f"user_{int(now.timestamp() * 1000)}_{suffix}"


def _short(session_id: str) -> str:
    return session_id[:20]


def _require_session(session_id: Optional[str]) -> str:
    if not session_id or not session_id.strip():
        raise MalformedInputError("Session ID required")
    return session_id.strip()


def _fresh(stored: Optional[StoredRecord], now: datetime) -> UserRecord:
    return stored.record if stored else UserRecord.new(now)


async def submit_message(
    store: RecordStore,
    assistant: Agent[None, str],
    text: Optional[str],
    policy: SessionPolicy,
    logger: Logger,
    session_id: Optional[str] = None,
    now: Optional[datetime] = None,
    classifier: Optional[FollowUpClassifier] = None,
    resolver: Optional[AssignmentResolver] = None,
) -> Union[SubmitResult, QuotaDenied]:
    now = now or utc_now()
    text = (text or "").strip()
    if not text:
        raise MalformedInputError("userInput is required")
    if len(text) > policy.max_input_chars:
        raise MalformedInputError(f"userInput exceeds {policy.max_input_chars} characters")

    session_id = (session_id or "").strip() or generate_session_id(now)
    classifier = classifier or KeywordFollowUpClassifier(policy.follow_up_threshold)
    resolver = resolver or KeywordAssignmentResolver(policy.pending_window)

    stored = await store.get(session_id, now=now)
    record = _fresh(stored, now)
    expire_credits(record, now)

    allowance = check_allowance(record, policy.daily_limit, now)
    if not allowance.allowed:
        logger.info(
            "Quota exhausted for %s (%d/%d, no credits)",
            _short(session_id),
            allowance.count,
            allowance.limit,
        )
        return QuotaDenied(session_id=session_id, allowance=allowance)

    last = record.history[-1] if record.history else None
    is_follow_up = classifier.classify(text, last, now)
    match = resolver.resolve(text, record.history) if is_follow_up else AssignmentMatch.none()
    pending = pending_assignments(record.history, policy.pending_window)
    completed = completed_assignments(record.history, policy.completed_context)
    context = build_context(text, last, is_follow_up, pending, completed, match, now)

    logger.info(
        "Submitting for %s (follow_up=%s, pending=%d, match=%s)",
        _short(session_id),
        is_follow_up,
        len(pending),
        match.kind.value,
    )
    try:
        result = await assistant.run(context)
    except Exception as e:
        logger.error("Generation failed for %s: %s", _short(session_id), e)
        raise GenerationError("AI service temporarily unavailable. Please try again.") from e
    response = result.output

    for attempt in range(policy.conflict_retries + 1):
        if attempt:
            stored = await store.get(session_id, now=now)
            record = _fresh(stored, now)

        charged = record_request(record, policy.daily_limit, now)
        if not charged.allowed:
            # A concurrent request took the last unit; the generated text is discarded
            logger.warning("Quota for %s used up by a concurrent request", _short(session_id))
            return QuotaDenied(session_id=session_id, allowance=charged)

        completed_item: Optional[Interaction] = None
        if match.kind == MatchKind.MATCHED and match.assignment_id is not None:
            completed_item = mark_completed(record, match.assignment_id, now)

        interaction = append(record, text, response, is_follow_up, policy.max_history, now)
        try:
            await store.put(session_id, record, stored.version if stored else None, now=now)
            break
        except VersionConflictError:
            if attempt == policy.conflict_retries:
                raise
            logger.warning(
                "Write for %s lost a race, retrying (%d/%d)",
                _short(session_id),
                attempt + 1,
                policy.conflict_retries,
            )

    count = effective_count(record, now)
    logger.info(
        "Created interaction %d for %s (completed=%s)",
        interaction.id,
        _short(session_id),
        completed_item.id if completed_item else None,
    )
    return SubmitResult(
        text=response,
        session_id=session_id,
        is_follow_up=is_follow_up,
        completed_assignment_id=completed_item.id if completed_item else None,
        match=match,
        using_credit=charged.using_credit,
        count=count,
        remaining=max(0, policy.daily_limit - count),
        limit=policy.daily_limit,
    )


async def fetch_user_data(
    store: RecordStore,
    session_id: Optional[str],
    policy: SessionPolicy,
    logger: Logger,
    now: Optional[datetime] = None,
) -> UserData:
    session_id = _require_session(session_id)
    now = now or utc_now()

    stored = await store.get(session_id, now=now)
    record = _fresh(stored, now)
    if expire_credits(record, now) and stored is not None:
        try:
            await store.put(session_id, record, stored.version, now=now)
            logger.info("Cleared expired credits for %s", _short(session_id))
        except VersionConflictError:
            # The concurrent writer clears them on its own path
            logger.info("Skipped expired-credit cleanup for %s, record changed", _short(session_id))

    allowance = check_allowance(record, policy.daily_limit, now)
    return UserData(
        record=record,
        count=allowance.count,
        remaining=allowance.remaining,
        limit=allowance.limit,
        extra_credits=effective_extra_credits(record, now),
        last_sync=now,
    )


async def grant_credits(
    store: RecordStore,
    session_id: Optional[str],
    amount: int,
    policy: SessionPolicy,
    logger: Logger,
    expiry_hours: Optional[float] = None,
    now: Optional[datetime] = None,
) -> GrantResult:
    session_id = _require_session(session_id)
    if amount <= 0:
        raise MalformedInputError("amount must be positive")
    if expiry_hours is not None and expiry_hours <= 0:
        raise MalformedInputError("expiryHours must be positive")

    return await add_credits(
        store,
        session_id,
        amount,
        expiry_hours or policy.default_expiry_hours,
        logger,
        now=now,
        conflict_retries=policy.conflict_retries,
        verify_attempts=policy.verify_attempts,
        verify_delay=policy.verify_delay,
    )


def parse_legacy_expiry(value: Optional[Union[int, str]]) -> Optional[datetime]:
    """Legacy clients stored credit expiry as epoch milliseconds; newer ones send ISO-8601."""
    if value is None or value == "":
        return None
    if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError as e:
        raise MalformedInputError(f"Unparseable creditsExpiry: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def migrate_legacy(
    store: RecordStore,
    session_id: Optional[str],
    payload: MigrateRequest,
    policy: SessionPolicy,
    logger: Logger,
    now: Optional[datetime] = None,
) -> MigrationOutcome:
    """
    Merge data the browser kept locally into the server record. Existing
    history and live credits are never overwritten.
    """
    session_id = _require_session(session_id)
    now = now or utc_now()
    legacy_expiry = parse_legacy_expiry(payload.credits_expiry)
    logger.info("Processing data migration for %s", _short(session_id))

    for attempt in range(policy.conflict_retries + 1):
        stored = await store.get(session_id, now=now)
        record = _fresh(stored, now)
        changed = expire_credits(record, now)
        summary = MigrationSummary()

        if payload.history and not record.history:
            record.history = import_legacy(payload.history, now)
            prune(record, policy.max_history)
            summary.history_items = len(record.history)
            changed = changed or bool(record.history)

        if payload.extra_credits > 0:
            if effective_extra_credits(record, now) > 0:
                logger.info("Skipping credit migration for %s, credits already present", _short(session_id))
            elif legacy_expiry is not None and legacy_expiry <= now:
                logger.info("Skipping credit migration for %s, legacy credits expired", _short(session_id))
            else:
                record.extra_credits = payload.extra_credits
                record.credits_expiry = legacy_expiry or now + timedelta(hours=policy.default_expiry_hours)
                summary.extra_credits = payload.extra_credits
                changed = True

        usage = payload.daily_usage
        if usage is not None and usage.count > 0:
            legacy_day = usage.last_reset or usage.date
            today = today_utc(now)
            if legacy_day == today or (legacy_day is None and stored is None):
                if record.usage.last_reset != today:
                    record.usage.count = 0
                    record.usage.last_reset = today
                record.usage.count = max(record.usage.count, usage.count)
                summary.daily_usage = record.usage.count
                changed = True

        if not changed:
            return MigrationOutcome(success=True, migrated=summary, preserve_local_data=False)

        try:
            await store.put(session_id, record, stored.version if stored else None, now=now)
            break
        except VersionConflictError:
            if attempt == policy.conflict_retries:
                raise
            logger.warning("Migration for %s lost a race, retrying", _short(session_id))

    if summary.extra_credits:
        verified = await verify_credits(
            store,
            session_id,
            minimum=summary.extra_credits,
            expiry_at_least=None,
            now=now,
            attempts=policy.verify_attempts,
            delay=policy.verify_delay,
        )
        if verified is None:
            logger.error("Migrated credits for %s did not verify", _short(session_id))
            return MigrationOutcome(success=False, migrated=summary, preserve_local_data=True)

    logger.info(
        "Migrated %d history items, %d credits, usage %d for %s",
        summary.history_items,
        summary.extra_credits,
        summary.daily_usage,
        _short(session_id),
    )
    return MigrationOutcome(success=True, migrated=summary, preserve_local_data=False)


async def analytics(store: RecordStore, now: Optional[datetime] = None) -> tuple[int, int]:
    """Total live users and requests counted today."""
    now = now or utc_now()
    return await store.stats(today_utc(now), now=now)
