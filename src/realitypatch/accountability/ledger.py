"""
Daily quota and bonus credit bookkeeping for a user record.

The daily counter is scoped to the UTC calendar day. Bonus credits are only
spent once the daily quota is used up, and are void from `credits_expiry` on.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from litestar.types.protocols import Logger

from realitypatch.database.manager import RecordStore
from realitypatch.errors import VersionConflictError
from realitypatch.schemas.records import UserRecord


@dataclass(frozen=True)
class Allowance:
    allowed: bool
    using_credit: bool
    count: int
    remaining: int
    limit: int
    extra_credits: int
    resets_at: datetime


@dataclass(frozen=True)
class GrantResult:
    success: bool
    total: int
    expiry: Optional[datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today_utc(now: datetime) -> str:
    return now.astimezone(timezone.utc).date().isoformat()


def next_reset(now: datetime) -> datetime:
    """Start of the next UTC day."""
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


def credits_expired(record: UserRecord, now: datetime) -> bool:
    return record.credits_expiry is not None and now >= record.credits_expiry


def effective_extra_credits(record: UserRecord, now: datetime) -> int:
    if credits_expired(record, now):
        return 0
    return max(record.extra_credits, 0)


def expire_credits(record: UserRecord, now: datetime) -> bool:
    """Zero out stored credits whose expiry has passed. Returns True if the record changed."""
    if credits_expired(record, now) and (record.extra_credits or record.credits_expiry):
        record.extra_credits = 0
        record.credits_expiry = None
        return True
    return False


def effective_count(record: UserRecord, now: datetime) -> int:
    """Today's request count; a counter last reset on an earlier day reads as 0."""
    if record.usage.last_reset != today_utc(now):
        return 0
    return record.usage.count


def check_allowance(record: UserRecord, daily_limit: int, now: Optional[datetime] = None) -> Allowance:
    """Decide whether one more request is allowed. Never mutates the record."""
    now = now or utc_now()
    count = effective_count(record, now)
    extra = effective_extra_credits(record, now)
    under_limit = count < daily_limit
    return Allowance(
        allowed=under_limit or extra > 0,
        using_credit=not under_limit and extra > 0,
        count=count,
        remaining=max(0, daily_limit - count),
        limit=daily_limit,
        extra_credits=extra,
        resets_at=next_reset(now),
    )


def record_request(record: UserRecord, daily_limit: int, now: Optional[datetime] = None) -> Allowance:
    """
    Charge one request to the record: the daily counter while under the limit,
    otherwise one bonus credit. Returns the allowance the charge was based on;
    a disallowed request leaves the record untouched.
    """
    now = now or utc_now()
    expire_credits(record, now)
    allowance = check_allowance(record, daily_limit, now)
    if not allowance.allowed:
        return allowance

    if allowance.using_credit:
        record.extra_credits = max(0, record.extra_credits - 1)
        return allowance

    today = today_utc(now)
    if record.usage.last_reset != today:
        record.usage.count = 1
        record.usage.last_reset = today
    else:
        record.usage.count += 1
    return allowance


def apply_grant(
    record: UserRecord, amount: int, expiry_hours: float, now: Optional[datetime] = None
) -> GrantResult:
    """Add credits in memory and push the expiry out to now + expiry_hours."""
    now = now or utc_now()
    expire_credits(record, now)
    record.extra_credits = max(record.extra_credits, 0) + amount
    record.credits_expiry = now + timedelta(hours=expiry_hours)
    return GrantResult(success=True, total=record.extra_credits, expiry=record.credits_expiry)


async def add_credits(
    store: RecordStore,
    session_id: str,
    amount: int,
    expiry_hours: float,
    logger: Logger,
    now: Optional[datetime] = None,
    conflict_retries: int = 5,
    verify_attempts: int = 3,
    verify_delay: float = 0.2,
) -> GrantResult:
    """
    Persist a credit grant and only report success once a fresh read shows it.

    The write is conditional on the version read, so a concurrent request
    spending a credit cannot erase the grant. Persistence failures propagate;
    a write that does not read back returns success=False.
    """
    now = now or utc_now()
    session = session_id[:20]

    for attempt in range(conflict_retries + 1):
        stored = await store.get(session_id, now=now)
        record = stored.record if stored else UserRecord.new(now)
        expected = apply_grant(record, amount, expiry_hours, now)
        try:
            await store.put(session_id, record, stored.version if stored else None, now=now)
            break
        except VersionConflictError:
            if attempt == conflict_retries:
                raise
            logger.warning("Credit grant for %s lost a race, retrying (%d/%d)", session, attempt + 1, conflict_retries)

    verified = await verify_credits(
        store,
        session_id,
        minimum=amount,
        expiry_at_least=expected.expiry,
        now=now,
        attempts=verify_attempts,
        delay=verify_delay,
    )
    if verified is None:
        logger.error("Credit grant for %s did not verify after %d reads", session, verify_attempts)
        return GrantResult(success=False, total=0, expiry=None)

    total = effective_extra_credits(verified, now)
    logger.info("Granted %d credits to %s, total %d", amount, session, total)
    return GrantResult(success=True, total=total, expiry=verified.credits_expiry)


async def verify_credits(
    store: RecordStore,
    session_id: str,
    minimum: int,
    expiry_at_least: Optional[datetime],
    now: datetime,
    attempts: int = 3,
    delay: float = 0.2,
) -> Optional[UserRecord]:
    """Re-read until the stored record shows at least `minimum` live credits, or give up."""
    for attempt in range(attempts):
        stored = await store.get(session_id, now=now)
        if stored is not None:
            record = stored.record
            expiry_ok = expiry_at_least is None or (
                record.credits_expiry is not None and record.credits_expiry >= expiry_at_least
            )
            if expiry_ok and effective_extra_credits(record, now) >= minimum:
                return record
        if attempt < attempts - 1:
            await asyncio.sleep(delay)
    return None
