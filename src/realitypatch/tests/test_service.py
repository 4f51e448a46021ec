"""Tests for the request-level session operations against a real record store."""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from realitypatch.accountability.history import epoch_millis
from realitypatch.accountability.service import (
    QuotaDenied,
    SessionPolicy,
    SubmitResult,
    analytics,
    fetch_user_data,
    generate_session_id,
    grant_credits,
    migrate_legacy,
    parse_legacy_expiry,
    submit_message,
)
from realitypatch.errors import GenerationError, MalformedInputError
from realitypatch.schemas.api import MigrateRequest
from realitypatch.tests.utils import (
    NOW,
    MockLogger,
    assignment,
    create_store,
    failing_assistant,
    make_interaction,
    make_record,
    scripted_assistant,
)

SESSION = "user_1773500400000_abc123xyz"
POLICY = SessionPolicy(verify_delay=0)


def test_generated_session_ids_are_unique_and_timestamped():
    first = generate_session_id(NOW)
    second = generate_session_id(NOW)

    assert first != second
    prefix, millis, suffix = first.split("_")
    assert prefix == "user"
    assert int(millis) == epoch_millis(NOW)
    assert len(suffix) == 9


def test_policy_reads_settings():
    from realitypatch.config import settings

    policy = SessionPolicy.from_settings(settings)
    assert policy.daily_limit == 10
    assert policy.max_history == 50
    assert policy.follow_up_threshold == timedelta(hours=12)


@pytest.mark.asyncio
async def test_first_message_is_sent_verbatim_and_stored(tmp_path):
    store = await create_store(tmp_path)
    agent, prompts = scripted_assistant(assignment("write three business ideas"))
    try:
        result = await submit_message(
            store, agent, "  I keep waiting for the perfect moment  ", POLICY, MockLogger(), session_id=SESSION, now=NOW
        )

        assert isinstance(result, SubmitResult)
        assert result.is_follow_up is False
        assert result.completed_assignment_id is None
        assert result.count == 1
        assert result.remaining == 9
        assert prompts == ["I keep waiting for the perfect moment"]

        stored = await store.get(SESSION, now=NOW)
        assert stored is not None
        assert len(stored.record.history) == 1
        interaction = stored.record.history[0]
        assert interaction.id == epoch_millis(NOW)
        assert interaction.input == "I keep waiting for the perfect moment"
        assert interaction.response == assignment("write three business ideas")
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_missing_session_gets_a_generated_id(tmp_path):
    store = await create_store(tmp_path)
    agent, _ = scripted_assistant()
    try:
        result = await submit_message(store, agent, "help", POLICY, MockLogger(), now=NOW)
        assert result.session_id.startswith("user_")
        assert await store.get(result.session_id, now=NOW) is not None
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_reporting_back_on_the_only_assignment_completes_it(tmp_path):
    store = await create_store(tmp_path)
    await store.put(SESSION, make_record(make_interaction(1, timestamp=NOW - timedelta(hours=2))), None, now=NOW)
    agent, prompts = scripted_assistant(assignment("pitch one idea to a friend"))
    try:
        result = await submit_message(store, agent, "I did it, wrote all three", POLICY, MockLogger(), session_id=SESSION, now=NOW)

        assert result.is_follow_up is True
        assert result.completed_assignment_id == 1
        assert "Judge whether they actually completed" in prompts[0]

        history = (await store.get(SESSION, now=NOW)).record.history
        assert history[0].completed is True
        assert history[0].completed_at == NOW
        assert history[1].is_follow_up is True
        assert history[1].completed is False
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_report_is_matched_to_the_assignment_it_describes(tmp_path):
    store = await create_store(tmp_path)
    record = make_record(
        make_interaction(1, response=assignment("write down three business ideas"), timestamp=NOW - timedelta(days=2)),
        make_interaction(2, response=assignment("call your sister and apologise"), timestamp=NOW - timedelta(days=1)),
    )
    await store.put(SESSION, record, None, now=NOW)
    agent, prompts = scripted_assistant()
    try:
        result = await submit_message(store, agent, "I called my sister yesterday", POLICY, MockLogger(), session_id=SESSION, now=NOW)

        assert result.completed_assignment_id == 2
        assert "reporting on assignment 2" in prompts[0]
        history = (await store.get(SESSION, now=NOW)).record.history
        assert [item.completed for item in history] == [False, True, False]
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_vague_claim_over_several_assignments_completes_nothing(tmp_path):
    store = await create_store(tmp_path)
    record = make_record(
        make_interaction(1, response=assignment("write down three business ideas"), timestamp=NOW - timedelta(days=2)),
        make_interaction(2, response=assignment("call your sister and apologise"), timestamp=NOW - timedelta(days=1)),
    )
    await store.put(SESSION, record, None, now=NOW)
    agent, prompts = scripted_assistant()
    try:
        result = await submit_message(store, agent, "did everything", POLICY, MockLogger(), session_id=SESSION, now=NOW)

        assert result.is_follow_up is True
        assert result.completed_assignment_id is None
        assert "outstanding assignments" in prompts[0]
        assert "Do not accept this" in prompts[0]
        history = (await store.get(SESSION, now=NOW)).record.history
        assert not any(item.completed for item in history)
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_quota_exhausted_without_credits_is_denied(tmp_path):
    store = await create_store(tmp_path)
    record = make_record()
    record.usage.count = 10
    await store.put(SESSION, record, None, now=NOW)
    agent, prompts = scripted_assistant()
    try:
        result = await submit_message(store, agent, "one more", POLICY, MockLogger(), session_id=SESSION, now=NOW)

        assert isinstance(result, QuotaDenied)
        assert result.allowance.remaining == 0
        assert result.allowance.resets_at == datetime(2026, 3, 15, tzinfo=timezone.utc)
        assert prompts == []
        assert (await store.get(SESSION, now=NOW)).version == 1
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_requests_past_the_limit_spend_credits(tmp_path):
    store = await create_store(tmp_path)
    record = make_record()
    record.usage.count = 10
    record.extra_credits = 2
    record.credits_expiry = NOW + timedelta(hours=1)
    await store.put(SESSION, record, None, now=NOW)
    agent, _ = scripted_assistant()
    try:
        result = await submit_message(store, agent, "one more", POLICY, MockLogger(), session_id=SESSION, now=NOW)

        assert result.using_credit is True
        stored = (await store.get(SESSION, now=NOW)).record
        assert stored.extra_credits == 1
        assert stored.usage.count == 10
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_generation_failure_writes_nothing(tmp_path):
    store = await create_store(tmp_path)
    logger = MockLogger()
    try:
        with pytest.raises(GenerationError) as exc_info:
            await submit_message(store, failing_assistant(), "hello", POLICY, logger, session_id=SESSION, now=NOW)

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 502
        assert await store.get(SESSION, now=NOW) is None
        assert any("Generation failed" in message for message in logger.messages("error"))
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_blank_and_oversized_input_are_rejected(tmp_path):
    store = await create_store(tmp_path)
    agent, prompts = scripted_assistant()
    try:
        with pytest.raises(MalformedInputError):
            await submit_message(store, agent, "   ", POLICY, MockLogger(), session_id=SESSION, now=NOW)
        with pytest.raises(MalformedInputError):
            await submit_message(store, agent, "x" * 4001, POLICY, MockLogger(), session_id=SESSION, now=NOW)
        assert prompts == []
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_concurrent_submissions_lose_no_updates(tmp_path):
    store = await create_store(tmp_path)
    agent, _ = scripted_assistant()
    try:
        results = await asyncio.gather(
            *(
                submit_message(store, agent, f"message {i}", POLICY, MockLogger(), session_id=SESSION, now=NOW)
                for i in range(5)
            )
        )

        assert all(isinstance(result, SubmitResult) for result in results)
        record = (await store.get(SESSION, now=NOW)).record
        assert record.usage.count == 5
        assert sorted(item.input for item in record.history) == [f"message {i}" for i in range(5)]
        assert len({item.id for item in record.history}) == 5
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_fetch_user_data_clears_expired_credits(tmp_path):
    store = await create_store(tmp_path)
    record = make_record(make_interaction(1))
    record.usage.count = 3
    record.extra_credits = 4
    record.credits_expiry = NOW - timedelta(hours=1)
    await store.put(SESSION, record, None, now=NOW)
    try:
        data = await fetch_user_data(store, SESSION, POLICY, MockLogger(), now=NOW)

        assert data.extra_credits == 0
        assert data.count == 3
        assert data.remaining == 7
        assert len(data.record.history) == 1

        stored = await store.get(SESSION, now=NOW)
        assert stored.version == 2
        assert stored.record.extra_credits == 0
        assert stored.record.credits_expiry is None
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_fetch_user_data_for_unknown_session_writes_nothing(tmp_path):
    store = await create_store(tmp_path)
    try:
        data = await fetch_user_data(store, "user_unknown", POLICY, MockLogger(), now=NOW)
        assert data.record.history == []
        assert data.remaining == 10
        assert await store.get("user_unknown", now=NOW) is None

        with pytest.raises(MalformedInputError):
            await fetch_user_data(store, "", POLICY, MockLogger(), now=NOW)
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_grant_credits_validates_input(tmp_path):
    store = await create_store(tmp_path)
    try:
        with pytest.raises(MalformedInputError):
            await grant_credits(store, None, 10, POLICY, MockLogger(), now=NOW)
        with pytest.raises(MalformedInputError):
            await grant_credits(store, SESSION, 0, POLICY, MockLogger(), now=NOW)
        with pytest.raises(MalformedInputError):
            await grant_credits(store, SESSION, 10, POLICY, MockLogger(), expiry_hours=-1, now=NOW)

        result = await grant_credits(store, SESSION, 10, POLICY, MockLogger(), now=NOW)
        assert result.success is True
        assert result.expiry == NOW + timedelta(hours=24)
    finally:
        await store.db_pool.close()


def test_parse_legacy_expiry_accepts_millis_and_iso():
    millis = epoch_millis(NOW)
    assert parse_legacy_expiry(millis) == NOW
    assert parse_legacy_expiry(str(millis)) == NOW
    assert parse_legacy_expiry("2026-03-14T15:00:00") == NOW
    assert parse_legacy_expiry("2026-03-14T15:00:00+00:00") == NOW
    assert parse_legacy_expiry(None) is None

    with pytest.raises(MalformedInputError):
        parse_legacy_expiry("next tuesday")


def _legacy_payload(**overrides) -> MigrateRequest:
    data = {
        "history": [
            {
                "id": 1773400000000,
                "input": "I procrastinate",
                "response": assignment("write three business ideas"),
                "timestamp": "2026-03-13T12:00:00Z",
            },
            {
                "id": 1773450000000,
                "input": "I did it",
                "response": assignment("pitch one of them"),
                "timestamp": "2026-03-14T01:00:00Z",
                "isFollowUp": True,
            },
        ],
        "dailyUsage": {"count": 3, "lastReset": "2026-03-14"},
        "extraCredits": 5,
        "creditsExpiry": epoch_millis(NOW + timedelta(hours=1)),
    }
    data.update(overrides)
    return MigrateRequest.model_validate(data)


@pytest.mark.asyncio
async def test_migration_into_an_empty_record(tmp_path):
    store = await create_store(tmp_path)
    try:
        outcome = await migrate_legacy(store, SESSION, _legacy_payload(), POLICY, MockLogger(), now=NOW)

        assert outcome.success is True
        assert outcome.preserve_local_data is False
        assert outcome.migrated.history_items == 2
        assert outcome.migrated.extra_credits == 5
        assert outcome.migrated.daily_usage == 3

        record = (await store.get(SESSION, now=NOW)).record
        assert [item.input for item in record.history] == ["I procrastinate", "I did it"]
        assert record.extra_credits == 5
        assert record.credits_expiry == NOW + timedelta(hours=1)
        assert record.usage.count == 3
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_migration_never_overwrites_server_data(tmp_path):
    store = await create_store(tmp_path)
    record = make_record(make_interaction(1, input="server side"))
    record.usage.count = 6
    record.extra_credits = 2
    record.credits_expiry = NOW + timedelta(hours=5)
    await store.put(SESSION, record, None, now=NOW)
    try:
        outcome = await migrate_legacy(store, SESSION, _legacy_payload(), POLICY, MockLogger(), now=NOW)

        assert outcome.success is True
        assert outcome.migrated.history_items == 0
        assert outcome.migrated.extra_credits == 0

        stored = (await store.get(SESSION, now=NOW)).record
        assert [item.input for item in stored.history] == ["server side"]
        assert stored.extra_credits == 2
        assert stored.credits_expiry == NOW + timedelta(hours=5)
        assert stored.usage.count == 6
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_migration_skips_expired_credits_and_stale_usage(tmp_path):
    store = await create_store(tmp_path)
    payload = _legacy_payload(
        history=[],
        creditsExpiry=epoch_millis(NOW - timedelta(hours=1)),
        dailyUsage={"count": 9, "lastReset": "2026-03-13"},
    )
    try:
        outcome = await migrate_legacy(store, SESSION, payload, POLICY, MockLogger(), now=NOW)

        assert outcome.success is True
        assert outcome.migrated.extra_credits == 0
        assert outcome.migrated.daily_usage == 0
        assert await store.get(SESSION, now=NOW) is None
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_migration_requires_session_and_valid_expiry(tmp_path):
    store = await create_store(tmp_path)
    try:
        with pytest.raises(MalformedInputError):
            await migrate_legacy(store, None, _legacy_payload(), POLICY, MockLogger(), now=NOW)
        with pytest.raises(MalformedInputError):
            await migrate_legacy(store, SESSION, _legacy_payload(creditsExpiry="soon"), POLICY, MockLogger(), now=NOW)
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_analytics_counts_users_and_todays_usage(tmp_path):
    store = await create_store(tmp_path)
    agent, _ = scripted_assistant()
    try:
        await submit_message(store, agent, "first", POLICY, MockLogger(), session_id="user_a", now=NOW)
        await submit_message(store, agent, "second", POLICY, MockLogger(), session_id="user_a", now=NOW)
        await submit_message(store, agent, "third", POLICY, MockLogger(), session_id="user_b", now=NOW)

        assert await analytics(store, now=NOW) == (2, 3)
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_concurrent_submissions_cannot_exceed_the_daily_limit(tmp_path):
    store = await create_store(tmp_path)
    record = make_record()
    record.usage.count = 9
    await store.put(SESSION, record, None, now=NOW)
    agent, _ = scripted_assistant()
    try:
        results = await asyncio.gather(
            *(
                submit_message(store, agent, f"message {i}", POLICY, MockLogger(), session_id=SESSION, now=NOW)
                for i in range(5)
            )
        )

        served = [result for result in results if isinstance(result, SubmitResult)]
        denied = [result for result in results if isinstance(result, QuotaDenied)]
        assert len(served) == 1
        assert len(denied) == 4
        assert all(result.allowance.remaining == 0 for result in denied)

        stored = (await store.get(SESSION, now=NOW)).record
        assert stored.usage.count == 10
        assert len(stored.history) == 1
    finally:
        await store.db_pool.close()


@pytest.mark.asyncio
async def test_plain_completion_report_within_the_threshold_completes_the_assignment(tmp_path):
    store = await create_store(tmp_path)
    pending = make_interaction(1, response=assignment("call your sister about the loan"), timestamp=NOW - timedelta(hours=2))
    await store.put(SESSION, make_record(pending), None, now=NOW)
    agent, _ = scripted_assistant()
    try:
        result = await submit_message(store, agent, "I called my sister this morning", POLICY, MockLogger(), session_id=SESSION, now=NOW)

        assert result.is_follow_up is True
        assert result.completed_assignment_id == 1
        assert (await store.get(SESSION, now=NOW)).record.history[0].completed is True
    finally:
        await store.db_pool.close()
