from typing import Optional
from litestar import get, Request, Response
from litestar.di import Provide
from litestar.params import Dependency, Parameter

from realitypatch.accountability.service import SessionPolicy, analytics, fetch_user_data
from realitypatch.database.manager import RecordStore
from realitypatch.dependencies import get_policy, get_record_store
from realitypatch.schemas.api import AnalyticsResponse, CreditsSummary, UsageSummary, UserDataResponse


@get(
    ["/api/user-data", "/api/history"],
    dependencies={"record_store": Provide(get_record_store), "policy": Provide(get_policy)},
)
async def handle_user_data(
    request: Request,
    record_store: RecordStore,
    policy: SessionPolicy = Dependency(skip_validation=True),
    session_id: Optional[str] = Parameter(query="sessionId", default=None),
    header_session_id: Optional[str] = Parameter(header="X-Session-ID", default=None),
) -> Response:
    """History, usage and credits for a session."""
    user_data = await fetch_user_data(
        record_store, session_id or header_session_id, policy, request.logger
    )
    body = UserDataResponse(
        history=user_data.record.history,
        usage=UsageSummary(count=user_data.count, remaining=user_data.remaining, limit=user_data.limit),
        credits=CreditsSummary(
            extra=user_data.extra_credits,
            expiry=user_data.record.credits_expiry if user_data.extra_credits else None,
        ),
        last_sync=user_data.last_sync,
    )
    return Response(
        content=body.model_dump(mode="json", by_alias=True),
        status_code=200,
        headers={"Cache-Control": "no-cache"},
    )


@get("/api/analytics", dependencies={"record_store": Provide(get_record_store)})
async def handle_analytics(record_store: RecordStore) -> Response:
    total_users, daily_usage = await analytics(record_store)
    body = AnalyticsResponse(total_users=total_users, daily_usage=daily_usage)
    return Response(content=body.model_dump(mode="json", by_alias=True), status_code=200)
