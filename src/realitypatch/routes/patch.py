from typing import Optional
from litestar import post, Request, Response
from litestar.di import Provide
from litestar.params import Dependency, Parameter
from pydantic_ai import Agent

from realitypatch.accountability.service import QuotaDenied, SessionPolicy, submit_message
from realitypatch.database.manager import RecordStore
from realitypatch.dependencies import get_assistant, get_policy, get_record_store
from realitypatch.schemas.api import QuotaDeniedResponse, SubmitRequest, SubmitResponse, UsageSummary


@post(
    "/api/patch",
    status_code=200,
    dependencies={
        "record_store": Provide(get_record_store),
        "assistant": Provide(get_assistant),
        "policy": Provide(get_policy),
    },
)
async def handle_patch(
    request: Request,
    record_store: RecordStore,
    data: SubmitRequest,
    assistant: Agent = Dependency(skip_validation=True),
    policy: SessionPolicy = Dependency(skip_validation=True),
    session_id: Optional[str] = Parameter(header="X-Session-ID", default=None),
) -> Response:
    """Analyse a message, tracking follow-ups and assignment completion for the session."""
    outcome = await submit_message(
        record_store,
        assistant,
        data.user_input,
        policy,
        request.logger,
        session_id=session_id,
    )

    if isinstance(outcome, QuotaDenied):
        allowance = outcome.allowance
        denied = QuotaDeniedResponse(
            session_id=outcome.session_id,
            usage=UsageSummary(count=allowance.count, remaining=allowance.remaining, limit=allowance.limit),
            extra_credits=allowance.extra_credits,
            resets_at=allowance.resets_at,
        )
        return Response(
            content=denied.model_dump(mode="json", by_alias=True),
            status_code=429,
            headers={"X-Session-ID": outcome.session_id},
        )

    body = SubmitResponse(
        patch=outcome.text,
        session_id=outcome.session_id,
        is_follow_up=outcome.is_follow_up,
        completed_assignment_id=outcome.completed_assignment_id,
        using_credit=outcome.using_credit,
        usage=UsageSummary(count=outcome.count, remaining=outcome.remaining, limit=outcome.limit),
    )
    return Response(
        content=body.model_dump(mode="json", by_alias=True),
        status_code=200,
        headers={"X-Session-ID": outcome.session_id},
    )
