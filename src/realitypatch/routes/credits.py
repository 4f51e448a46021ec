from typing import Optional
from litestar import post, Request, Response
from litestar.di import Provide
from litestar.params import Dependency, Parameter

from realitypatch.accountability.service import SessionPolicy, grant_credits, migrate_legacy
from realitypatch.database.manager import RecordStore
from realitypatch.dependencies import get_policy, get_record_store
from realitypatch.schemas.api import (
    GrantCreditsRequest,
    GrantCreditsResponse,
    MigrateRequest,
    MigrateResponse,
)


@post(
    "/api/credits",
    status_code=200,
    dependencies={"record_store": Provide(get_record_store), "policy": Provide(get_policy)},
)
async def handle_grant_credits(
    request: Request,
    record_store: RecordStore,
    data: GrantCreditsRequest,
    policy: SessionPolicy = Dependency(skip_validation=True),
    header_session_id: Optional[str] = Parameter(header="X-Session-ID", default=None),
) -> Response:
    """Add bonus credits after a purchase. Only reports success once the grant reads back."""
    result = await grant_credits(
        record_store,
        data.session_id or header_session_id,
        data.amount,
        policy,
        request.logger,
        expiry_hours=data.expiry_hours,
    )
    body = GrantCreditsResponse(
        success=result.success,
        total=result.total,
        expiry=result.expiry,
        preserve_local_data=not result.success,
    )
    return Response(
        content=body.model_dump(mode="json", by_alias=True),
        status_code=200 if result.success else 503,
    )


@post(
    "/api/migrate-data",
    status_code=200,
    dependencies={"record_store": Provide(get_record_store), "policy": Provide(get_policy)},
)
async def handle_migrate_data(
    request: Request,
    record_store: RecordStore,
    data: MigrateRequest,
    policy: SessionPolicy = Dependency(skip_validation=True),
    session_id: Optional[str] = Parameter(header="X-Session-ID", default=None),
) -> Response:
    """Move history, usage and credits the browser kept locally onto the server record."""
    outcome = await migrate_legacy(record_store, session_id, data, policy, request.logger)
    body = MigrateResponse(
        success=outcome.success,
        migrated=outcome.migrated,
        preserve_local_data=outcome.preserve_local_data,
    )
    return Response(
        content=body.model_dump(mode="json", by_alias=True),
        status_code=200 if outcome.success else 503,
    )
