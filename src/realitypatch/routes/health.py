from litestar import get, Request, Response
from litestar.di import Provide
from realitypatch.database.manager import RecordStore
from realitypatch.dependencies import get_record_store
from realitypatch.errors import PersistenceError


@get(path="/health", dependencies={"record_store": Provide(get_record_store)})
async def health(request: Request, record_store: RecordStore) -> Response:
    try:
        await record_store.ping()
    except PersistenceError as e:
        request.logger.error(f"Health check failed: {e}")
        return Response(content="unhealthy", status_code=503)
    return Response(content="healthy", status_code=200)
