from litestar import Request, Response
from realitypatch.errors import RealityPatchError


def handle_reality_patch_error(request: Request, exc: RealityPatchError) -> Response:
    """Render typed failures as {"error", "retryable"} with the error's status code."""
    if exc.status_code >= 500:
        request.logger.error(f"{type(exc).__name__}: {exc}")
    else:
        request.logger.info(f"Rejected request: {exc}")
    return Response(
        content={"error": str(exc), "retryable": exc.retryable},
        status_code=exc.status_code,
    )


exception_handlers = {RealityPatchError: handle_reality_patch_error}
