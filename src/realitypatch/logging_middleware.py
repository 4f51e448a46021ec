from contextvars import ContextVar
import uuid
import logging
from litestar.middleware.base import ASGIMiddleware
from litestar.types import ASGIApp, Scope, Receive, Send, Message
from litestar.datastructures import MutableScopeHeaders

# Session ids are truncated in logs
SESSION_LOG_CHARS = 20


class CorrelationFormatter(logging.Formatter):
    """Formatter that safely handles missing correlation_id/session_id fields."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "system"
        if not hasattr(record, "session_id"):
            record.session_id = "-"
        return super().format(record)


class CorrelationFilter(logging.Filter):
    """Logging filter that stamps the request's correlation and session ids on each record."""

    def __init__(self, contextvar: ContextVar[str], session_contextvar: ContextVar[str] | None = None):
        super().__init__()
        self.contextvar = contextvar
        self.session_contextvar = session_contextvar

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = self.contextvar.get("system")
        if self.session_contextvar is not None:
            record.session_id = self.session_contextvar.get("-")
        return True


class CorrelationMiddleware(ASGIMiddleware):
    """Tags each HTTP request with a correlation id and the caller's session id."""

    def __init__(self, contextvar: ContextVar[str], session_contextvar: ContextVar[str] | None = None):
        super().__init__()
        self.contextvar = contextvar
        self.session_contextvar = session_contextvar

    async def handle(self, scope: Scope, receive: Receive, send: Send, next_app: ASGIApp) -> None:
        if scope["type"] != "http":
            await next_app(scope, receive, send)
            return

        correlation_id: str | None = None
        session_id: str | None = None
        for name, value in scope.get("headers", []):
            lowered = name.lower()
            if lowered == b"x-correlation-id":
                correlation_id = value.decode("utf-8")
            elif lowered == b"x-session-id":
                session_id = value.decode("utf-8")

        if not correlation_id:
            correlation_id = str(uuid.uuid4())

        self.contextvar.set(correlation_id)
        if self.session_contextvar is not None:
            self.session_contextvar.set(session_id[:SESSION_LOG_CHARS] if session_id else "-")

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableScopeHeaders.from_message(message=message)
                response_headers["X-Correlation-ID"] = str(correlation_id)
            await send(message)

        await next_app(scope, receive, send_wrapper)
