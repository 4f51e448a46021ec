import os
from contextvars import ContextVar

# Disable pydantic-ai SDK deferred schema building. Prevents errors during message serialization
os.environ["DEFER_PYDANTIC_BUILD"] = "false"

from litestar import Litestar
from litestar.logging import LoggingConfig
from realitypatch.exception_handlers import exception_handlers
from realitypatch.lifespan import lifespan
from realitypatch.routes.health import health
from realitypatch.routes.patch import handle_patch
from realitypatch.routes.user_data import handle_user_data, handle_analytics
from realitypatch.routes.credits import handle_grant_credits, handle_migrate_data
from realitypatch.logging_middleware import CorrelationFilter, CorrelationFormatter, CorrelationMiddleware

correlation_id_contextvar = ContextVar("correlation_id")
session_id_contextvar = ContextVar("session_id")

logging_config = LoggingConfig(
    root={
        "level": "INFO",
        "handlers": ["queue_listener"],
        "filters": ["correlation"]
    },
    formatters={
        "standard": {
            "()": CorrelationFormatter,
            "format": "%(asctime)s - %(correlation_id)s - %(session_id)s - %(levelname)s - %(message)s"
        }
    },
    filters={
        "correlation": {
            "()": CorrelationFilter,
            "contextvar": correlation_id_contextvar,
            "session_contextvar": session_id_contextvar,
        }
    },
    loggers={
        "httpx": {
            "level": "WARNING",
            "filters": ["correlation"],
            "propagate": True
        },
        "uvicorn": {
            "level": "INFO",
            "filters": ["correlation"],
            "propagate": True
        },
        "litestar": {
            "level": "INFO",
            "filters": ["correlation"],
            "propagate": True
        }
    },
    log_exceptions="always",
)

app = Litestar(
    route_handlers=[
        health,
        handle_patch,
        handle_user_data,
        handle_analytics,
        handle_grant_credits,
        handle_migrate_data,
    ],
    lifespan=[lifespan],
    logging_config=logging_config,
    middleware=[CorrelationMiddleware(correlation_id_contextvar, session_id_contextvar)],
    exception_handlers=exception_handlers,
)
