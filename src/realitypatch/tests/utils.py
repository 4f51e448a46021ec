"""Test utilities and shared helpers."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic_ai import Agent
from pydantic_ai.messages import ModelMessage, ModelResponse, TextPart
from pydantic_ai.models.function import AgentInfo, FunctionModel

from realitypatch.database.manager import RecordStore, create_db_pool
from realitypatch.schemas.records import Interaction, UserRecord

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)

ASSIGNMENT_RESPONSE = (
    "> PATTERN DETECTED: waiting for permission\n"
    "Your assignment: {action}. Come back in 24 hours and tell me if you did it or what excuse you made."
)


class MockLogger:
    """Logger implementing the Litestar Logger protocol that remembers what was logged."""

    def __init__(self):
        self.records: List[tuple[str, str]] = []

    def _log(self, level: str, msg, *args, **kwargs):
        text = msg % args if args else str(msg)
        self.records.append((level, text))

    def debug(self, msg, *args, **kwargs): self._log("debug", msg, *args)
    def info(self, msg, *args, **kwargs): self._log("info", msg, *args)
    def warning(self, msg, *args, **kwargs): self._log("warning", msg, *args)
    def warn(self, msg, *args, **kwargs): self._log("warning", msg, *args)
    def error(self, msg, *args, **kwargs): self._log("error", msg, *args)
    def exception(self, msg, *args, **kwargs): self._log("error", msg, *args)
    def critical(self, msg, *args, **kwargs): self._log("critical", msg, *args)
    def fatal(self, msg, *args, **kwargs): self._log("critical", msg, *args)
    def setLevel(self, *args, **kwargs): pass

    def messages(self, level: Optional[str] = None) -> List[str]:
        return [text for lvl, text in self.records if level is None or lvl == level]


def assignment(action: str) -> str:
    return ASSIGNMENT_RESPONSE.format(action=action)


def make_interaction(
    id: int,
    input: str = "I keep starting projects and never finish them",
    response: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    is_follow_up: bool = False,
    completed: bool = False,
) -> Interaction:
    return Interaction(
        id=id,
        input=input,
        response=response if response is not None else assignment("write three business ideas"),
        timestamp=timestamp or NOW - timedelta(hours=1),
        is_follow_up=is_follow_up,
        completed=completed,
        completed_at=(timestamp or NOW) if completed else None,
    )


def make_record(*history: Interaction, now: datetime = NOW) -> UserRecord:
    record = UserRecord.new(now)
    record.history.extend(history)
    return record


async def create_store(tmp_path, logger=None, **kwargs) -> RecordStore:
    logger = logger or MockLogger()
    db_pool = await create_db_pool(str(tmp_path / "records.db"), logger)
    return RecordStore(db_pool, logger, backoff_base=0.001, backoff_max=0.01, **kwargs)


def scripted_assistant(*replies: str) -> tuple[Agent[None, str], List[str]]:
    """Agent whose model answers with `replies` in order and records the prompts it was sent."""
    prompts: List[str] = []
    remaining = list(replies)

    def respond(messages: List[ModelMessage], info: AgentInfo) -> ModelResponse:
        request = messages[-1]
        prompts.append(
            "".join(
                part.content for part in request.parts if getattr(part, "part_kind", "") == "user-prompt"
            )
        )
        reply = remaining.pop(0) if remaining else assignment("do one small thing")
        return ModelResponse(parts=[TextPart(reply)])

    agent: Agent[None, str] = Agent(FunctionModel(respond), output_type=str)
    return agent, prompts


def failing_assistant() -> Agent[None, str]:
    def respond(messages: List[ModelMessage], info: AgentInfo) -> ModelResponse:
        raise RuntimeError("upstream unavailable")

    return Agent(FunctionModel(respond), output_type=str)
