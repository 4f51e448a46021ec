from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Usage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    count: int = Field(default=0, ge=0)
    last_reset: str  # YYYY-MM-DD, UTC


class Interaction(BaseModel):
    """One request/response exchange in a user's history."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    input: str
    response: str
    timestamp: datetime
    is_follow_up: bool = False
    completed: bool = False
    completed_at: Optional[datetime] = None


class UserRecord(BaseModel):
    """Everything persisted for one session id."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    history: List[Interaction] = Field(default_factory=list)
    usage: Usage
    extra_credits: int = Field(default=0, ge=0)
    credits_expiry: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def new(cls, now: datetime) -> "UserRecord":
        return cls(
            usage=Usage(count=0, last_reset=now.astimezone(timezone.utc).date().isoformat()),
            created_at=now,
        )


class StoredRecord(BaseModel):
    """A record as read from the store, with the version used for conditional writes."""

    record: UserRecord
    version: int
