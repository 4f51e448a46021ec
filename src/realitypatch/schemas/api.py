from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from realitypatch.schemas.records import Interaction


class UsageSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    count: int
    remaining: int
    limit: int


class CreditsSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    extra: int
    expiry: Optional[datetime] = None


class SubmitRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_input: str


class SubmitResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    patch: str
    session_id: str
    is_follow_up: bool
    completed_assignment_id: Optional[int] = None
    using_credit: bool = False
    usage: UsageSummary


class QuotaDeniedResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    allowed: bool = False
    session_id: str
    usage: UsageSummary
    extra_credits: int
    resets_at: datetime


class UserDataResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    history: List[Interaction]
    usage: UsageSummary
    credits: CreditsSummary
    last_sync: datetime


class GrantCreditsRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: Optional[str] = None
    amount: int = Field(gt=0)
    expiry_hours: Optional[float] = Field(default=None, gt=0)


class GrantCreditsResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    total: int
    expiry: Optional[datetime] = None
    preserve_local_data: bool = False


class LegacyDailyUsage(BaseModel):
    """Daily usage as the browser client stored it before server persistence."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    count: int = 0
    last_reset: Optional[str] = None
    date: Optional[str] = None


class MigrateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    history: List[Dict[str, Any]] = Field(default_factory=list)
    daily_usage: Optional[LegacyDailyUsage] = None
    extra_credits: int = Field(default=0, ge=0)
    # Epoch milliseconds (possibly as a string) or ISO-8601
    credits_expiry: Optional[Union[int, str]] = None


class MigrationSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    history_items: int = 0
    extra_credits: int = 0
    daily_usage: int = 0


class MigrateResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    migrated: MigrationSummary
    preserve_local_data: bool = False


class AnalyticsResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_users: int
    daily_usage: int
