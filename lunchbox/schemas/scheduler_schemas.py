from enum import Enum
from typing import Optional
from pydantic import Field

from lunchbox.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class SchedulerAction(str, Enum):
    START = "start"
    STOP = "stop"
    CHECK = "check"
    PURGE = "purge"


class SchedulerActionRequest(BaseModel):
    action: SchedulerAction = Field(..., description="start, stop, check or purge")


class SchedulerStatusResponse(BaseModel):
    running: bool
    interval_ms: int
    watchdog_interval_ms: int
    last_tick_at: Optional[str] = None
    last_purge_at: Optional[str] = None


class DispatchSummary(BaseModel):
    found: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    released: int = 0
