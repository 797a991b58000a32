"""Queue status, settings and session schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from qms.core.rbac import UserRole
from qms.models.queue import CustomerType
from qms.schemas.token import TokenResponse


# ==================== SETTINGS ====================

class QueueSettingResponse(BaseModel):
    id: int
    organization_id: int
    customer_type: CustomerType
    prefix: str
    current_number: int
    max_number: int
    reset_daily: bool
    reset_time: str
    is_active: bool
    priority_multiplier: float

    model_config = ConfigDict(from_attributes=True)


class QueueSettingUpdate(BaseModel):
    """Upsert one customer type's queue configuration."""
    customer_type: CustomerType
    prefix: Optional[str] = Field(None, min_length=1, max_length=5, pattern=r"^[A-Z0-9]+$")
    max_number: Optional[int] = Field(None, ge=1, le=99999)
    reset_daily: Optional[bool] = None
    reset_time: Optional[str] = Field(
        None, pattern=r"^([01]?[0-9]|2[0-3]):[0-5][0-9]:[0-5][0-9]$"
    )
    is_active: Optional[bool] = None
    priority_multiplier: Optional[float] = Field(None, ge=0.1, le=10.0)


class QueueResetRequest(BaseModel):
    customer_type: CustomerType


class QueueResetResponse(BaseModel):
    customer_type: CustomerType
    current_number: int


# ==================== SESSIONS ====================

class EndSessionRequest(BaseModel):
    staff_id: Optional[int] = None


class ServiceSessionResponse(BaseModel):
    id: int
    staff_id: int
    organization_id: int
    started_at: datetime
    ended_at: Optional[datetime] = None
    tokens_served: int
    average_service_time: float

    model_config = ConfigDict(from_attributes=True)


# ==================== STATUS SNAPSHOT ====================

class AssignedStaff(BaseModel):
    id: int
    username: str
    role: UserRole

    model_config = ConfigDict(from_attributes=True)


class CounterInfo(BaseModel):
    id: int
    organization_id: int
    name: str
    is_active: bool
    assigned_staff_id: Optional[int] = None
    assigned_staff: Optional[AssignedStaff] = None

    model_config = ConfigDict(from_attributes=True)


class CounterStatus(BaseModel):
    counter: CounterInfo
    current_token: Optional[TokenResponse] = None
    next_tokens: List[TokenResponse] = []
    waiting_count: int = 0
    average_service_time: int = 0


class QueueStats(BaseModel):
    total_waiting: int = 0
    total_serving: int = 0
    total_completed: int = 0
    total_no_show: int = 0
    average_wait_time: int = 0
    average_service_time: int = 0
    peak_hour: str = "0:00"
    estimated_wait_time: int = 0


class QueueStatusResponse(BaseModel):
    organization_id: int
    counter_id: Optional[int] = None
    generated_at: datetime
    counters: List[CounterStatus] = []
    current_serving: List[TokenResponse] = []
    next_in_queue: List[TokenResponse] = []
    recently_served: List[TokenResponse] = []
    no_show_queue: List[TokenResponse] = []
    stats: QueueStats
    queue_settings: List[QueueSettingResponse] = []
