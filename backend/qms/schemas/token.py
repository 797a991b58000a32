"""Token schemas"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from qms.models.queue import CustomerType, TokenStatus


class CounterBrief(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class StaffBrief(BaseModel):
    id: int
    username: str

    model_config = ConfigDict(from_attributes=True)


class TokenResponse(BaseModel):
    id: int
    organization_id: int
    counter_id: Optional[int] = None
    number: str
    customer_type: CustomerType
    status: TokenStatus
    priority: int
    created_at: datetime
    called_at: Optional[datetime] = None
    served_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    served_by: Optional[int] = None
    estimated_wait_time: Optional[int] = None
    actual_wait_time: Optional[int] = None
    service_duration: Optional[int] = None
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("meta", "metadata")
    )
    counter: Optional[CounterBrief] = None
    staff: Optional[StaffBrief] = None

    model_config = ConfigDict(from_attributes=True)


class CreateTokenRequest(BaseModel):
    customer_type: CustomerType
    priority: int = Field(0, ge=0, le=10)
    counter_id: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=1000)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PublicCreateTokenRequest(CreateTokenRequest):
    """Kiosk request; no authenticated user to take the organization from."""
    organization_id: int


class CallNextRequest(BaseModel):
    counter_id: int
    staff_id: Optional[int] = None
    customer_type: Optional[CustomerType] = None


class StartServingRequest(BaseModel):
    token_id: int
    staff_id: Optional[int] = None


class CompleteServiceRequest(BaseModel):
    token_id: int
    staff_id: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=1000)
    rating: Optional[int] = Field(None, ge=1, le=5)
    service_duration: Optional[int] = Field(None, ge=0)


class MarkNoShowRequest(BaseModel):
    token_id: int
    staff_id: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=1000)


class RecallTokenRequest(BaseModel):
    token_id: int
    counter_id: int
    staff_id: Optional[int] = None


class UpdateTokenRequest(BaseModel):
    """Changes allowed while a token is still waiting."""
    priority: Optional[int] = Field(None, ge=0, le=10)
    notes: Optional[str] = Field(None, max_length=1000)
    metadata: Optional[Dict[str, Any]] = None


class CancelTokenRequest(BaseModel):
    staff_id: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)


class BulkCancelRequest(BaseModel):
    token_ids: List[int] = Field(..., min_length=1, max_length=50)
    reason: Optional[str] = Field(None, max_length=500)


class BulkCancelResult(BaseModel):
    count: int
    token_numbers: List[str]
    skipped_token_ids: List[int] = Field(default_factory=list)


class TokenCreationResponse(BaseModel):
    token: TokenResponse
    position: int
    estimated_wait_time: Optional[int] = None


class ServiceResult(BaseModel):
    token: TokenResponse
    service_duration: int


class TokenListQuery(BaseModel):
    """Filters for listing tokens."""
    status: Optional[List[TokenStatus]] = None
    customer_type: Optional[List[CustomerType]] = None
    counter_id: Optional[int] = None
    staff_id: Optional[int] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    limit: int = Field(20, ge=1, le=100)
    offset: int = Field(0, ge=0)
    sort_by: Literal["created_at", "called_at", "completed_at", "priority"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
