"""Queue operation routes: status, counter workflow, settings and sessions."""

from typing import List, Optional

from fastapi import APIRouter, Request

from qms.core.config import settings
from qms.core.rate_limit import limiter
from qms.core.rbac import RequireAdmin, RequireStaff, acting_staff_id
from qms.schemas.queue import (
    EndSessionRequest,
    QueueResetRequest,
    QueueResetResponse,
    QueueSettingResponse,
    QueueSettingUpdate,
    QueueStatusResponse,
    ServiceSessionResponse,
)
from qms.schemas.token import (
    CallNextRequest,
    CompleteServiceRequest,
    MarkNoShowRequest,
    RecallTokenRequest,
    ServiceResult,
    StartServingRequest,
    TokenResponse,
)
from qms.services.queue_settings_service import QueueSettingsServiceDep
from qms.services.token_service import TokenServiceDep

router = APIRouter()


def _as_staff(data, current_user):
    """Record the operation against the caller unless an admin names another member."""
    return data.model_copy(update={"staff_id": acting_staff_id(data.staff_id, current_user)})


@router.get("/status", response_model=QueueStatusResponse)
@limiter.limit(settings.queue_status_rate_limit)
def get_queue_status(
    request: Request,
    service: TokenServiceDep,
    current_user: RequireStaff,
    counter_id: Optional[int] = None,
):
    """Snapshot of the organization's queue, optionally for one counter."""
    return service.get_queue_status(current_user.organization_id, counter_id)


@router.post("/call-next", response_model=TokenResponse)
def call_next(data: CallNextRequest, service: TokenServiceDep, current_user: RequireStaff):
    return service.call_next_token(_as_staff(data, current_user), current_user.organization_id)


@router.post("/start-serving", response_model=TokenResponse)
def start_serving(data: StartServingRequest, service: TokenServiceDep, current_user: RequireStaff):
    return service.start_serving(_as_staff(data, current_user), current_user.organization_id)


@router.post("/complete-service", response_model=ServiceResult)
def complete_service(data: CompleteServiceRequest, service: TokenServiceDep, current_user: RequireStaff):
    return service.complete_service(_as_staff(data, current_user), current_user.organization_id)


@router.post("/mark-no-show", response_model=TokenResponse)
def mark_no_show(data: MarkNoShowRequest, service: TokenServiceDep, current_user: RequireStaff):
    return service.mark_no_show(_as_staff(data, current_user), current_user.organization_id)


@router.post("/recall-token", response_model=TokenResponse)
def recall_token(data: RecallTokenRequest, service: TokenServiceDep, current_user: RequireStaff):
    return service.recall_token(_as_staff(data, current_user), current_user.organization_id)


@router.post("/end-session", response_model=ServiceSessionResponse)
def end_session(
    service: TokenServiceDep,
    current_user: RequireStaff,
    data: Optional[EndSessionRequest] = None,
):
    """End the caller's (or the given staff member's) service session."""
    staff_id = acting_staff_id(data.staff_id if data else None, current_user)
    return service.end_session(staff_id, current_user.organization_id)


# ==================== SETTINGS ====================

@router.get("/settings", response_model=List[QueueSettingResponse])
def list_queue_settings(service: QueueSettingsServiceDep, current_user: RequireStaff):
    return service.list_settings(current_user.organization_id)


@router.patch("/settings", response_model=QueueSettingResponse)
def update_queue_settings(
    data: QueueSettingUpdate,
    service: QueueSettingsServiceDep,
    current_user: RequireAdmin,
):
    """Create or update one customer type's queue settings."""
    return service.update_setting(data, current_user.organization_id, user_id=current_user.user_id)


@router.post("/reset", response_model=QueueResetResponse)
def reset_queue(
    data: QueueResetRequest,
    service: QueueSettingsServiceDep,
    current_user: RequireAdmin,
):
    """Restart numbering for a customer type. Called by the daily reset job."""
    setting = service.reset_queue(data.customer_type, current_user.organization_id, user_id=current_user.user_id)
    return QueueResetResponse(customer_type=setting.customer_type, current_number=setting.current_number)
