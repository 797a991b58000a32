"""Token routes: issuing, listing, lookup, updates and cancellation."""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Query, Request, status

from qms.core.config import settings
from qms.core.rate_limit import limiter
from qms.core.rbac import RequireAdmin, RequireStaff, acting_staff_id
from qms.core.responses import paginated_response
from qms.models.queue import CustomerType, TokenStatus
from qms.schemas.token import (
    BulkCancelRequest,
    BulkCancelResult,
    CancelTokenRequest,
    CreateTokenRequest,
    PublicCreateTokenRequest,
    TokenCreationResponse,
    TokenListQuery,
    TokenResponse,
    UpdateTokenRequest,
)
from qms.services.token_service import TokenServiceDep

router = APIRouter()


@router.post("/", response_model=TokenCreationResponse, status_code=status.HTTP_201_CREATED)
def create_token(
    data: CreateTokenRequest,
    service: TokenServiceDep,
    current_user: RequireStaff,
):
    """Issue a token on behalf of a walk-in customer."""
    return service.create_token(data, current_user.organization_id, staff_id=current_user.user_id)


@router.post("/public", response_model=TokenCreationResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.token_creation_rate_limit)
def create_public_token(
    request: Request,
    data: PublicCreateTokenRequest,
    service: TokenServiceDep,
):
    """Self-service kiosk endpoint. No authentication."""
    return service.create_token(data, data.organization_id)


@router.get("/")
def list_tokens(
    service: TokenServiceDep,
    current_user: RequireStaff,
    token_status: Optional[List[TokenStatus]] = Query(None, alias="status"),
    customer_type: Optional[List[CustomerType]] = Query(None),
    counter_id: Optional[int] = None,
    staff_id: Optional[int] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    sort_by: Literal["created_at", "called_at", "completed_at", "priority"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
):
    """List tokens of the caller's organization."""
    query = TokenListQuery(
        status=token_status,
        customer_type=customer_type,
        counter_id=counter_id,
        staff_id=staff_id,
        from_date=from_date,
        to_date=to_date,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    tokens, total = service.list_tokens(query, current_user.organization_id)
    items = [TokenResponse.model_validate(t).model_dump(mode="json") for t in tokens]
    return paginated_response(items, total, skip=offset, limit=limit)


@router.post("/bulk/cancel", response_model=BulkCancelResult)
def bulk_cancel_tokens(data: BulkCancelRequest, service: TokenServiceDep, current_user: RequireAdmin):
    """Cancel up to 50 tokens of the organization in one go."""
    return service.bulk_cancel_tokens(data, current_user.organization_id, user_id=current_user.user_id)


@router.get("/{token_id}", response_model=TokenResponse)
def get_token(token_id: int, service: TokenServiceDep, current_user: RequireStaff):
    return service.get_token(token_id, current_user.organization_id)


@router.patch("/{token_id}", response_model=TokenResponse)
def update_token(
    token_id: int,
    data: UpdateTokenRequest,
    service: TokenServiceDep,
    current_user: RequireStaff,
):
    return service.update_token(token_id, data, current_user.organization_id, user_id=current_user.user_id)


@router.post("/{token_id}/cancel", response_model=TokenResponse)
def cancel_token(
    token_id: int,
    service: TokenServiceDep,
    current_user: RequireStaff,
    data: Optional[CancelTokenRequest] = None,
):
    """Cancel a waiting or called token."""
    data = data or CancelTokenRequest()
    return service.cancel_token(
        token_id,
        current_user.organization_id,
        staff_id=acting_staff_id(data.staff_id, current_user),
        reason=data.reason,
    )
