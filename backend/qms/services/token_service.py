"""Token lifecycle: creation, calling, serving, completion, no-shows, recalls
and cancellation.

Every mutating operation is one storage transaction holding the token
change, its audit entry and any session bookkeeping. State changes are
compare-and-set updates on the token's current status, so a caller that
loses a race gets ``NotFoundError`` instead of overwriting someone else's
transition. Events are published only after the transaction commits.
"""

import logging
from contextlib import contextmanager
from typing import Annotated, Any, Dict, Iterator, List, Optional, Tuple

from fastapi import Depends
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qms.core.clock import Clock, minutes_between, system_clock
from qms.core.config import Settings, settings as default_settings
from qms.core.errors import NotFoundError, QueueError, StorageError, ValidationError
from qms.core.metrics import metrics
from qms.db.base import as_utc
from qms.db.session import DbSession
from qms.models.queue import (
    ACTIVE_SERVICE_STATUSES,
    Counter,
    ServiceSession,
    Token,
    TokenStatus,
)
from qms.models.user import User
from qms.schemas.token import (
    BulkCancelRequest,
    BulkCancelResult,
    CallNextRequest,
    CompleteServiceRequest,
    CreateTokenRequest,
    MarkNoShowRequest,
    RecallTokenRequest,
    ServiceResult,
    StartServingRequest,
    TokenCreationResponse,
    TokenListQuery,
    TokenResponse,
    UpdateTokenRequest,
)
from qms.services.audit_service import log_action
from qms.services.broadcaster import EventBroadcaster, EventOutbox, ws_broadcaster
from qms.services.queue_ranker import QueueRanker
from qms.services.queue_repository import QueueRepository
from qms.services.queue_status_service import QueueStatusService
from qms.services.sequence_allocator import SequenceAllocator
from qms.services.session_tracker import SessionTracker

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (TokenStatus.WAITING, TokenStatus.CALLED)

SORT_COLUMNS = {
    "created_at": Token.created_at,
    "called_at": Token.called_at,
    "completed_at": Token.completed_at,
    "priority": Token.priority,
}


class TokenService:
    """Service for the queue token lifecycle of one request session."""

    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        broadcaster: Optional[EventBroadcaster] = None,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings
        self.broadcaster = broadcaster if broadcaster is not None else ws_broadcaster
        self.repository = QueueRepository(db)
        self.allocator = SequenceAllocator(self.repository, settings)
        self.tracker = SessionTracker(db, clock, settings)
        self.ranker = QueueRanker(db, self.tracker, clock)
        self.status_service = QueueStatusService(db, clock, settings, self.ranker, self.tracker)
        self.outbox = EventOutbox()

    # ==================== PLUMBING ====================

    @contextmanager
    def _operation(self, name: str, organization_id: int, **context: Any) -> Iterator[None]:
        """One transaction; failures are logged with context and re-raised."""
        self.outbox.clear()
        try:
            with self.repository.transaction(name):
                yield
        except QueueError as e:
            self.outbox.clear()
            metrics.record_queue_error(e.kind)
            context_str = " ".join(f"{key}={value}" for key, value in context.items())
            if isinstance(e, StorageError):
                logger.error(
                    f"Failed to {name}: org={organization_id} {context_str}: "
                    f"{e.message} {e.details}"
                )
            else:
                logger.warning(f"Could not {name}: org={organization_id} {context_str}: {e.message}")
            raise

    def _publish(self, organization_id: int) -> None:
        """Flush the outbox, followed by a fresh snapshot of the queue."""
        if self.settings.broadcast_queue_snapshots:
            try:
                snapshot = self.status_service.get_queue_status(organization_id)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning(f"Could not build queue snapshot for org={organization_id}: {e}")
                metrics.record_broadcast_failure()
            else:
                self.outbox.add(organization_id, "queue:updated", snapshot.model_dump(mode="json"))
        self.outbox.flush(self.broadcaster)

    def _emit(self, organization_id: int, event: str, token: Token, **extra: Any) -> None:
        payload = TokenResponse.model_validate(token).model_dump(mode="json")
        payload.update(extra)
        self.outbox.add(organization_id, event, payload)

    def _audit(
        self,
        organization_id: int,
        action: str,
        token: Token,
        user_id: Optional[int],
        **details: Any,
    ) -> None:
        log_action(
            self.db,
            organization_id=organization_id,
            action=action,
            entity_type="token",
            entity_id=token.id,
            user_id=user_id,
            details={"token_number": token.number, **details},
            created_at=self.clock.now(),
        )

    def _check_staff(self, staff_id: Optional[int], organization_id: int) -> Optional[int]:
        """Reject a staff id that is not an active user of the organization."""
        if staff_id is None:
            return None
        user = self.db.execute(
            select(User.id).where(
                User.id == staff_id,
                User.organization_id == organization_id,
                User.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if user is None:
            raise ValidationError(
                "Staff member not found in organization", {"staff_id": staff_id}
            )
        return staff_id

    def _require_staff(self, staff_id: Optional[int], organization_id: int) -> int:
        if staff_id is None:
            raise ValidationError("staff_id is required")
        return self._check_staff(staff_id, organization_id)

    def _get_active_counter(self, organization_id: int, counter_id: int) -> Counter:
        counter = self.db.execute(
            select(Counter).where(
                Counter.id == counter_id,
                Counter.organization_id == organization_id,
                Counter.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if counter is None:
            raise NotFoundError("Counter not found", {"counter_id": counter_id})
        return counter

    # ==================== CREATE ====================

    def create_token(
        self,
        request: CreateTokenRequest,
        organization_id: int,
        staff_id: Optional[int] = None,
    ) -> TokenCreationResponse:
        """Issue a new waiting token and report where it stands in the queue."""
        logger.info(
            f"Creating token: org={organization_id} type={request.customer_type.value} "
            f"priority={request.priority}"
        )
        with self._operation(
            "create token", organization_id, customer_type=request.customer_type.value
        ):
            if request.counter_id is not None:
                self._get_active_counter(organization_id, request.counter_id)

            number = self.allocator.next_number(organization_id, request.customer_type)
            token = self.repository.insert_token(
                organization_id=organization_id,
                counter_id=request.counter_id,
                number=number,
                customer_type=request.customer_type,
                status=TokenStatus.WAITING,
                priority=request.priority,
                created_at=self.clock.now(),
                notes=request.notes,
                meta=dict(request.metadata or {}),
            )
            position = self.ranker.position(token)
            estimated_wait = self.ranker.estimated_wait_time(
                organization_id, request.customer_type, request.priority, request.counter_id
            )
            token.estimated_wait_time = estimated_wait
            self.db.flush()

            self._audit(
                organization_id,
                "token_created",
                token,
                staff_id,
                customer_type=request.customer_type.value,
                priority=request.priority,
            )
            self._emit(organization_id, "token:created", token, position=position)

        self._publish(organization_id)
        logger.info(f"Token {number} created: org={organization_id} position={position}")
        return TokenCreationResponse(
            token=TokenResponse.model_validate(token),
            position=position,
            estimated_wait_time=estimated_wait,
        )

    # ==================== CALL / SERVE ====================

    def _claim_next(self, request: CallNextRequest, organization_id: int, staff_id: int) -> Optional[Token]:
        """Pick the next waiting token and claim it with a compare-and-set.

        Another caller may claim the same candidate between our read and our
        update; then we pick again, up to ``call_next_max_attempts`` times.
        """
        skipped: List[int] = []
        for _ in range(self.settings.call_next_max_attempts):
            candidate = self.ranker.select_next(
                organization_id,
                counter_id=request.counter_id,
                customer_type=request.customer_type,
                exclude_ids=skipped,
            )
            if candidate is None:
                return None

            now = self.clock.now()
            token = self.repository.transition_token(
                candidate.id,
                organization_id,
                [TokenStatus.WAITING],
                status=TokenStatus.CALLED,
                called_at=now,
                served_by=staff_id,
                counter_id=request.counter_id,
                actual_wait_time=minutes_between(candidate.created_at, now),
            )
            if token is not None:
                return token

            logger.info(f"Token {candidate.id} was claimed by another caller, selecting again")
            skipped.append(candidate.id)
        return None

    def call_next_token(self, request: CallNextRequest, organization_id: int) -> Token:
        """Call the highest-priority, longest-waiting token to a counter."""
        logger.info(
            f"Calling next token: org={organization_id} counter={request.counter_id} staff={request.staff_id}"
        )
        with self._operation(
            "call next token", organization_id, counter_id=request.counter_id, staff_id=request.staff_id
        ):
            staff_id = self._require_staff(request.staff_id, organization_id)
            self._get_active_counter(organization_id, request.counter_id)
            token = self._claim_next(request, organization_id, staff_id)
            if token is None:
                raise NotFoundError(
                    "No tokens in queue",
                    {"counter_id": request.counter_id, "customer_type": request.customer_type},
                )

            self.tracker.ensure_active_session(staff_id, organization_id)
            self._audit(
                organization_id,
                "token_called",
                token,
                staff_id,
                counter_id=request.counter_id,
                actual_wait_time=token.actual_wait_time,
            )
            self._emit(organization_id, "token:called", token)

        self._publish(organization_id)
        logger.info(f"Token {token.number} called to counter {request.counter_id}")
        return token

    def start_serving(self, request: StartServingRequest, organization_id: int) -> Token:
        logger.info(f"Starting service: org={organization_id} token={request.token_id}")
        with self._operation("start serving", organization_id, token_id=request.token_id):
            self._check_staff(request.staff_id, organization_id)
            token = self.repository.transition_token(
                request.token_id,
                organization_id,
                [TokenStatus.CALLED],
                status=TokenStatus.SERVING,
                served_at=self.clock.now(),
            )
            if token is None:
                raise NotFoundError(
                    "Token not found or not in called state", {"token_id": request.token_id}
                )
            self._audit(organization_id, "token_serving", token, request.staff_id)
            self._emit(organization_id, "token:serving", token)

        self._publish(organization_id)
        return token

    def complete_service(self, request: CompleteServiceRequest, organization_id: int) -> ServiceResult:
        """Finish serving a called or serving token.

        The duration is the caller's value when given, otherwise the whole
        minutes since the token was called.
        """
        logger.info(f"Completing service: org={organization_id} token={request.token_id}")
        with self._operation("complete service", organization_id, token_id=request.token_id):
            self._check_staff(request.staff_id, organization_id)
            current = self.repository.get_token(
                request.token_id, organization_id, statuses=ACTIVE_SERVICE_STATUSES
            )
            if current is None:
                raise NotFoundError(
                    "Token not found or not in serviceable state", {"token_id": request.token_id}
                )

            now = self.clock.now()
            if request.service_duration is not None:
                duration = request.service_duration
            else:
                duration = minutes_between(current.called_at or current.created_at, now)

            meta = dict(current.meta or {})
            if request.rating is not None:
                meta["rating"] = request.rating
            values: Dict[str, Any] = {
                "status": TokenStatus.COMPLETED,
                "completed_at": now,
                "service_duration": duration,
                "meta": meta,
            }
            if request.notes is not None:
                values["notes"] = request.notes
            if request.staff_id is not None:
                values["served_by"] = request.staff_id

            token = self.repository.transition_token(
                current.id, organization_id, ACTIVE_SERVICE_STATUSES, **values
            )
            if token is None:
                raise NotFoundError(
                    "Token not found or not in serviceable state", {"token_id": request.token_id}
                )

            staff_id = request.staff_id if request.staff_id is not None else token.served_by
            if staff_id is not None:
                self.tracker.record_completion(staff_id, organization_id, duration)

            self._audit(
                organization_id,
                "service_completed",
                token,
                staff_id,
                service_duration=duration,
                rating=request.rating,
            )
            self._emit(organization_id, "token:completed", token)

        self._publish(organization_id)
        logger.info(f"Token {token.number} completed in {duration} min")
        return ServiceResult(token=TokenResponse.model_validate(token), service_duration=duration)

    def mark_no_show(self, request: MarkNoShowRequest, organization_id: int) -> Token:
        logger.info(f"Marking no-show: org={organization_id} token={request.token_id}")
        with self._operation("mark no show", organization_id, token_id=request.token_id):
            self._check_staff(request.staff_id, organization_id)
            values: Dict[str, Any] = {
                "status": TokenStatus.NO_SHOW,
                "cancelled_at": self.clock.now(),
            }
            if request.notes is not None:
                values["notes"] = request.notes
            token = self.repository.transition_token(
                request.token_id, organization_id, ACTIVE_SERVICE_STATUSES, **values
            )
            if token is None:
                raise NotFoundError(
                    "Token not found or not in serviceable state", {"token_id": request.token_id}
                )
            self._audit(organization_id, "token_no_show", token, request.staff_id)
            self._emit(organization_id, "token:no_show", token)

        self._publish(organization_id)
        return token

    def recall_token(self, request: RecallTokenRequest, organization_id: int) -> Token:
        """Bring a no-show back to a counter. The arrival time is kept."""
        logger.info(
            f"Recalling token: org={organization_id} token={request.token_id} "
            f"counter={request.counter_id}"
        )
        with self._operation(
            "recall token", organization_id, token_id=request.token_id, counter_id=request.counter_id
        ):
            staff_id = self._require_staff(request.staff_id, organization_id)
            self._get_active_counter(organization_id, request.counter_id)
            token = self.repository.transition_token(
                request.token_id,
                organization_id,
                [TokenStatus.NO_SHOW],
                status=TokenStatus.CALLED,
                called_at=self.clock.now(),
                cancelled_at=None,
                served_by=staff_id,
                counter_id=request.counter_id,
            )
            if token is None:
                raise NotFoundError(
                    "Token not found or not in no-show state", {"token_id": request.token_id}
                )
            self._audit(organization_id, "token_recalled", token, staff_id, counter_id=request.counter_id)
            self._emit(organization_id, "token:recalled", token)

        self._publish(organization_id)
        return token

    def cancel_token(
        self,
        token_id: int,
        organization_id: int,
        staff_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Token:
        logger.info(f"Cancelling token: org={organization_id} token={token_id}")
        with self._operation("cancel token", organization_id, token_id=token_id):
            self._check_staff(staff_id, organization_id)
            values: Dict[str, Any] = {
                "status": TokenStatus.CANCELLED,
                "cancelled_at": self.clock.now(),
            }
            if reason:
                values["notes"] = reason
            token = self.repository.transition_token(
                token_id, organization_id, CANCELLABLE_STATUSES, **values
            )
            if token is None:
                raise NotFoundError("Token not found or cannot be cancelled", {"token_id": token_id})
            self._audit(organization_id, "token_cancelled", token, staff_id, reason=reason)
            self._emit(organization_id, "token:cancelled", token)

        self._publish(organization_id)
        return token

    def update_token(
        self,
        token_id: int,
        request: UpdateTokenRequest,
        organization_id: int,
        user_id: Optional[int] = None,
    ) -> Token:
        """Change priority, notes or metadata of a token that is still waiting."""
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        logger.info(f"Updating token: org={organization_id} token={token_id} fields={sorted(changes)}")
        with self._operation("update token", organization_id, token_id=token_id):
            if not changes:
                raise ValidationError("No changes given", {"token_id": token_id})
            values = dict(changes)
            if "metadata" in values:
                values["meta"] = values.pop("metadata")
            token = self.repository.transition_token(
                token_id, organization_id, [TokenStatus.WAITING], **values
            )
            if token is None:
                raise NotFoundError("Token not found or no longer waiting", {"token_id": token_id})
            self._audit(organization_id, "token_updated", token, user_id, changes=changes)
            self._emit(organization_id, "token:updated", token)

        self._publish(organization_id)
        return token

    def bulk_cancel_tokens(
        self,
        request: BulkCancelRequest,
        organization_id: int,
        user_id: Optional[int] = None,
    ) -> BulkCancelResult:
        """Cancel several tokens at once.

        Every id must belong to the organization. Tokens already past the
        called state are skipped and reported back.
        """
        token_ids = list(dict.fromkeys(request.token_ids))
        logger.info(f"Bulk cancelling tokens: org={organization_id} count={len(token_ids)}")
        with self._operation("bulk cancel tokens", organization_id, count=len(token_ids)):
            found = {t.id for t in self.repository.get_tokens(token_ids, organization_id)}
            missing = [token_id for token_id in token_ids if token_id not in found]
            if missing:
                raise ValidationError(
                    "Some tokens not found or do not belong to organization",
                    {"token_ids": missing},
                )

            values: Dict[str, Any] = {
                "status": TokenStatus.CANCELLED,
                "cancelled_at": self.clock.now(),
            }
            if request.reason:
                values["notes"] = request.reason

            cancelled: List[Token] = []
            skipped: List[int] = []
            for token_id in token_ids:
                token = self.repository.transition_token(
                    token_id, organization_id, CANCELLABLE_STATUSES, **values
                )
                if token is None:
                    skipped.append(token_id)
                    continue
                cancelled.append(token)
                self._emit(organization_id, "token:cancelled", token)

            numbers = [t.number for t in cancelled]
            log_action(
                self.db,
                organization_id=organization_id,
                action="tokens_bulk_cancelled",
                entity_type="token",
                user_id=user_id,
                details={
                    "token_ids": [t.id for t in cancelled],
                    "token_numbers": numbers,
                    "skipped_token_ids": skipped,
                    "reason": request.reason,
                    "count": len(cancelled),
                },
                created_at=self.clock.now(),
            )

        self._publish(organization_id)
        logger.info(f"Cancelled {len(cancelled)} tokens, skipped {len(skipped)}: org={organization_id}")
        return BulkCancelResult(count=len(cancelled), token_numbers=numbers, skipped_token_ids=skipped)

    # ==================== SESSIONS ====================

    def end_session(self, staff_id: int, organization_id: int) -> ServiceSession:
        with self._operation("end session", organization_id, staff_id=staff_id):
            session = self.tracker.end_session(staff_id, organization_id)
        return session

    # ==================== QUERIES ====================

    def get_token(self, token_id: int, organization_id: int) -> Token:
        token = self.repository.get_token(token_id, organization_id)
        if token is None:
            raise NotFoundError("Token not found", {"token_id": token_id})
        return token

    def list_tokens(self, query: TokenListQuery, organization_id: int) -> Tuple[List[Token], int]:
        """Filtered, sorted page of tokens and the total matching count."""
        conditions = [Token.organization_id == organization_id]
        if query.status:
            conditions.append(Token.status.in_(query.status))
        if query.customer_type:
            conditions.append(Token.customer_type.in_(query.customer_type))
        if query.counter_id is not None:
            conditions.append(Token.counter_id == query.counter_id)
        if query.staff_id is not None:
            conditions.append(Token.served_by == query.staff_id)
        if query.from_date is not None:
            conditions.append(Token.created_at >= as_utc(query.from_date))
        if query.to_date is not None:
            conditions.append(Token.created_at <= as_utc(query.to_date))

        total = self.db.execute(select(func.count(Token.id)).where(*conditions)).scalar_one()

        column = SORT_COLUMNS[query.sort_by]
        order = column.asc() if query.sort_order == "asc" else column.desc()
        tokens = self.db.execute(
            select(Token)
            .where(*conditions)
            .order_by(order, Token.id.asc())
            .offset(query.offset)
            .limit(query.limit)
        ).scalars()
        return list(tokens), total

    def get_queue_status(self, organization_id: int, counter_id: Optional[int] = None):
        return self.status_service.get_queue_status(organization_id, counter_id)


def get_token_service(db: DbSession) -> TokenService:
    return TokenService(db)


TokenServiceDep = Annotated[TokenService, Depends(get_token_service)]
