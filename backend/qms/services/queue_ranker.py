"""Queue ordering, positions and wait estimates."""

import logging
import math
from typing import Iterable, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from qms.core.clock import Clock, system_clock
from qms.models.queue import Counter, CustomerType, Token, TokenStatus
from qms.services.session_tracker import SessionTracker

logger = logging.getLogger(__name__)

# Highest priority first, then arrival order; the primary key breaks ties
# between tokens created in the same instant.
QUEUE_ORDER = (Token.priority.desc(), Token.created_at.asc(), Token.id.asc())


class QueueRanker:
    def __init__(self, db: Session, tracker: SessionTracker, clock: Clock = system_clock):
        self.db = db
        self.tracker = tracker
        self.clock = clock

    @staticmethod
    def _waiting_conditions(
        organization_id: int,
        counter_id: Optional[int] = None,
        customer_type: Optional[CustomerType] = None,
    ) -> list:
        conditions = [
            Token.organization_id == organization_id,
            Token.status == TokenStatus.WAITING,
        ]
        if counter_id is not None:
            # Tokens fixed to this counter plus the shared queue
            conditions.append(or_(Token.counter_id == counter_id, Token.counter_id.is_(None)))
        if customer_type is not None:
            conditions.append(Token.customer_type == customer_type)
        return conditions

    def select_next(
        self,
        organization_id: int,
        counter_id: Optional[int] = None,
        customer_type: Optional[CustomerType] = None,
        exclude_ids: Iterable[int] = (),
    ) -> Optional[Token]:
        """The token that ``call_next`` should claim, or None if the queue is empty."""
        query = select(Token).where(*self._waiting_conditions(organization_id, counter_id, customer_type))
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            query = query.where(Token.id.not_in(exclude_ids))
        return self.db.execute(query.order_by(*QUEUE_ORDER).limit(1)).scalar_one_or_none()

    def waiting_tokens(
        self,
        organization_id: int,
        counter_id: Optional[int] = None,
        customer_type: Optional[CustomerType] = None,
        limit: Optional[int] = None,
    ) -> List[Token]:
        query = (
            select(Token)
            .where(*self._waiting_conditions(organization_id, counter_id, customer_type))
            .order_by(*QUEUE_ORDER)
        )
        if limit is not None:
            query = query.limit(limit)
        return list(self.db.execute(query).scalars())

    def count_waiting(
        self,
        organization_id: int,
        counter_id: Optional[int] = None,
        customer_type: Optional[CustomerType] = None,
    ) -> int:
        return self.db.execute(
            select(func.count(Token.id)).where(
                *self._waiting_conditions(organization_id, counter_id, customer_type)
            )
        ).scalar_one()

    def position(self, token: Token) -> int:
        """1-based position among waiting tokens of the same type and priority.

        Tokens of higher priority are not counted, so with mixed priorities
        this is the position within the token's priority band only. Returns 0
        for a token that is no longer waiting.
        """
        if token.status != TokenStatus.WAITING:
            return 0
        ahead = self.db.execute(
            select(func.count(Token.id)).where(
                Token.organization_id == token.organization_id,
                Token.status == TokenStatus.WAITING,
                Token.customer_type == token.customer_type,
                Token.priority == token.priority,
                or_(
                    Token.created_at < token.created_at,
                    and_(Token.created_at == token.created_at, Token.id < token.id),
                ),
            )
        ).scalar_one()
        return ahead + 1

    def active_counter_count(self, organization_id: int, counter_id: Optional[int] = None) -> int:
        query = select(func.count(Counter.id)).where(
            Counter.organization_id == organization_id,
            Counter.is_active.is_(True),
        )
        if counter_id is not None:
            query = query.where(Counter.id == counter_id)
        return self.db.execute(query).scalar_one()

    def estimated_wait_time(
        self,
        organization_id: int,
        customer_type: CustomerType,
        priority: int,
        counter_id: Optional[int] = None,
    ) -> int:
        """Minutes a token of this priority can expect to wait.

        ``ceil(tokens_ahead * avg_service_time / active_counters)`` where
        tokens ahead are all waiting tokens of equal or higher priority that
        arrived by now. 0 when nothing is waiting or no counter is open.
        """
        tokens_ahead = self.db.execute(
            select(func.count(Token.id)).where(
                *self._waiting_conditions(organization_id, counter_id),
                Token.priority >= priority,
                Token.created_at <= self.clock.now(),
            )
        ).scalar_one()
        if tokens_ahead == 0:
            return 0

        active_counters = self.active_counter_count(organization_id, counter_id)
        if active_counters == 0:
            return 0

        average = self.tracker.average_service_time(organization_id, customer_type)
        return math.ceil(tokens_ahead * average / active_counters)
