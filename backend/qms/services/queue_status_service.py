"""Read-only queue status snapshots for dashboards and displays."""

import logging
import math
from collections import Counter as Tally
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from qms.core.clock import Clock, system_clock
from qms.core.config import Settings, settings as default_settings
from qms.db.base import as_utc
from qms.models.queue import (
    ACTIVE_SERVICE_STATUSES,
    Counter,
    Token,
    TokenStatus,
)
from qms.schemas.queue import (
    CounterInfo,
    CounterStatus,
    QueueSettingResponse,
    QueueStats,
    QueueStatusResponse,
)
from qms.schemas.token import TokenResponse
from qms.services.queue_ranker import QueueRanker
from qms.services.queue_repository import QueueRepository
from qms.services.session_tracker import SessionTracker

logger = logging.getLogger(__name__)


class QueueStatusService:
    """Assembles the queue snapshot of one organization (optionally one counter)."""

    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        settings: Settings = default_settings,
        ranker: Optional[QueueRanker] = None,
        tracker: Optional[SessionTracker] = None,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings
        self.tracker = tracker or SessionTracker(db, clock, settings)
        self.ranker = ranker or QueueRanker(db, self.tracker, clock)
        self.repository = QueueRepository(db)

    def _tokens(self, query) -> List[TokenResponse]:
        query = query.options(selectinload(Token.counter), selectinload(Token.staff))
        return [TokenResponse.model_validate(t) for t in self.db.execute(query).scalars()]

    def _start_of_today(self) -> datetime:
        """Midnight in the queue's timezone, as UTC."""
        local_now = self.clock.now().astimezone(ZoneInfo(self.settings.queue_timezone))
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(timezone.utc)

    def get_queue_status(self, organization_id: int, counter_id: Optional[int] = None) -> QueueStatusResponse:
        now = self.clock.now()
        limit = self.settings.status_list_limit
        recent = now - timedelta(hours=self.settings.status_recent_window_hours)

        def scoped(query):
            query = query.where(Token.organization_id == organization_id)
            if counter_id is not None:
                query = query.where(Token.counter_id == counter_id)
            return query

        current_serving = self._tokens(
            scoped(select(Token))
            .where(Token.status.in_(ACTIVE_SERVICE_STATUSES))
            .order_by(Token.called_at.desc(), Token.id.desc())
            .limit(limit)
        )
        recently_served = self._tokens(
            scoped(select(Token))
            .where(Token.status == TokenStatus.COMPLETED, Token.completed_at >= recent)
            .order_by(Token.completed_at.desc(), Token.id.desc())
            .limit(limit)
        )
        no_show_queue = self._tokens(
            scoped(select(Token))
            .where(Token.status == TokenStatus.NO_SHOW, Token.cancelled_at >= recent)
            .order_by(Token.cancelled_at.desc(), Token.id.desc())
            .limit(limit)
        )
        next_in_queue = [
            TokenResponse.model_validate(t)
            for t in self.ranker.waiting_tokens(organization_id, counter_id=counter_id, limit=limit)
        ]

        return QueueStatusResponse(
            organization_id=organization_id,
            counter_id=counter_id,
            generated_at=now,
            counters=self._counter_statuses(organization_id, counter_id),
            current_serving=current_serving,
            next_in_queue=next_in_queue,
            recently_served=recently_served,
            no_show_queue=no_show_queue,
            stats=self.get_queue_stats(organization_id, counter_id),
            queue_settings=[
                QueueSettingResponse.model_validate(s)
                for s in self.repository.list_settings(organization_id, active_only=True)
            ],
        )

    def _counter_statuses(self, organization_id: int, counter_id: Optional[int]) -> List[CounterStatus]:
        query = (
            select(Counter)
            .options(selectinload(Counter.assigned_staff))
            .where(Counter.organization_id == organization_id, Counter.is_active.is_(True))
            .order_by(Counter.name, Counter.id)
        )
        if counter_id is not None:
            query = query.where(Counter.id == counter_id)

        statuses = []
        limit = self.settings.status_list_limit
        for counter in self.db.execute(query).scalars():
            current = self.db.execute(
                select(Token)
                .where(
                    Token.organization_id == organization_id,
                    Token.counter_id == counter.id,
                    Token.status.in_(ACTIVE_SERVICE_STATUSES),
                )
                .order_by(Token.called_at.desc(), Token.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            statuses.append(
                CounterStatus(
                    counter=CounterInfo.model_validate(counter),
                    current_token=TokenResponse.model_validate(current) if current else None,
                    next_tokens=[
                        TokenResponse.model_validate(t)
                        for t in self.ranker.waiting_tokens(organization_id, counter_id=counter.id, limit=limit)
                    ],
                    waiting_count=self.ranker.count_waiting(organization_id, counter_id=counter.id),
                    average_service_time=self.tracker.counter_average_service_time(counter.id),
                )
            )
        return statuses

    def get_queue_stats(self, organization_id: int, counter_id: Optional[int] = None) -> QueueStats:
        """Totals and averages over tokens created since midnight (queue timezone)."""
        conditions = [
            Token.organization_id == organization_id,
            Token.created_at >= self._start_of_today(),
        ]
        if counter_id is not None:
            conditions.append(Token.counter_id == counter_id)

        counts = dict(
            self.db.execute(
                select(Token.status, func.count(Token.id)).where(*conditions).group_by(Token.status)
            ).all()
        )
        total_waiting = counts.get(TokenStatus.WAITING, 0)
        total_serving = counts.get(TokenStatus.CALLED, 0) + counts.get(TokenStatus.SERVING, 0)

        completed = self.db.execute(
            select(Token.actual_wait_time, Token.service_duration, Token.created_at).where(
                *conditions,
                Token.status == TokenStatus.COMPLETED,
                Token.actual_wait_time.is_not(None),
                Token.service_duration.is_not(None),
            )
        ).all()

        average_wait = average_service = 0.0
        peak_hour = 0
        if completed:
            average_wait = sum(row.actual_wait_time for row in completed) / len(completed)
            average_service = sum(row.service_duration for row in completed) / len(completed)
            tz = ZoneInfo(self.settings.queue_timezone)
            hours = Tally(as_utc(row.created_at).astimezone(tz).hour for row in completed)
            # Ties go to the later hour
            peak_hour = max(hours, key=lambda hour: (hours[hour], hour))

        estimated_wait = 0
        if total_waiting > 0 and average_service > 0:
            estimated_wait = math.ceil(total_waiting * average_service / max(total_serving, 1))

        return QueueStats(
            total_waiting=total_waiting,
            total_serving=total_serving,
            total_completed=counts.get(TokenStatus.COMPLETED, 0),
            total_no_show=counts.get(TokenStatus.NO_SHOW, 0),
            average_wait_time=round(average_wait),
            average_service_time=round(average_service),
            peak_hour=f"{peak_hour}:00",
            estimated_wait_time=estimated_wait,
        )
