"""Staff service sessions and service-time statistics."""

import logging
import math
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from qms.core.clock import Clock, system_clock
from qms.core.config import Settings, settings as default_settings
from qms.core.errors import NotFoundError
from qms.models.queue import CustomerType, ServiceSession, Token, TokenStatus

logger = logging.getLogger(__name__)


class SessionTracker:
    """Keeps one open service session per staff member and its running stats."""

    def __init__(self, db: Session, clock: Clock = system_clock, settings: Settings = default_settings):
        self.db = db
        self.clock = clock
        self.settings = settings

    # ==================== SESSIONS ====================

    def get_active_session(self, staff_id: int, organization_id: int) -> Optional[ServiceSession]:
        return self.db.execute(
            select(ServiceSession)
            .where(
                ServiceSession.staff_id == staff_id,
                ServiceSession.organization_id == organization_id,
                ServiceSession.ended_at.is_(None),
            )
            .order_by(ServiceSession.started_at.asc(), ServiceSession.id.asc())
            .limit(1)
        ).scalar_one_or_none()

    def ensure_active_session(self, staff_id: int, organization_id: int) -> ServiceSession:
        """Return the staff member's open session, starting one if needed."""
        session = self.get_active_session(staff_id, organization_id)
        if session is not None:
            return session

        session = ServiceSession(
            staff_id=staff_id,
            organization_id=organization_id,
            started_at=self.clock.now(),
            tokens_served=0,
            average_service_time=0.0,
        )
        self.db.add(session)
        self.db.flush()
        logger.info(f"Started service session {session.id} for staff={staff_id} org={organization_id}")
        return session

    def record_completion(self, staff_id: int, organization_id: int, duration: int) -> Optional[ServiceSession]:
        """Fold one completed service into the open session's running mean.

        The increment and the new mean are computed in a single UPDATE from
        the stored values, so concurrent completions don't lose each other.
        """
        session = self.get_active_session(staff_id, organization_id)
        if session is None:
            logger.warning(
                f"No open service session for staff={staff_id} org={organization_id}; completion not tracked"
            )
            return None

        self.db.execute(
            update(ServiceSession)
            .where(ServiceSession.id == session.id)
            .values(
                tokens_served=ServiceSession.tokens_served + 1,
                average_service_time=(
                    ServiceSession.average_service_time * ServiceSession.tokens_served + duration
                ) / (ServiceSession.tokens_served + 1),
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.get(ServiceSession, session.id, populate_existing=True)

    def end_session(self, staff_id: int, organization_id: int) -> ServiceSession:
        session = self.get_active_session(staff_id, organization_id)
        if session is None:
            raise NotFoundError("No active service session", {"staff_id": staff_id})
        session.ended_at = self.clock.now()
        self.db.flush()
        logger.info(
            f"Ended service session {session.id} for staff={staff_id}: "
            f"{session.tokens_served} served, avg {session.average_service_time:.1f} min"
        )
        return session

    # ==================== AVERAGES ====================

    def _recent_durations(self, *conditions, since, limit: int) -> List[int]:
        return list(
            self.db.execute(
                select(Token.service_duration)
                .where(
                    Token.status == TokenStatus.COMPLETED,
                    Token.service_duration.is_not(None),
                    Token.completed_at >= since,
                    *conditions,
                )
                .order_by(Token.completed_at.desc(), Token.id.desc())
                .limit(limit)
            ).scalars()
        )

    def average_service_time(self, organization_id: int, customer_type: CustomerType) -> int:
        """Average minutes per service for a customer type, rounded up.

        Uses the most recent completions within the rolling window and falls
        back to the configured default when there are none.
        """
        since = self.clock.now() - timedelta(days=self.settings.service_time_window_days)
        durations = self._recent_durations(
            Token.organization_id == organization_id,
            Token.customer_type == customer_type,
            since=since,
            limit=self.settings.service_time_sample_size,
        )
        if not durations:
            return self.settings.service_minutes_for(customer_type.value)
        return math.ceil(sum(durations) / len(durations))

    def counter_average_service_time(self, counter_id: int) -> int:
        """Average minutes per service at one counter over the recent window, 0 if idle."""
        since = self.clock.now() - timedelta(hours=self.settings.counter_service_time_window_hours)
        durations = self._recent_durations(
            Token.counter_id == counter_id,
            since=since,
            limit=self.settings.counter_service_time_sample_size,
        )
        if not durations:
            return 0
        return math.ceil(sum(durations) / len(durations))
