"""Tests for the queue status snapshot."""

from datetime import timedelta

from qms.models.queue import CustomerType, Token, TokenStatus
from qms.schemas.token import (
    CallNextRequest,
    CompleteServiceRequest,
    CreateTokenRequest,
    MarkNoShowRequest,
)
from qms.services.queue_status_service import QueueStatusService


def _create(service, organization, clock, priority=0, **kwargs):
    result = service.create_token(
        CreateTokenRequest(customer_type=CustomerType.INSTANT, priority=priority, **kwargs), organization.id
    )
    clock.advance(minutes=1)
    return result.token


class TestQueueStatus:

    def test_waiting_tokens_in_call_order(self, service, organization, clock, counters, queue_settings, staff_user):
        # One finished service today so averages are known
        done = _create(service, organization, clock)
        service.call_next_token(CallNextRequest(counter_id=counters[0].id, staff_id=staff_user.id), organization.id)
        clock.advance(minutes=6)
        service.complete_service(
            CompleteServiceRequest(token_id=done.id, staff_id=staff_user.id), organization.id
        )

        low = _create(service, organization, clock, priority=0)
        high = _create(service, organization, clock, priority=10)

        status = service.get_queue_status(organization.id)

        assert [t.id for t in status.next_in_queue] == [high.id, low.id]
        assert len(status.counters) == 3
        assert status.stats.total_waiting == 2
        assert status.stats.total_completed == 1
        assert status.stats.average_service_time == 6
        assert status.stats.estimated_wait_time > 0
        assert status.stats.estimated_wait_time == 12  # ceil(2 * 6 / max(0, 1))

    def test_counter_entries(self, service, organization, clock, counters, queue_settings, staff_user):
        serving = _create(service, organization, clock)
        fixed = _create(service, organization, clock, counter_id=counters[1].id)
        shared = _create(service, organization, clock)
        service.call_next_token(CallNextRequest(counter_id=counters[0].id, staff_id=staff_user.id), organization.id)

        status = service.get_queue_status(organization.id)
        by_name = {entry.counter.name: entry for entry in status.counters}

        first = by_name["Counter 1"]
        assert first.current_token.id == serving.id
        assert [t.id for t in first.next_tokens] == [shared.id]
        assert first.waiting_count == 1

        second = by_name["Counter 2"]
        assert second.current_token is None
        assert [t.id for t in second.next_tokens] == [fixed.id, shared.id]
        assert second.waiting_count == 2

        assert [t.id for t in status.current_serving] == [serving.id]
        assert status.current_serving[0].counter.name == "Counter 1"
        assert status.current_serving[0].staff.username == staff_user.username

    def test_inactive_counters_are_left_out(self, service, db_session, organization, counters, queue_settings):
        counters[2].is_active = False
        db_session.commit()

        status = service.get_queue_status(organization.id)
        assert [entry.counter.name for entry in status.counters] == ["Counter 1", "Counter 2"]

    def test_counter_scope(self, service, organization, clock, counters, queue_settings, staff_user):
        _create(service, organization, clock)
        _create(service, organization, clock)
        service.call_next_token(CallNextRequest(counter_id=counters[0].id, staff_id=staff_user.id), organization.id)
        service.call_next_token(CallNextRequest(counter_id=counters[1].id, staff_id=staff_user.id), organization.id)

        status = service.get_queue_status(organization.id, counter_id=counters[1].id)

        assert status.counter_id == counters[1].id
        assert [entry.counter.id for entry in status.counters] == [counters[1].id]
        assert [t.counter_id for t in status.current_serving] == [counters[1].id]
        assert status.stats.total_serving == 1

    def test_recent_and_no_show_lists(self, service, db_session, organization, clock, counters, queue_settings, staff_user):
        completed = _create(service, organization, clock)
        missed = _create(service, organization, clock)
        service.call_next_token(CallNextRequest(counter_id=counters[0].id, staff_id=staff_user.id), organization.id)
        service.call_next_token(CallNextRequest(counter_id=counters[1].id, staff_id=staff_user.id), organization.id)
        clock.advance(minutes=4)
        service.complete_service(
            CompleteServiceRequest(token_id=completed.id, staff_id=staff_user.id), organization.id
        )
        service.mark_no_show(MarkNoShowRequest(token_id=missed.id, staff_id=staff_user.id), organization.id)

        # Outside the 24 hour window
        db_session.add(Token(
            organization_id=organization.id,
            number="I900",
            customer_type=CustomerType.INSTANT,
            status=TokenStatus.COMPLETED,
            created_at=clock.now() - timedelta(days=2),
            completed_at=clock.now() - timedelta(days=2),
            service_duration=5,
        ))
        db_session.commit()

        status = service.get_queue_status(organization.id)

        assert [t.id for t in status.recently_served] == [completed.id]
        assert [t.id for t in status.no_show_queue] == [missed.id]
        assert status.stats.total_no_show == 1

    def test_lists_are_capped(self, service, organization, clock, counters, queue_settings):
        for _ in range(12):
            _create(service, organization, clock)

        status = service.get_queue_status(organization.id)

        assert len(status.next_in_queue) == 10
        assert len(status.counters[0].next_tokens) == 10
        assert status.counters[0].waiting_count == 12
        assert status.stats.total_waiting == 12

    def test_active_settings_only(self, service, db_session, organization, queue_settings):
        queue_settings[CustomerType.RETAIL].is_active = False
        db_session.commit()

        status = service.get_queue_status(organization.id)
        assert {s.customer_type for s in status.queue_settings} == {CustomerType.INSTANT, CustomerType.BROWSER}


class TestQueueStats:

    def _finished(self, db_session, organization, created_at, wait, duration):
        db_session.add(Token(
            organization_id=organization.id,
            number=f"I{wait}{duration}",
            customer_type=CustomerType.INSTANT,
            status=TokenStatus.COMPLETED,
            created_at=created_at,
            called_at=created_at + timedelta(minutes=wait),
            completed_at=created_at + timedelta(minutes=wait + duration),
            actual_wait_time=wait,
            service_duration=duration,
        ))
        db_session.commit()

    def test_averages_and_peak_hour(self, db_session, organization, clock):
        morning = clock.now().replace(hour=7, minute=10)
        self._finished(db_session, organization, morning, 4, 5)
        self._finished(db_session, organization, morning.replace(hour=8), 6, 6)
        self._finished(db_session, organization, morning.replace(hour=8, minute=40), 9, 8)

        stats = QueueStatusService(db_session, clock).get_queue_stats(organization.id)

        assert stats.total_completed == 3
        assert stats.average_wait_time == 6  # round(19 / 3)
        assert stats.average_service_time == 6  # round(19 / 3)
        assert stats.peak_hour == "8:00"
        assert stats.estimated_wait_time == 0

    def test_yesterday_is_not_counted(self, db_session, organization, clock):
        self._finished(db_session, organization, clock.now() - timedelta(days=1), 3, 3)

        stats = QueueStatusService(db_session, clock).get_queue_stats(organization.id)

        assert stats.total_completed == 0
        assert stats.peak_hour == "0:00"

    def test_empty_organization(self, db_session, organization, clock):
        stats = QueueStatusService(db_session, clock).get_queue_stats(organization.id)

        assert stats.total_waiting == 0
        assert stats.average_service_time == 0
        assert stats.estimated_wait_time == 0
