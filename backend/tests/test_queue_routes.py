"""Tests for the token and queue API endpoints."""

import pytest
from sqlalchemy import select
from starlette.websockets import WebSocketDisconnect

from qms.core.security import create_staff_token
from qms.models.queue import CustomerType, ServiceSession, Token, TokenStatus
from qms.schemas.token import CancelTokenRequest

API = "/api/v1"


class TestTokenEndpoints:

    def test_create_token(self, client, staff_headers, queue_settings, counters, staff_user):
        response = client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["token"]["number"] == "I001"
        assert data["token"]["status"] == "waiting"
        assert data["position"] == 1
        assert data["estimated_wait_time"] == 1

    def test_create_requires_auth(self, client, queue_settings):
        response = client.post(f"{API}/tokens/", json={"customer_type": "instant"})
        assert response.status_code == 401

    def test_public_kiosk_token(self, client, organization, queue_settings):
        response = client.post(
            f"{API}/tokens/public",
            json={"customer_type": "retail", "organization_id": organization.id},
        )

        assert response.status_code == 201
        assert response.json()["token"]["number"] == "R001"

    def test_inactive_queue_returns_conflict(self, client, db_session, staff_headers, queue_settings):
        queue_settings[CustomerType.BROWSER].is_active = False
        db_session.commit()

        response = client.post(f"{API}/tokens/", json={"customer_type": "browser"}, headers=staff_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "not_active"

    def test_invalid_priority(self, client, staff_headers, queue_settings):
        response = client.post(
            f"{API}/tokens/", json={"customer_type": "instant", "priority": 11}, headers=staff_headers
        )
        assert response.status_code == 422

    def test_list_tokens(self, client, staff_headers, queue_settings, clock):
        for customer_type in ("instant", "instant", "retail"):
            client.post(f"{API}/tokens/", json={"customer_type": customer_type}, headers=staff_headers)
            clock.advance(minutes=1)

        response = client.get(
            f"{API}/tokens/",
            params={"customer_type": "instant", "limit": 1, "sort_order": "asc"},
            headers=staff_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["has_more"] is True
        assert [t["number"] for t in data["items"]] == ["I001"]

    def test_get_token_of_other_organization(self, client, queue_settings, staff_headers, outsider_headers):
        created = client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers).json()

        response = client.get(f"{API}/tokens/{created['token']['id']}", headers=outsider_headers)

        assert response.status_code == 404
        assert response.json() == {"detail": "Token not found", "error": "not_found"}

    def test_cancel_token(self, client, staff_headers, queue_settings):
        created = client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers).json()
        token_id = created["token"]["id"]

        response = client.post(
            f"{API}/tokens/{token_id}/cancel", json={"reason": "left"}, headers=staff_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = client.post(f"{API}/tokens/{token_id}/cancel", headers=staff_headers)
        assert again.status_code == 404

    def test_cancel_body_names_staff_and_reason_only(
        self, client, db_session, staff_headers, second_staff, queue_settings
    ):
        token_id = client.post(
            f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers
        ).json()["token"]["id"]

        assert set(CancelTokenRequest.model_fields) == {"staff_id", "reason"}
        denied = client.post(
            f"{API}/tokens/{token_id}/cancel", json={"staff_id": second_staff.id}, headers=staff_headers
        )
        assert denied.status_code == 403
        assert db_session.get(Token, token_id).status == TokenStatus.WAITING

    def test_invalid_token_rejected(self, client, queue_settings):
        response = client.get(f"{API}/tokens/", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_update_waiting_token(self, client, staff_headers, queue_settings, counters):
        token_id = client.post(
            f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers
        ).json()["token"]["id"]

        response = client.patch(
            f"{API}/tokens/{token_id}", json={"priority": 7, "notes": "elderly"}, headers=staff_headers
        )
        assert response.status_code == 200
        assert response.json()["priority"] == 7
        assert response.json()["notes"] == "elderly"

        client.post(f"{API}/queue/call-next", json={"counter_id": counters[0].id}, headers=staff_headers)
        late = client.patch(f"{API}/tokens/{token_id}", json={"priority": 1}, headers=staff_headers)
        assert late.status_code == 404
        assert late.json()["error"] == "not_found"

    def test_bulk_cancel_requires_admin(self, client, staff_headers, admin_headers, queue_settings):
        ids = [
            client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers).json()["token"]["id"]
            for _ in range(2)
        ]

        denied = client.post(f"{API}/tokens/bulk/cancel", json={"token_ids": ids}, headers=staff_headers)
        assert denied.status_code == 403

        response = client.post(
            f"{API}/tokens/bulk/cancel", json={"token_ids": ids, "reason": "closing"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json() == {"count": 2, "token_numbers": ["I001", "I002"], "skipped_token_ids": []}

    def test_bulk_cancel_with_unknown_token(self, client, staff_headers, admin_headers, queue_settings):
        token_id = client.post(
            f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers
        ).json()["token"]["id"]

        response = client.post(
            f"{API}/tokens/bulk/cancel", json={"token_ids": [token_id, 9999]}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation"


class TestCounterWorkflow:

    def test_full_service_cycle(self, client, clock, staff_headers, staff_user, counters, queue_settings, broadcaster):
        created = client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers).json()
        token_id = created["token"]["id"]
        clock.advance(minutes=3)

        called = client.post(f"{API}/queue/call-next", json={"counter_id": counters[0].id}, headers=staff_headers)
        assert called.status_code == 200
        assert called.json()["status"] == "called"
        assert called.json()["served_by"] == staff_user.id
        assert called.json()["actual_wait_time"] == 3

        serving = client.post(f"{API}/queue/start-serving", json={"token_id": token_id}, headers=staff_headers)
        assert serving.json()["status"] == "serving"

        clock.advance(minutes=5)
        completed = client.post(
            f"{API}/queue/complete-service",
            json={"token_id": token_id, "rating": 5},
            headers=staff_headers,
        )
        assert completed.status_code == 200
        assert completed.json()["service_duration"] == 5
        assert completed.json()["token"]["metadata"] == {"rating": 5}

        session = client.post(f"{API}/queue/end-session", headers=staff_headers)
        assert session.status_code == 200
        assert session.json()["tokens_served"] == 1
        assert session.json()["average_service_time"] == pytest.approx(5)

        assert "token:completed" in broadcaster.names()

    def test_staff_cannot_act_as_member_of_other_organization(
        self, client, db_session, staff_headers, staff_user, outsider, counters, queue_settings
    ):
        token_id = client.post(
            f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers
        ).json()["token"]["id"]

        response = client.post(
            f"{API}/queue/call-next",
            json={"counter_id": counters[0].id, "staff_id": outsider.id},
            headers=staff_headers,
        )

        assert response.status_code == 403
        assert db_session.get(Token, token_id).status == TokenStatus.WAITING
        sessions = db_session.execute(
            select(ServiceSession).where(ServiceSession.staff_id == outsider.id)
        ).scalars().all()
        assert sessions == []

    def test_staff_cannot_act_as_colleague(self, client, staff_headers, second_staff, counters, queue_settings):
        client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers)

        response = client.post(
            f"{API}/queue/call-next",
            json={"counter_id": counters[0].id, "staff_id": second_staff.id},
            headers=staff_headers,
        )
        assert response.status_code == 403

    def test_admin_acts_for_staff_of_own_organization_only(
        self, client, admin_headers, staff_headers, second_staff, outsider, counters, queue_settings
    ):
        client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers)

        foreign = client.post(
            f"{API}/queue/call-next",
            json={"counter_id": counters[0].id, "staff_id": outsider.id},
            headers=admin_headers,
        )
        assert foreign.status_code == 400
        assert foreign.json() == {"detail": "Staff member not found in organization", "error": "validation"}

        called = client.post(
            f"{API}/queue/call-next",
            json={"counter_id": counters[0].id, "staff_id": second_staff.id},
            headers=admin_headers,
        )
        assert called.status_code == 200
        assert called.json()["served_by"] == second_staff.id

    def test_end_session_of_other_organization_member(self, client, admin_headers, outsider):
        response = client.post(f"{API}/queue/end-session", json={"staff_id": outsider.id}, headers=admin_headers)
        assert response.status_code == 404

    def test_call_next_on_empty_queue(self, client, staff_headers, counters, queue_settings):
        response = client.post(f"{API}/queue/call-next", json={"counter_id": counters[0].id}, headers=staff_headers)

        assert response.status_code == 404
        assert response.json() == {"detail": "No tokens in queue", "error": "not_found"}

    def test_no_show_and_recall(self, client, staff_headers, counters, queue_settings):
        token_id = client.post(
            f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers
        ).json()["token"]["id"]
        client.post(f"{API}/queue/call-next", json={"counter_id": counters[0].id}, headers=staff_headers)

        missed = client.post(f"{API}/queue/mark-no-show", json={"token_id": token_id}, headers=staff_headers)
        assert missed.json()["status"] == "no_show"

        recalled = client.post(
            f"{API}/queue/recall-token",
            json={"token_id": token_id, "counter_id": counters[1].id},
            headers=staff_headers,
        )
        assert recalled.status_code == 200
        assert recalled.json()["status"] == "called"
        assert recalled.json()["counter_id"] == counters[1].id

    def test_end_session_without_session(self, client, staff_headers):
        response = client.post(f"{API}/queue/end-session", headers=staff_headers)
        assert response.status_code == 404

    def test_queue_status(self, client, staff_headers, counters, queue_settings):
        client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers)
        client.post(f"{API}/tokens/", json={"customer_type": "instant", "priority": 10}, headers=staff_headers)

        response = client.get(f"{API}/queue/status", headers=staff_headers)

        assert response.status_code == 200
        data = response.json()
        assert [t["number"] for t in data["next_in_queue"]] == ["I002", "I001"]
        assert len(data["counters"]) == 3
        assert data["stats"]["total_waiting"] == 2


class TestSettingsEndpoints:

    def test_staff_cannot_update_settings(self, client, staff_headers):
        response = client.patch(
            f"{API}/queue/settings", json={"customer_type": "instant", "prefix": "X"}, headers=staff_headers
        )
        assert response.status_code == 403

    def test_admin_updates_settings(self, client, admin_headers, staff_headers):
        response = client.patch(
            f"{API}/queue/settings", json={"customer_type": "browser", "prefix": "BR"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["prefix"] == "BR"

        listed = client.get(f"{API}/queue/settings", headers=staff_headers)
        assert [s["customer_type"] for s in listed.json()] == ["browser"]

    def test_reset_queue(self, client, admin_headers, staff_headers, queue_settings):
        client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers)

        response = client.post(f"{API}/queue/reset", json={"customer_type": "instant"}, headers=admin_headers)
        assert response.json() == {"customer_type": "instant", "current_number": 0}

        again = client.post(f"{API}/tokens/", json={"customer_type": "instant"}, headers=staff_headers)
        assert again.json()["token"]["number"] == "I001"


class TestHealthAndWebSocket:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_websocket_connects_to_own_organization(self, client, staff_user, organization):
        token = create_staff_token(staff_user.id, organization.id, "staff")

        with client.websocket_connect(f"/ws/org/{organization.id}?token={token}") as ws:
            hello = ws.receive_json()
            assert hello["event"] == "connected"
            assert hello["data"] == {"organization_id": organization.id, "user_id": staff_user.id}

            ws.send_text("ping")
            assert ws.receive_text() == "pong"

    def test_websocket_rejects_other_organization(self, client, staff_user, other_organization):
        token = create_staff_token(staff_user.id, staff_user.organization_id, "staff")

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws/org/{other_organization.id}?token={token}") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_readiness(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "healthy"

    def test_metrics_require_admin(self, client, staff_headers, admin_headers, counters, queue_settings):
        client.post(f"{API}/queue/call-next", json={"counter_id": counters[0].id}, headers=staff_headers)

        assert client.get("/metrics", headers=staff_headers).status_code == 403

        response = client.get("/metrics", headers=admin_headers)
        assert response.status_code == 200
        assert 'queue_errors_total{kind="not_found"}' in response.text
        assert "broadcast_failures_total" in response.text
