"""
Tests for app wiring, error format, the manual WhatsApp endpoint and the scheduler entry points.
"""

from datetime import timedelta
from unittest.mock import MagicMock

from barberpro import scheduler
from barberpro.core import config


class TestApp:
    def test_root(self, client):
        assert client.get("/").json() == {"status": "API BarberPro está online e operacional!"}

    def test_validation_errors_use_error_key(self, client):
        response = client.post("/api/v1/payments/subscriptions/manage", json={"action": "cancel"})
        assert response.status_code == 400
        assert "establishment_id" in response.json()["error"]

    def test_missing_token_is_401(self, db):
        from fastapi.testclient import TestClient

        from barberpro.core.db import get_db
        from barberpro.main import app

        app.dependency_overrides[get_db] = lambda: db
        try:
            response = TestClient(app).post("/api/v1/payments/subscriptions/manage",
                                            json={"action": "cancel", "establishment_id": "est-1"})
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 401
        assert response.json() == {"error": "Missing Authorization header"}


class TestWhatsAppRoute:
    """Tests for POST /whatsapp/send."""

    def test_test_mode_message(self, client, db, whatsapp_config, wa_requests):
        response = client.post("/api/v1/whatsapp/send", json={
            "establishment_id": "est-1", "phone": "(11) 98888-7777", "message_body": "Olá", "test_mode": True,
        })

        assert response.json()["success"] is True
        assert wa_requests[0]["body"]["to"] == "5511988887777"
        assert list(db.all("whatsapp_logs").values())[0]["message_type"] == "test"

    def test_foreign_establishment(self, client, db, wa_requests):
        db.seed("establishments", "est-2", {"owner_id": "someone-else"})
        response = client.post("/api/v1/whatsapp/send", json={
            "establishment_id": "est-2", "phone": "11988887777", "message_body": "Olá",
        })
        assert response.status_code == 404
        assert wa_requests == []


class TestScheduler:
    """Tests for the scheduled job runner."""

    def test_run_all_collects_results(self, db, wa_client, monkeypatch, now):
        monkeypatch.setattr(config, "WORDNET_INSTANCE_ID", "platform-inst")
        monkeypatch.setattr(config, "WORDNET_API_TOKEN", "platform-token")
        db.seed("establishments", "est-9", {"phone": "11988887777", "subscription_status": "active"})
        db.seed("subscriptions", "s1", {"establishment_id": "est-9", "status": "past_due",
                                        "current_period_end": now - timedelta(days=400)})

        results = scheduler.run_all(db, wa_client, MagicMock())

        assert results["reminders"] == 0
        assert results["dunning"] == {"warned": 0, "suspended": 1}
        assert results["messages"] == {"sent": 0, "failed": 0, "skipped": 0}
        assert db.data("establishments", "est-9")["subscription_status"] == "suspended"

    def test_task_failure_is_contained(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("firestore down")

        monkeypatch.setattr(scheduler.booking_service, "send_booking_reminders", boom)
        assert scheduler.run_reminders(MagicMock(), MagicMock()) == 0
