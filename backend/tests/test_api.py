"""
LessonLoop Backend — API Tests
===============================

What:  HTTP-level behaviour: auth, tenancy, status codes, the error
       envelope and list headers.
How:   HTTPX AsyncClient against the ASGI app (see conftest.test_client).
       Seed data is committed first; each request runs in its own session.
"""

import uuid
from unittest.mock import patch

import pytest

from conftest import auth_headers
from lessonloop.config import settings


def billing_url(org):
    return f"/api/orgs/{org.id}/billing-runs"


JANUARY = {"start_date": "2025-01-01", "end_date": "2025-01-31"}


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["assistant"] == "available"
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_client_request_id_is_echoed(self, test_client):
        response = await test_client.get("/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"


class TestAuth:

    @pytest.mark.asyncio
    async def test_missing_token(self, test_client, db_session, org):
        await db_session.commit()

        response = await test_client.get(billing_url(org))

        assert response.status_code == 401
        body = response.json()
        assert body["error"] == "unauthorized"
        assert set(body) == {"error", "message", "details", "request_id"}

    @pytest.mark.asyncio
    async def test_garbage_token(self, test_client, db_session, org):
        await db_session.commit()

        response = await test_client.get(
            billing_url(org), headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_parent_cannot_see_finance(self, test_client, db_session, org, members):
        await db_session.commit()

        response = await test_client.get(
            f"/api/orgs/{org.id}/invoices", headers=auth_headers(members["parent"].user_id)
        )

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_other_org_is_forbidden(self, test_client, db_session, org, members):
        await db_session.commit()

        response = await test_client.get(
            f"/api/orgs/{uuid.uuid4()}/invoices", headers=auth_headers(members["owner"].user_id)
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_parent_can_read_rate_cards(self, test_client, db_session, org, members, billing_data):
        await db_session.commit()

        response = await test_client.get(
            f"/api/orgs/{org.id}/rate-cards", headers=auth_headers(members["parent"].user_id)
        )

        assert response.status_code == 200
        assert [c["duration_mins"] for c in response.json()] == [30, 60]


class TestBillingRunsApi:

    @pytest.mark.asyncio
    async def test_create_then_conflict(self, test_client, db_session, org, members, billing_data):
        await db_session.commit()
        headers = auth_headers(members["finance"].user_id)

        created = await test_client.post(billing_url(org), json=JANUARY, headers=headers)

        assert created.status_code == 201
        run = created.json()
        assert run["status"] == "completed"
        assert run["summary"]["invoice_count"] == 3
        assert run["summary"]["total_amount"] == 9500
        assert run["created_by"] == str(members["finance"].user_id)

        conflict = await test_client.post(billing_url(org), json=JANUARY, headers=headers)

        assert conflict.status_code == 409
        body = conflict.json()
        assert body["error"] == "conflict"
        assert body["message"] == "A billing run for this period already exists"
        assert body["details"]["billing_run_id"] == run["id"]
        assert body["request_id"] == conflict.headers["X-Request-ID"]

        listed = await test_client.get(billing_url(org), headers=headers)
        assert listed.headers["X-Total-Count"] == "1"

        invoices = await test_client.get(f"/api/orgs/{org.id}/invoices", headers=headers)
        assert invoices.status_code == 200
        assert invoices.headers["X-Total-Count"] == "3"
        assert invoices.json()["total_count"] == 3

    @pytest.mark.asyncio
    async def test_teacher_cannot_bill(self, test_client, db_session, org, members):
        await db_session.commit()

        response = await test_client.post(
            billing_url(org), json=JANUARY, headers=auth_headers(members["teacher"].user_id)
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_backwards_period(self, test_client, db_session, org, members):
        await db_session.commit()

        response = await test_client.post(
            billing_url(org),
            json={"start_date": "2025-02-01", "end_date": "2025-01-01"},
            headers=auth_headers(members["owner"].user_id),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert response.json()["details"]["field"] == "end_date"

    @pytest.mark.asyncio
    async def test_unknown_run(self, test_client, db_session, org, members):
        await db_session.commit()

        response = await test_client.get(
            f"{billing_url(org)}/{uuid.uuid4()}", headers=auth_headers(members["admin"].user_id)
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_broken_run_is_stored_as_failed(
        self, test_client, db_session, org, members, billing_data
    ):
        await db_session.commit()
        headers = auth_headers(members["finance"].user_id)

        with patch(
            "lessonloop.services.billing_run_service.group_lessons_by_payer",
            side_effect=RuntimeError("boom"),
        ):
            failed = await test_client.post(billing_url(org), json=JANUARY, headers=headers)

        assert failed.status_code == 500
        body = failed.json()
        assert body["error"] == "server_error"
        assert set(body["details"]) == {"billing_run_id"}

        fetched = await test_client.get(
            f"{billing_url(org)}/{body['details']['billing_run_id']}", headers=headers
        )
        assert fetched.status_code == 200
        assert fetched.json()["status"] == "failed"

        listed = await test_client.get(billing_url(org), headers=headers)
        assert listed.headers["X-Total-Count"] == "1"

        rerun = await test_client.post(billing_url(org), json=JANUARY, headers=headers)
        assert rerun.status_code == 201
        assert rerun.json()["summary"]["invoice_count"] == 3


class TestInvoicesApi:

    @pytest.mark.asyncio
    async def test_manual_invoice_and_payment(self, test_client, db_session, org, members, billing_data):
        await db_session.commit()
        headers = auth_headers(members["finance"].user_id)
        base = f"/api/orgs/{org.id}/invoices"

        created = await test_client.post(
            base,
            json={
                "due_date": "2025-02-14",
                "payer_guardian_id": str(billing_data.guardian_a.id),
                "items": [{"description": "Exam fee", "unit_price_minor": 6000}],
            },
            headers=headers,
        )
        assert created.status_code == 201
        invoice = created.json()
        assert invoice["total_minor"] == 6000
        assert invoice["items"][0]["description"] == "Exam fee"

        early = await test_client.post(
            f"{base}/{invoice['id']}/payments", json={"amount_minor": 6000}, headers=headers
        )
        assert early.status_code == 400

        sent = await test_client.post(
            f"{base}/{invoice['id']}/status", json={"status": "sent"}, headers=headers
        )
        assert sent.status_code == 200

        paid = await test_client.post(
            f"{base}/{invoice['id']}/payments",
            json={"amount_minor": 6000, "method": "card"},
            headers=headers,
        )
        assert paid.status_code == 201
        assert paid.json()["invoice_status"] == "paid"
        assert paid.json()["outstanding_minor"] == 0

        stats = await test_client.get(f"{base}/stats", headers=headers)
        assert stats.json()["paid_count"] == 1
        assert stats.json()["paid_total"] == 6000


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_limit_answers_429_with_retry_after(self, test_client):
        path = f"/api/orgs/{uuid.uuid4()}/invoices"

        with patch.object(settings, "rate_limit_requests", 2):
            responses = [await test_client.get(path) for _ in range(3)]

        limited = responses[-1]
        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) > 0
        body = limited.json()
        assert body["error"] == "rate_limit_exceeded"
        assert set(body) == {"error", "message", "details", "request_id"}
        assert body["details"]["retry_after"] == int(limited.headers["Retry-After"])

    @pytest.mark.asyncio
    async def test_health_is_never_limited(self, test_client):
        with patch.object(settings, "rate_limit_requests", 1):
            responses = [await test_client.get("/health") for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 200]
