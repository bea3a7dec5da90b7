"""Tests for public card verification and the admin endpoints."""
import pytest
from datetime import datetime, timedelta, timezone
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"code": 200, "message": "API is healthy."}


@pytest.mark.asyncio
async def test_health_reports_database_outage(client: AsyncClient, db_session, monkeypatch):
    async def unreachable(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(db_session, "execute", unreachable)

    resp = await client.get("/api/v1/health")
    assert resp.status_code == 503
    assert resp.json()["detail"]["error"] == "database_unavailable"


# ============================================================================
# Public verification
# ============================================================================

@pytest.mark.asyncio
async def test_verify_active_card(client: AsyncClient, make_affiliation):
    affiliation = await make_affiliation(completed=True, member_number="FENAM-2026-ABCDEF")

    resp = await client.get("/api/v1/membership/verify", params={"memberNumber": " fenam-2026-abcdef "})
    assert resp.status_code == 200
    data = resp.json()
    assert data["found"] is True
    assert data["active"] is True
    assert data["status"] == "completed"
    assert data["memberUntil"] is not None
    # No personal data
    assert affiliation.email not in resp.text
    assert affiliation.last_name not in resp.text


@pytest.mark.asyncio
async def test_verify_expired_and_unknown_cards(client: AsyncClient, make_affiliation):
    now = datetime.now(timezone.utc)
    await make_affiliation(
        completed=True,
        member_number="FENAM-2025-000001",
        member_since=now - timedelta(days=400),
        member_until=now - timedelta(days=35),
    )

    data = (await client.get("/api/v1/membership/verify", params={"memberNumber": "FENAM-2025-000001"})).json()
    assert data["found"] is True
    assert data["active"] is False

    data = (await client.get("/api/v1/membership/verify", params={"memberNumber": "FENAM-2025-FFFFFF"})).json()
    assert data == {"found": False, "status": None, "active": False, "memberSince": None, "memberUntil": None}

    resp = await client.get("/api/v1/membership/verify")
    assert resp.status_code == 400


# ============================================================================
# Admin
# ============================================================================

@pytest.mark.asyncio
async def test_admin_requires_bearer_token(client: AsyncClient, test_settings):
    resp = await client.get("/api/v1/admin/affiliations")
    assert resp.status_code == 401

    resp = await client.get("/api/v1/admin/affiliations", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 403

    test_settings.ADMIN_TOKEN = None
    resp = await client.get("/api/v1/admin/affiliations", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_admin_list_filters_and_paginates(client: AsyncClient, admin_headers, make_affiliation):
    now = datetime.now(timezone.utc)
    await make_affiliation(email="attivo@example.com", completed=True)
    await make_affiliation(
        email="scaduto@example.com",
        completed=True,
        member_since=now - timedelta(days=400),
        member_until=now - timedelta(days=35),
    )
    await make_affiliation(email="attesa@example.com", last_name="Esposito", order_id="ORDER-77")

    resp = await client.get("/api/v1/admin/affiliations", headers=admin_headers, params={"perPage": 2})
    assert resp.status_code == 200
    data = resp.json()
    assert data["totalItems"] == 3
    assert data["totalPages"] == 2
    assert len(data["items"]) == 2

    data = (await client.get("/api/v1/admin/affiliations", headers=admin_headers, params={"membershipFilter": "active"})).json()
    assert [i["email"] for i in data["items"]] == ["attivo@example.com"]
    assert data["items"][0]["active"] is True

    data = (await client.get("/api/v1/admin/affiliations", headers=admin_headers, params={"membershipFilter": "expired"})).json()
    assert [i["email"] for i in data["items"]] == ["scaduto@example.com"]

    data = (await client.get("/api/v1/admin/affiliations", headers=admin_headers, params={"status": "pending"})).json()
    assert [i["email"] for i in data["items"]] == ["attesa@example.com"]

    data = (await client.get("/api/v1/admin/affiliations", headers=admin_headers, params={"q": "esposito"})).json()
    assert data["totalItems"] == 1
    data = (await client.get("/api/v1/admin/affiliations", headers=admin_headers, params={"q": "ORDER-77"})).json()
    assert data["totalItems"] == 1

    resp = await client.get("/api/v1/admin/affiliations", headers=admin_headers, params={"status": "bogus"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_admin_get_affiliation(client: AsyncClient, admin_headers, make_affiliation):
    affiliation = await make_affiliation(completed=True)

    resp = await client.get(f"/api/v1/admin/affiliations/{affiliation.id}", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["member_number"] == affiliation.member_number

    resp = await client.get("/api/v1/admin/affiliations/unknown00000000", headers=admin_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_admin_resend_card(client: AsyncClient, admin_headers, make_affiliation, email_service):
    affiliation = await make_affiliation(completed=True, membership_card_sent_at=datetime.now(timezone.utc))

    resp = await client.post(f"/api/v1/admin/affiliations/{affiliation.id}/resend-card", headers=admin_headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["cardSent"] is True
    assert data["memberNumber"] == affiliation.member_number
    assert len(email_service.of_kind("card")) == 1


@pytest.mark.asyncio
async def test_admin_resend_card_errors(client: AsyncClient, admin_headers, make_affiliation):
    pending = await make_affiliation()

    resp = await client.post(f"/api/v1/admin/affiliations/{pending.id}/resend-card", headers=admin_headers)
    assert resp.status_code == 400

    resp = await client.post("/api/v1/admin/affiliations/unknown00000000/resend-card", headers=admin_headers)
    assert resp.status_code == 404
