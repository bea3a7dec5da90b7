"""Tests for the member magic link flow."""
import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit
from httpx import AsyncClient
from sqlalchemy import select

from fenam.core.errors import EmailDeliveryError, LoginRateLimitedError, NotActiveMemberError, ReturnUrlError
from fenam.models.member_login_token import MemberLoginToken
from fenam.services.handoff import verify_handoff_token
from fenam.services.member_login import consume_login_token, hash_token, request_login
from fenam.services.member_session import verify_member_session_token


def _raw_token(email_service) -> str:
    verify_url = email_service.of_kind("login_link")[-1]["verify_url"]
    return parse_qs(urlsplit(verify_url).query)["token"][0]


@pytest_asyncio.fixture
async def active_member(make_affiliation):
    return await make_affiliation(email="socio@example.com", completed=True)


@pytest_asyncio.fixture
async def expired_member(make_affiliation):
    now = datetime.now(timezone.utc)
    return await make_affiliation(
        email="scaduto@example.com",
        completed=True,
        member_since=now - timedelta(days=400),
        member_until=now - timedelta(days=35),
    )


# ============================================================================
# Service
# ============================================================================

@pytest.mark.asyncio
async def test_request_stores_only_the_hash(db_session, active_member, email_service):
    result = await request_login(db_session, "socio@example.com", email_service)

    message = email_service.of_kind("login_link")[0]
    assert message["to"] == "socio@example.com"
    assert message["verify_url"].startswith("https://fenam.website/api/v1/member/login/verify?token=")
    assert message["ttl_minutes"] == 15

    raw = _raw_token(email_service)
    record = (await db_session.execute(
        select(MemberLoginToken).where(MemberLoginToken.id == result.token_id)
    )).scalar_one()
    assert record.token_hash == hash_token(raw)
    assert raw not in record.token_hash
    assert record.source == "fenam"
    assert record.return_url is None
    assert record.affiliation_id == active_member.id


@pytest.mark.asyncio
async def test_partner_request_requires_return_url(db_session, active_member, email_service):
    with pytest.raises(ReturnUrlError) as exc_info:
        await request_login(db_session, "socio@example.com", email_service, source="enotempo")
    assert exc_info.value.reason == "missing_return_url"

    with pytest.raises(ReturnUrlError) as exc_info:
        await request_login(
            db_session, "socio@example.com", email_service,
            source="enotempo", return_url="https://evil.example.com/",
        )
    assert exc_info.value.reason == "invalid_return_url"

    result = await request_login(
        db_session, "socio@example.com", email_service,
        source="Enotempo", return_url="https://enotempo.it/soci/",
    )
    assert result.source == "enotempo"


@pytest.mark.asyncio
async def test_unknown_source_falls_back_to_site(db_session, active_member, email_service):
    result = await request_login(
        db_session, "socio@example.com", email_service,
        source="somewhere", return_url="https://evil.example.com/",
    )
    assert result.source == "fenam"


@pytest.mark.asyncio
async def test_inactive_member_is_refused(db_session, expired_member, email_service):
    with pytest.raises(NotActiveMemberError):
        await request_login(db_session, "scaduto@example.com", email_service)
    with pytest.raises(NotActiveMemberError):
        await request_login(db_session, "nessuno@example.com", email_service)
    assert email_service.sent == []


@pytest.mark.asyncio
async def test_tokens_per_hour_are_limited(db_session, active_member, email_service):
    now = datetime.now(timezone.utc)
    for minute in range(5):
        await request_login(db_session, "socio@example.com", email_service, now=now + timedelta(minutes=minute))

    with pytest.raises(LoginRateLimitedError) as exc_info:
        await request_login(db_session, "socio@example.com", email_service, now=now + timedelta(minutes=10))
    assert exc_info.value.retry_after == 3600

    await request_login(db_session, "socio@example.com", email_service, now=now + timedelta(minutes=61))


@pytest.mark.asyncio
async def test_email_failure_is_reported(db_session, active_member, email_service):
    email_service.fail_kinds = {"login_link"}
    with pytest.raises(EmailDeliveryError):
        await request_login(db_session, "socio@example.com", email_service)


@pytest.mark.asyncio
async def test_token_is_consumed_once(db_session, active_member, email_service):
    await request_login(db_session, "socio@example.com", email_service)
    raw = _raw_token(email_service)

    record = await consume_login_token(db_session, raw)
    assert record is not None
    assert record.used_at is not None
    assert record.affiliation.id == active_member.id

    assert await consume_login_token(db_session, raw) is None
    assert await consume_login_token(db_session, "not-a-token") is None


@pytest.mark.asyncio
async def test_expired_token_is_refused(db_session, active_member, email_service):
    await request_login(db_session, "socio@example.com", email_service)
    raw = _raw_token(email_service)

    later = datetime.now(timezone.utc) + timedelta(minutes=16)
    assert await consume_login_token(db_session, raw, now=later) is None


@pytest.mark.asyncio
async def test_concurrent_verification_succeeds_once(db_session, session_maker, active_member, email_service):
    await request_login(db_session, "socio@example.com", email_service)
    raw = _raw_token(email_service)

    async def consume():
        async with session_maker() as session:
            record = await consume_login_token(session, raw)
            return record is not None

    outcomes = await asyncio.gather(consume(), consume())
    assert sorted(outcomes) == [False, True]


# ============================================================================
# Endpoints
# ============================================================================

@pytest.mark.asyncio
async def test_request_endpoint(client: AsyncClient, active_member, email_service):
    resp = await client.post("/api/v1/member/login/request", json={"email": " Socio@Example.com "})
    assert resp.status_code == 200, resp.text
    assert resp.json()["ok"] is True
    assert len(email_service.of_kind("login_link")) == 1


@pytest.mark.asyncio
async def test_request_endpoint_errors(client: AsyncClient, active_member, expired_member, email_service):
    resp = await client.post("/api/v1/member/login/request", json={"email": "scaduto@example.com"})
    assert resp.status_code == 403
    assert resp.json()["detail"]["error"] == "not_active_member"

    resp = await client.post("/api/v1/member/login/request", json={"email": "socio@example.com", "source": "enotempo"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "missing_return_url"

    email_service.fail_kinds = {"login_link"}
    resp = await client.post("/api/v1/member/login/request", json={"email": "socio@example.com"})
    assert resp.status_code == 503

    resp = await client.post("/api/v1/member/login/request", json={"email": "not-an-email"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_verify_opens_session_once(client: AsyncClient, active_member, email_service):
    await client.post("/api/v1/member/login/request", json={"email": "socio@example.com"})
    raw = _raw_token(email_service)

    resp = await client.get("/api/v1/member/login/verify", params={"token": raw})
    assert resp.status_code == 302
    assert resp.headers["location"] == "/accedi-socio?success=1"
    session_token = resp.cookies["fenamMemberSession"]
    assert verify_member_session_token(session_token)["affiliationId"] == active_member.id

    resp = await client.get("/api/v1/member/login/verify", params={"token": raw})
    assert resp.status_code == 302
    assert resp.headers["location"] == "/accedi-socio?error=invalid_or_used"


@pytest.mark.asyncio
async def test_verify_partner_login_hands_off(client: AsyncClient, active_member, email_service):
    await client.post("/api/v1/member/login/request", json={
        "email": "socio@example.com",
        "source": "enotempo",
        "returnUrl": "https://enotempo.it/area-soci",
    })
    raw = _raw_token(email_service)

    resp = await client.get("/api/v1/member/login/verify", params={"token": raw})
    assert resp.status_code == 302
    location = urlsplit(resp.headers["location"])
    assert (location.scheme, location.netloc, location.path) == ("https", "enotempo.it", "/area-soci")
    query = parse_qs(location.query)
    assert query["status"] == ["success"]
    payload = verify_handoff_token(query["token"][0])
    assert payload["sub"] == active_member.member_number
    assert payload["src"] == "enotempo"
    assert "fenamMemberSession" in resp.cookies


@pytest.mark.asyncio
async def test_verify_error_redirects(client: AsyncClient, db_session, active_member, email_service):
    resp = await client.get("/api/v1/member/login/verify")
    assert resp.headers["location"] == "/accedi-socio?error=missing_token"

    resp = await client.get("/api/v1/member/login/verify", params={"token": "bogus"})
    assert resp.headers["location"] == "/accedi-socio?error=invalid_or_used"

    # Membership lapses between request and click
    await client.post("/api/v1/member/login/request", json={"email": "socio@example.com"})
    raw = _raw_token(email_service)
    active_member.member_until = datetime.now(timezone.utc) - timedelta(seconds=1)
    await db_session.commit()

    resp = await client.get("/api/v1/member/login/verify", params={"token": raw})
    assert resp.status_code == 302
    assert resp.headers["location"] == "/accedi-socio?error=membership_expired"
    assert "fenamMemberSession" not in resp.cookies
