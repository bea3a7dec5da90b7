"""Tests for the email service and the membership card renderer."""
import base64
import json
import httpx
import pytest
from datetime import datetime, timezone

from fenam.services.email import EmailService, format_date_it
from fenam.services.membership_card import build_card_html, render_membership_card, verification_url


def test_format_date_it():
    assert format_date_it(datetime(2026, 3, 7, tzinfo=timezone.utc)) == "07/03/2026"
    assert format_date_it(None) == "-"


@pytest.mark.asyncio
async def test_debug_mode_logs_to_file(test_settings):
    service = EmailService(api_key="")
    sent = await service.send_login_link("socio@example.com", "https://fenam.website/x?token=abc", 15)

    assert sent is True
    log = service.email_log_path.read_text(encoding="utf-8")
    assert "TO: socio@example.com" in log
    assert "Link di accesso socio FENAM" in log


@pytest.mark.asyncio
async def test_unconfigured_service_fails_outside_debug(test_settings):
    test_settings.DEBUG = False
    service = EmailService(api_key="")
    assert await service.send_email("a@example.com", "s", "b") is False


@pytest.mark.asyncio
async def test_resend_payload_with_attachment():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email-1"})

    service = EmailService(api_key="re_test", transport=httpx.MockTransport(handler))
    sent = await service.send_membership_card(
        to="socio@example.com",
        first_name="Mario",
        last_name="Rossi",
        member_number="FENAM-2026-ABC123",
        member_since=datetime(2026, 1, 1, tzinfo=timezone.utc),
        member_until=datetime(2027, 1, 1, tzinfo=timezone.utc),
        pdf=b"%PDF-1.4",
    )

    assert sent is True
    assert seen["auth"] == "Bearer re_test"
    body = seen["body"]
    assert body["to"] == ["socio@example.com"]
    assert "FENAM-2026-ABC123" in body["text"]
    attachment = body["attachments"][0]
    assert attachment["filename"] == "Tessera_FENAM_FENAM-2026-ABC123.pdf"
    assert base64.b64decode(attachment["content"]) == b"%PDF-1.4"


@pytest.mark.asyncio
async def test_resend_error_returns_false():
    service = EmailService(api_key="re_test", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    assert await service.send_email("a@example.com", "s", "b") is False


@pytest.mark.asyncio
async def test_card_html_and_pdf(make_affiliation):
    affiliation = await make_affiliation(
        completed=True,
        first_name="Niccolò",
        last_name="D'Amico",
        member_number="FENAM-2026-0A1B2C",
    )

    card_html = build_card_html(affiliation)
    assert "FENAM-2026-0A1B2C" in card_html
    assert "D&#x27;Amico" in card_html
    assert verification_url("FENAM-2026-0A1B2C") == "https://fenam.website/verifica?n=FENAM-2026-0A1B2C"

    pdf = await render_membership_card(affiliation)
    assert pdf.startswith(b"%PDF")


@pytest.mark.asyncio
async def test_card_requires_member_number(make_affiliation):
    with pytest.raises(ValueError):
        build_card_html(await make_affiliation())


@pytest.mark.asyncio
async def test_production_never_logs_emails_even_in_debug(test_settings):
    test_settings.APP_ENV = "production"
    test_settings.DEBUG = True
    service = EmailService(api_key="")

    sent = await service.send_login_link(
        "socio@example.com", "https://fenam.website/api/v1/member/login/verify?token=SECRET123", 15
    )

    assert sent is False
    assert not service.log_only
    log_path = service.email_log_path
    assert not log_path.exists() or "SECRET123" not in log_path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_html_bodies_escape_profile_values():
    bodies = []

    def handler(request: httpx.Request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "email-1"})

    service = EmailService(api_key="re_test", transport=httpx.MockTransport(handler))
    await service.send_affiliation_confirmation(
        to="socio@example.com",
        first_name='<a href="https://evil.example">Mario</a>',
        last_name="<b>Rossi</b>",
        order_id="ORDER-1",
        amount=25.0,
    )
    await service.send_membership_card(
        to="socio@example.com",
        first_name="<script>x</script>",
        last_name="Rossi",
        member_number="FENAM-2026-ABC123",
        member_since=None,
        member_until=None,
        pdf=b"%PDF-1.4",
    )

    confirmation, card = bodies
    assert "<b>Rossi</b>" not in confirmation["html"]
    assert "&lt;b&gt;Rossi&lt;/b&gt;" in confirmation["html"]
    assert 'href="https://evil.example"' not in confirmation["html"]
    assert "<script>" not in card["html"]
    assert "&lt;script&gt;" in card["html"]
    # Plain text bodies keep the values as typed
    assert "<b>Rossi</b>" in confirmation["text"]
