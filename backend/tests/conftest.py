"""
Test configuration and fixtures for the FENAM backend tests.
"""
import os
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from fenam.main import app
from fenam.core.config import settings
from fenam.core.deps import get_paypal
from fenam.core.rate_limit import RateLimiterRegistry
from fenam.db.base import Base, get_db
from fenam.models.affiliation import Affiliation, AffiliationSnapshot, AffiliationStatus
from fenam.services.email import EmailService, get_email_service
from fenam.services.membership_card import get_card_renderer

# File based SQLite: with :memory: every new aiosqlite connection would see
# an empty database, and the concurrency tests need several connections.
TEST_DB_NAME = "fenam_test.db"

HANDOFF_SECRET = "test-handoff-secret-0123456789abcdef"
SESSION_SECRET = "test-session-secret-0123456789abcdef"
ADMIN_TOKEN = "test-admin-token"

FAKE_PDF = b"%PDF-1.4 fake card"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmailService(EmailService):
    """Records messages instead of sending them. Kinds listed in fail_kinds report failure."""

    def __init__(self):
        super().__init__(api_key="")
        self.sent: list[dict] = []
        self.fail_kinds: set[str] = set()

    def _record(self, kind: str, **data) -> bool:
        if kind in self.fail_kinds:
            return False
        self.sent.append({"kind": kind, **data})
        return True

    def of_kind(self, kind: str) -> list[dict]:
        return [m for m in self.sent if m["kind"] == kind]

    async def send_affiliation_confirmation(self, to, first_name, last_name, order_id, amount=None, currency="EUR"):
        return self._record("confirmation", to=to, order_id=order_id, amount=amount, currency=currency)

    async def send_membership_card(self, to, first_name, last_name, member_number, member_since, member_until, pdf):
        return self._record("card", to=to, member_number=member_number, pdf=pdf)

    async def send_login_link(self, to, verify_url, ttl_minutes):
        return self._record("login_link", to=to, verify_url=verify_url, ttl_minutes=ttl_minutes)


class FakePayPal:
    """In-memory stand-in for PayPalClient."""

    mode = "sandbox"

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.created: list[dict] = []
        self.capture_calls = 0
        self.error: Optional[Exception] = None

    def set_order(
        self,
        order_id: str,
        status: str = "COMPLETED",
        amount: str = "25.00",
        currency: str = "EUR",
        payer_email: Optional[str] = "payer@example.com",
    ) -> dict:
        order = {
            "id": order_id,
            "status": status,
            "payer": {"email_address": payer_email} if payer_email else {},
            "purchase_units": [{
                "payments": {
                    "captures": [{
                        "id": f"CAP-{order_id}",
                        "amount": {"value": amount, "currency_code": currency},
                    }]
                }
            }] if status == "COMPLETED" else [],
        }
        self.orders[order_id] = order
        return order

    async def create_order(self, amount, currency, custom_id=None):
        if self.error:
            raise self.error
        order_id = f"ORDER-{len(self.created) + 1}"
        self.created.append({"id": order_id, "amount": amount, "currency": currency, "custom_id": custom_id})
        return {"id": order_id, "status": "CREATED"}

    async def capture_or_fetch(self, order_id):
        self.capture_calls += 1
        if self.error:
            raise self.error
        return self.orders[order_id]


class FakeCardRenderer:
    def __init__(self):
        self.rendered: list[str] = []
        self.error: Optional[Exception] = None

    async def __call__(self, affiliation: AffiliationSnapshot) -> bytes:
        if self.error:
            raise self.error
        self.rendered.append(affiliation.member_number)
        return FAKE_PDF


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    """Known secrets and a development environment for every test."""
    monkeypatch.setattr(settings, "APP_ENV", "development")
    monkeypatch.setattr(settings, "DEBUG", True)
    monkeypatch.setattr(settings, "FENAM_HANDOFF_SECRET", HANDOFF_SECRET)
    monkeypatch.setattr(settings, "FENAM_MEMBER_SESSION_SECRET", SESSION_SECRET)
    monkeypatch.setattr(settings, "FENAM_ALLOWED_RETURN_HOSTS", "enotempo.it,www.enotempo.it")
    monkeypatch.setattr(settings, "ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "RESEND_API_KEY", None)
    monkeypatch.setattr(settings, "ALLOW_FREE_AFFILIATION", False)
    monkeypatch.setattr(settings, "PAYPAL_ENV", None)
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_ID", "test-client-id")
    monkeypatch.setattr(settings, "PAYPAL_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setattr(settings, "EMAIL_LOG_PATH", str(tmp_path / "emails.log"))
    return settings


@pytest.fixture(autouse=True)
def clock() -> FakeClock:
    """Fresh rate limiter state per test, driven by a fake clock."""
    fake = FakeClock()
    app.state.rate_limiters = RateLimiterRegistry(clock=fake)
    return fake


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create a test database engine."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / TEST_DB_NAME}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    try:
        os.remove(tmp_path / TEST_DB_NAME)
    except OSError:
        pass


@pytest.fixture
def session_maker(db_engine):
    """Session factory for tests that need several independent sessions."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def paypal() -> FakePayPal:
    return FakePayPal()


@pytest.fixture
def card_renderer() -> FakeCardRenderer:
    return FakeCardRenderer()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    email_service: FakeEmailService,
    paypal: FakePayPal,
    card_renderer: FakeCardRenderer,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database and collaborator overrides."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_service] = lambda: email_service
    app.dependency_overrides[get_card_renderer] = lambda: card_renderer
    app.dependency_overrides[get_paypal] = lambda: paypal
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def make_affiliation(db_session: AsyncSession):
    """Factory persisting an affiliation; completed ones get a number and a window."""
    counter = {"n": 0}

    async def factory(
        email: str = "mario.rossi@example.com",
        completed: bool = False,
        member_since: Optional[datetime] = None,
        member_until: Optional[datetime] = None,
        member_number: Optional[str] = None,
        order_id: Optional[str] = None,
        **fields,
    ) -> Affiliation:
        counter["n"] += 1
        now = datetime.now(timezone.utc)
        affiliation = Affiliation(
            first_name=fields.pop("first_name", "Mario"),
            last_name=fields.pop("last_name", "Rossi"),
            email=email,
            phone=fields.pop("phone", "+39 333 1234567"),
            privacy=True,
            order_id=order_id,
            status=AffiliationStatus.PENDING,
            **fields,
        )
        if completed:
            affiliation.status = AffiliationStatus.COMPLETED
            affiliation.member_number = member_number or f"FENAM-{now.year}-{counter['n']:06X}"
            affiliation.member_since = member_since or now - timedelta(days=30)
            affiliation.member_until = member_until or now + timedelta(days=335)
        db_session.add(affiliation)
        await db_session.commit()
        await db_session.refresh(affiliation)
        return affiliation

    return factory
