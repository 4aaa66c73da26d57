"""Test configuration."""
import json
import os
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
import stripe
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default env, before the app reads its settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./resort_payments_test.db")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEV_API_KEY", "test-legacy-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from app.main import app  # noqa: E402
from app.db import get_db  # noqa: E402
from app.models import (  # noqa: E402
    SETTLED_STATUSES,
    Base,
    CheckoutContext,
    ContextStatus,
    ContextType,
    Payment,
    PaymentStatus,
)
from app.models.api_key import ApiKey, ApiScope  # noqa: E402
from app.services.booking_gateway import BookingForwardError, get_booking_client  # noqa: E402
from app.services.psp_stripe import (  # noqa: E402
    ProcessorError,
    ProcessorRefund,
    ProcessorSession,
    get_payment_processor,
)
from app.utils.apikey import hash_key  # noqa: E402
from app.utils.time import utcnow  # noqa: E402

DB_PATH = Path("./resort_payments_test.db")
VALID_SIGNATURE = "t=1,v1=valid"
USER_EMAIL = "guest@example.com"


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parents[1] / "alembic"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file for the session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False,
                                   future=True, expire_on_commit=False)

# --- (2) Schema comes from Alembic only
_run_migrations()


class FakeProcessor:
    """In-memory stand-in for :class:`StripeClient`."""

    def __init__(self) -> None:
        self.sessions: dict[str, ProcessorSession] = {}
        self.refunds: dict[str, ProcessorRefund] = {}
        self.refund_intents: dict[str, str] = {}
        self.checkout_calls: list[dict[str, Any]] = []
        self.refund_calls: list[dict[str, Any]] = []
        self.checkout_error: ProcessorError | None = None
        self.refund_error: ProcessorError | None = None
        self.refund_status = "succeeded"

    def create_checkout_session(self, *, customer_email, line_items, metadata, success_url, cancel_url):
        self.checkout_calls.append(
            {
                "customer_email": customer_email,
                "line_items": list(line_items),
                "metadata": dict(metadata),
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        if self.checkout_error is not None:
            raise self.checkout_error
        session_id = f"cs_test_{len(self.sessions) + 1}"
        session = ProcessorSession(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            payment_status="unpaid",
            status="open",
            metadata=dict(metadata),
        )
        self.sessions[session_id] = session
        return session

    def pay(self, session_id: str, payment_intent_id: str | None = None) -> ProcessorSession:
        session = self.sessions[session_id]
        session.payment_status = "paid"
        session.status = "complete"
        session.payment_intent_id = payment_intent_id or f"pi_{session_id}"
        return session

    def retrieve_checkout_session(self, session_id):
        return self.sessions.get(session_id)

    def create_refund(self, *, payment_intent_id, amount, metadata, idempotency_key):
        self.refund_calls.append(
            {
                "payment_intent_id": payment_intent_id,
                "amount": amount,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            }
        )
        if self.refund_error is not None:
            raise self.refund_error
        refund_id = f"re_test_{len(self.refunds) + 1}"
        refund = ProcessorRefund(id=refund_id, status=self.refund_status, amount=amount, metadata=dict(metadata))
        self.refunds[refund_id] = refund
        self.refund_intents[refund_id] = payment_intent_id
        return refund

    def add_refund(self, payment_intent_id: str, refund: ProcessorRefund) -> None:
        self.refunds[refund.id] = refund
        self.refund_intents[refund.id] = payment_intent_id

    def retrieve_refund(self, refund_id):
        return self.refunds[refund_id]

    def list_refunds(self, payment_intent_id):
        return [
            refund for refund_id, refund in self.refunds.items()
            if self.refund_intents.get(refund_id) == payment_intent_id
        ]

    def construct_webhook_event(self, payload, sig_header):
        if sig_header != VALID_SIGNATURE:
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", sig_header)
        return json.loads(payload)


class FakeBookingClient:
    def __init__(self) -> None:
        self.bookings: list[dict[str, Any]] = []
        self.error: BookingForwardError | None = None

    def create_booking(self, booking_data):
        if self.error is not None:
            raise self.error
        self.bookings.append(booking_data)


@pytest.fixture
def db_session() -> Iterator[Session]:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture
def session_factory() -> sessionmaker:
    """Factory for a second, independent session on the test database."""

    return TestingSessionLocal


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def booking_client() -> FakeBookingClient:
    return FakeBookingClient()


@pytest.fixture(autouse=True)
def override_dependencies(
    db_session: Session, processor: FakeProcessor, booking_client: FakeBookingClient
) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_booking_client] = lambda: booking_client
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(
        name: str,
        key: str,
        scope: ApiScope = ApiScope.user,
        email: str = USER_EMAIL,
        is_active: bool = True,
    ) -> ApiKey:
        api_key = ApiKey(
            name=name,
            prefix="test_" + scope.value,
            key_hash=hash_key(key),
            scope=scope,
            email=email,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


@pytest.fixture
def headers_for(make_api_key: Callable[..., ApiKey]) -> Callable[..., dict[str, str]]:
    def _factory(email: str, scope: ApiScope = ApiScope.user) -> dict[str, str]:
        token = f"{scope.value}-{uuid4().hex}"
        make_api_key(name=f"{scope.value}-{uuid4().hex}", key=token, scope=scope, email=email)
        return {"Authorization": f"Bearer {token}"}

    return _factory


@pytest.fixture
def user_headers(headers_for: Callable[..., dict[str, str]]) -> dict[str, str]:
    return headers_for(USER_EMAIL)


@pytest.fixture
def admin_headers(headers_for: Callable[..., dict[str, str]]) -> dict[str, str]:
    return headers_for("admin@sathvilla.com", ApiScope.admin)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_payment(db_session: Session) -> Callable[..., Payment]:
    """Factory for ledger rows; PAID by default, settled ``days_ago`` days back."""

    def _factory(
        *,
        email: str = USER_EMAIL,
        amount: str = "100.00",
        status: PaymentStatus = PaymentStatus.PAID,
        days_ago: float = 1,
        transaction_id: str | None = None,
        package_type: str = "Deluxe Room",
    ) -> Payment:
        settled = status in SETTLED_STATUSES
        payment = Payment(
            name="Guest",
            email=email,
            amount=Decimal(amount),
            package_type=package_type,
            status=status,
            transaction_id=(transaction_id or f"pi_{uuid4().hex[:12]}") if settled else None,
            payment_date=utcnow() - timedelta(days=days_ago),
        )
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment

    return _factory


@pytest.fixture
def make_context(db_session: Session) -> Callable[..., CheckoutContext]:
    def _factory(
        payment: Payment,
        *,
        context_type: ContextType = ContextType.BOOKING,
        status: ContextStatus = ContextStatus.INIT,
        booking_data: dict | None = None,
    ) -> CheckoutContext:
        context = CheckoutContext(
            token=uuid4().hex,
            type=context_type,
            name=payment.name,
            email=payment.email,
            amount=payment.amount,
            package_type=payment.package_type,
            booking_data=booking_data if booking_data is not None else {"room": "A1", "nights": 2},
            status=status,
            payment_id=payment.id,
        )
        db_session.add(context)
        db_session.commit()
        db_session.refresh(context)
        return context

    return _factory
