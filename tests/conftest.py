"""Shared fixtures: a fresh SQLite database per test, a seeded business and an API client."""
import os

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SMTP_USER", "")
os.environ.setdefault("SMTP_PASSWORD", "")

import uuid
from dataclasses import dataclass
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from billflow.api.deps import get_notifier
from billflow.database import create_engine_for_url, create_session_factory, get_db, init_db
from billflow.main import app
from billflow.models.business import Business, Client
from billflow.models.invoice import Invoice
from billflow.services.invoice_repository import InvoiceRepository


SCENARIO_ITEMS = [
    {"description": "Website redesign", "quantity": "1", "unit_price": "25000"},
    {"description": "Hosting (1 year)", "quantity": "1", "unit_price": "12000"},
    {"description": "Content migration", "quantity": "2", "unit_price": "2928.5"},
]


@dataclass
class Seed:
    business_id: uuid.UUID
    client_id: uuid.UUID
    other_client_id: uuid.UUID
    foreign_business_id: uuid.UUID
    foreign_client_id: uuid.UUID


class FakeNotifier:
    """Records invoices instead of sending email."""

    def __init__(self, result=True, error=None):
        self.sent = []
        self.result = result
        self.error = error

    def send_invoice_email(self, invoice, business, client) -> bool:
        if self.error:
            raise self.error
        self.sent.append((invoice.invoice_number, client.email))
        return self.result


class RacingRepository(InvoiceRepository):
    """Commits a competing write to one invoice right after it is loaded."""

    def __init__(self, db, session_factory, invoice_id):
        super().__init__(db)
        self.session_factory = session_factory
        self.invoice_id = invoice_id
        self.raced = False

    async def get_invoice(self, business_id, invoice_id):
        invoice = await super().get_invoice(business_id, invoice_id)
        if invoice_id == self.invoice_id and not self.raced:
            self.raced = True
            async with self.session_factory() as other:
                await other.execute(
                    update(Invoice)
                    .where(Invoice.id == invoice_id)
                    .values(version=Invoice.version + 1, notes_internal="edited elsewhere")
                    .execution_options(synchronize_session=False)
                )
                await other.commit()
        return invoice


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'billflow-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed(session_factory) -> Seed:
    async with session_factory() as session:
        business = Business(
            name_zh="光點設計工作室",
            name_en="Lightpoint Studio",
            tax_id="12345678",
            email="billing@lightpoint.tw",
            default_currency="TWD",
            default_tax_rate=Decimal("0.05"),
            default_payment_terms=14,
            invoice_prefix="INV",
            invoice_next_number=43,
        )
        other_business = Business(name_zh="另一家公司", email="other@example.com")
        session.add_all([business, other_business])
        await session.flush()

        client = Client(business_id=business.id, display_name="Acme Taiwan", email="ap@acme.tw")
        other_client = Client(
            business_id=business.id,
            display_name="Globex",
            email="finance@globex.com",
            preferred_currency="USD",
            preferred_language="en",
            default_payment_terms=30,
        )
        foreign_client = Client(business_id=other_business.id, display_name="Initech", email="ap@initech.com")
        session.add_all([client, other_client, foreign_client])
        await session.commit()

        return Seed(
            business_id=business.id,
            client_id=client.id,
            other_client_id=other_client.id,
            foreign_business_id=other_business.id,
            foreign_client_id=foreign_client.id,
        )


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest_asyncio.fixture
async def client(session_factory, seed, notifier):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Business-ID": str(seed.business_id)},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def invoice_payload(seed):
    def build(**overrides):
        payload = {
            "client_id": str(seed.client_id),
            "issue_date": "2026-03-01",
            "due_date": "2026-03-15",
            "tax_rate": "0.05",
            "items": [dict(item) for item in SCENARIO_ITEMS],
        }
        payload.update(overrides)
        return payload

    return build
