"""
Invoice service tests: drafting, totals snapshot, state guards and transitions.

Every test runs against a fresh SQLite database seeded with one business
(counter at 43, TWD, 5% tax, 14 day terms) and its clients.
"""
import uuid
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from billflow.core.exceptions import ConflictError, InvalidStateTransition, InvoiceNotFoundError, ValidationError
from billflow.models.business import Business
from billflow.models.invoice import PaymentRecord
from billflow.schemas.invoice import InvoiceCreate, InvoiceUpdate
from billflow.services.invoice_repository import InvoiceRepository
from billflow.services.invoice_service import InvoiceService
from billflow.services.invoice_status import InvoiceStatus

from tests.conftest import SCENARIO_ITEMS, FakeNotifier, RacingRepository


TODAY = date(2026, 3, 1)


def make_create(client_id, **overrides) -> InvoiceCreate:
    data = {
        "client_id": client_id,
        "issue_date": "2026-03-01",
        "due_date": "2026-03-15",
        "tax_rate": "0.05",
        "items": [dict(item) for item in SCENARIO_ITEMS],
    }
    data.update(overrides)
    return InvoiceCreate(**data)


@pytest.fixture
def service(db, notifier):
    return InvoiceService(db, notifier=notifier, today=lambda: TODAY)


async def reload(session_factory, business_id, invoice_id):
    async with session_factory() as session:
        return await InvoiceRepository(session).get_invoice(business_id, invoice_id)


async def counter(session_factory, business_id) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(Business.invoice_next_number).where(Business.id == business_id)
        )
        return result.scalar_one()


class TestCreateInvoice:

    async def test_creates_draft_with_frozen_totals(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        assert invoice.invoice_number == "INV-2026-0043"
        assert invoice.status == InvoiceStatus.DRAFT.value
        assert invoice.version == 1
        assert invoice.subtotal == Decimal("42857")
        assert invoice.tax_amount == Decimal("2143")
        assert invoice.total == Decimal("45000")
        assert [item.amount for item in invoice.items] == [
            Decimal("25000"), Decimal("12000"), Decimal("5857")
        ]
        assert [item.sort_order for item in invoice.items] == [0, 1, 2]

    async def test_snapshot_survives_reload(self, service, seed, session_factory):
        invoice = await service.create_invoice(
            seed.business_id,
            make_create(seed.client_id, discount={"type": "percentage", "value": "10"}),
        )

        stored = await reload(session_factory, seed.business_id, invoice.id)

        assert stored.total == Decimal("40500")
        assert stored.discount_amount == Decimal("4286")
        assert stored.discount_type == "percentage"
        assert service.totals_match_snapshot(stored)

    async def test_defaults_from_business(self, service, seed):
        data = make_create(seed.client_id, issue_date=None, due_date=None, tax_rate=None)

        invoice = await service.create_invoice(seed.business_id, data)

        assert invoice.currency == "TWD"
        assert invoice.tax_rate == Decimal("0.05")
        assert invoice.issue_date == TODAY
        assert invoice.due_date == date(2026, 3, 15)

    async def test_defaults_from_client_preferences(self, service, seed):
        data = make_create(
            seed.other_client_id,
            issue_date=None,
            due_date=None,
            items=[{"description": "Consulting", "quantity": "3", "unit_price": "120.125"}],
        )

        invoice = await service.create_invoice(seed.business_id, data)

        assert invoice.currency == "USD"
        assert invoice.language == "en"
        assert invoice.due_date == date(2026, 3, 31)
        assert invoice.items[0].amount == Decimal("360.38")

    async def test_numbers_are_sequential(self, service, seed):
        first = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        second = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        assert (first.invoice_number, second.invoice_number) == ("INV-2026-0043", "INV-2026-0044")

    async def test_supplied_number_is_used_without_allocating(self, service, seed, session_factory):
        invoice = await service.create_invoice(
            seed.business_id, make_create(seed.client_id, invoice_number="MANUAL-001")
        )

        assert invoice.invoice_number == "MANUAL-001"
        assert await counter(session_factory, seed.business_id) == 43

    async def test_supplied_number_in_use_conflicts(self, service, seed, db):
        await service.create_invoice(seed.business_id, make_create(seed.client_id, invoice_number="MANUAL-001"))

        with pytest.raises(ConflictError):
            await service.create_invoice(
                seed.business_id, make_create(seed.client_id, invoice_number="MANUAL-001")
            )

    async def test_client_of_another_business_rejected(self, service, seed, db, session_factory):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_invoice(seed.business_id, make_create(seed.foreign_client_id))
        await db.rollback()

        assert exc_info.value.field_errors[0]["field"] == "client_id"
        # The allocation rolled back with the failed create
        assert await counter(session_factory, seed.business_id) == 43

    async def test_full_precision_inputs_survive_reload(self, service, seed, session_factory):
        data = make_create(
            seed.client_id,
            tax_rate="0.0525",
            discount={"type": "fixed", "value": "10.5555"},
            items=[
                {"description": "Fabric", "quantity": "1.125", "unit_price": "999.9999"},
                {"description": "Thread", "quantity": "0.001", "unit_price": "1234.5678"},
            ],
        )

        invoice = await service.create_invoice(seed.business_id, data)
        stored = await reload(session_factory, seed.business_id, invoice.id)

        assert invoice.total == Decimal("1174")
        assert [item.quantity for item in stored.items] == [Decimal("1.125"), Decimal("0.001")]
        assert [item.amount for item in stored.items] == [Decimal("1125"), Decimal("1")]
        assert stored.total == Decimal("1174")
        assert service.totals_match_snapshot(stored)

    @pytest.mark.parametrize("field, overrides", [
        ("quantity", {"items": [{"description": "Fabric", "quantity": "1.0004", "unit_price": "10000"}]}),
        ("unit_price", {"items": [{"description": "Fabric", "quantity": "1", "unit_price": "0.00001"}]}),
        ("tax_rate", {"tax_rate": "0.05001"}),
        ("value", {"discount": {"type": "percentage", "value": "10.00001"}}),
    ])
    def test_precision_beyond_storage_rejected(self, field, overrides):
        with pytest.raises(PydanticValidationError) as exc_info:
            make_create(uuid.uuid4(), **overrides)

        assert field in {str(error["loc"][-1]) for error in exc_info.value.errors()}

    async def test_missing_sort_order_never_collides(self, service, seed, session_factory):
        data = make_create(
            seed.client_id,
            items=[
                {"description": "Second", "quantity": "1", "unit_price": "100", "sort_order": 1},
                {"description": "Third", "quantity": "1", "unit_price": "200"},
                {"description": "First", "quantity": "1", "unit_price": "300"},
            ],
        )

        invoice = await service.create_invoice(seed.business_id, data)
        stored = await reload(session_factory, seed.business_id, invoice.id)

        assert [(item.description, item.sort_order) for item in stored.items] == [
            ("Second", 1), ("Third", 2), ("First", 3)
        ]


class TestUpdateInvoice:

    async def test_update_recomputes_totals(self, service, seed, session_factory):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        updated = await service.update_invoice(
            seed.business_id,
            invoice.id,
            InvoiceUpdate(discount={"type": "percentage", "value": "10"}, version=1),
        )

        assert updated.total == Decimal("40500")
        assert updated.version > 1

        stored = await reload(session_factory, seed.business_id, invoice.id)
        assert stored.total == Decimal("40500")
        assert len(stored.items) == 3

    async def test_replacing_items(self, service, seed, session_factory):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        await service.update_invoice(
            seed.business_id,
            invoice.id,
            InvoiceUpdate(items=[
                {"description": "Logo design", "quantity": "1", "unit_price": "10000"},
                {"description": "Business cards", "quantity": "500", "unit_price": "2"},
            ]),
        )

        stored = await reload(session_factory, seed.business_id, invoice.id)
        assert [item.description for item in stored.items] == ["Logo design", "Business cards"]
        assert stored.subtotal == Decimal("11000")
        assert stored.tax_amount == Decimal("550")
        assert stored.total == Decimal("11550")

    async def test_null_discount_removes_it(self, service, seed):
        invoice = await service.create_invoice(
            seed.business_id,
            make_create(seed.client_id, discount={"type": "fixed", "value": "1000"}),
        )
        assert invoice.discount_amount == Decimal("1000")

        updated = await service.update_invoice(seed.business_id, invoice.id, InvoiceUpdate(discount=None))

        assert updated.discount_type is None
        assert updated.discount_amount == Decimal("0")
        assert updated.total == Decimal("45000")

    async def test_stale_version_conflicts(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        with pytest.raises(ConflictError):
            await service.update_invoice(
                seed.business_id, invoice.id, InvoiceUpdate(notes_internal="late edit", version=7)
            )

    async def test_concurrent_write_conflicts(self, service, seed, session_factory):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        async with session_factory() as other:
            repository = InvoiceRepository(other)
            stale = await repository.get_invoice(seed.business_id, invoice.id)

            await service.update_invoice(seed.business_id, invoice.id, InvoiceUpdate(notes_internal="first"))

            stale.notes_internal = "second"
            with pytest.raises(ConflictError):
                await repository.update_invoice(stale)
            await other.rollback()

        stored = await reload(session_factory, seed.business_id, invoice.id)
        assert stored.notes_internal == "first"

    async def test_lost_race_without_version_conflicts(self, service, seed, db, session_factory):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        racing = InvoiceService(db, repository=RacingRepository(db, session_factory, invoice.id))

        with pytest.raises(ConflictError):
            await racing.update_invoice(
                seed.business_id, invoice.id, InvoiceUpdate(discount={"type": "percentage", "value": "10"})
            )
        await db.rollback()

        stored = await reload(session_factory, seed.business_id, invoice.id)
        assert stored.notes_internal == "edited elsewhere"
        assert stored.total == Decimal("45000")
        assert len(stored.items) == 3

    async def test_lost_race_on_delete_conflicts(self, service, seed, db, session_factory):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        racing = InvoiceService(db, repository=RacingRepository(db, session_factory, invoice.id))

        with pytest.raises(ConflictError):
            await racing.delete_invoice(seed.business_id, invoice.id)
        await db.rollback()

        assert await reload(session_factory, seed.business_id, invoice.id) is not None

    async def test_due_before_issue_rejected(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        with pytest.raises(ValidationError):
            await service.update_invoice(seed.business_id, invoice.id, InvoiceUpdate(due_date=date(2026, 2, 1)))

    @pytest.mark.parametrize("status", ["sent", "viewed", "paid", "overdue", "cancelled"])
    async def test_non_draft_is_read_only(self, service, seed, db, session_factory, status):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        invoice.status = status
        await db.commit()

        with pytest.raises(InvalidStateTransition):
            await service.update_invoice(
                seed.business_id, invoice.id, InvoiceUpdate(discount={"type": "percentage", "value": "50"})
            )
        with pytest.raises(InvalidStateTransition):
            await service.delete_invoice(seed.business_id, invoice.id)

        stored = await reload(session_factory, seed.business_id, invoice.id)
        assert stored is not None
        assert stored.status == status
        assert stored.total == Decimal("45000")
        assert len(stored.items) == 3


class TestDeleteInvoice:

    async def test_delete_draft(self, service, seed, session_factory):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        await service.delete_invoice(seed.business_id, invoice.id, version=1)

        assert await reload(session_factory, seed.business_id, invoice.id) is None
        with pytest.raises(InvoiceNotFoundError):
            await service.get_invoice(seed.business_id, invoice.id)

    async def test_other_business_cannot_see_invoice(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        with pytest.raises(InvoiceNotFoundError):
            await service.get_invoice(seed.foreign_business_id, invoice.id)


class TestTransitions:

    async def test_send_sets_sent_at_and_notifies(self, service, seed, notifier):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        sent = await service.send_invoice(seed.business_id, invoice.id)

        assert sent.status == InvoiceStatus.SENT.value
        assert sent.sent_at is not None
        assert notifier.sent == [("INV-2026-0043", "ap@acme.tw")]

    async def test_notification_failure_keeps_status(self, db, seed, session_factory):
        service = InvoiceService(db, notifier=FakeNotifier(error=RuntimeError("smtp down")), today=lambda: TODAY)
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        await service.send_invoice(seed.business_id, invoice.id)

        stored = await reload(session_factory, seed.business_id, invoice.id)
        assert stored.status == InvoiceStatus.SENT.value

    async def test_send_twice_rejected(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        await service.send_invoice(seed.business_id, invoice.id)

        with pytest.raises(InvalidStateTransition):
            await service.send_invoice(seed.business_id, invoice.id)

    async def test_viewed_is_idempotent(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        await service.send_invoice(seed.business_id, invoice.id)

        viewed = await service.mark_viewed(seed.business_id, invoice.id)
        version = viewed.version
        again = await service.mark_viewed(seed.business_id, invoice.id)

        assert again.status == InvoiceStatus.VIEWED.value
        assert again.version == version

    async def test_viewed_requires_sent(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        with pytest.raises(InvalidStateTransition):
            await service.mark_viewed(seed.business_id, invoice.id)

    async def test_mark_paid_defaults_to_total(self, service, seed, session_factory):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        await service.send_invoice(seed.business_id, invoice.id)

        paid = await service.mark_paid(seed.business_id, invoice.id, payment_method="bank_transfer")

        assert paid.status == InvoiceStatus.PAID.value
        assert paid.paid_amount == Decimal("45000")
        assert paid.paid_date == TODAY
        assert paid.amount_due == Decimal("0")

        async with session_factory() as session:
            result = await session.execute(select(PaymentRecord).where(PaymentRecord.invoice_id == invoice.id))
            payments = result.scalars().all()
        assert len(payments) == 1
        assert payments[0].amount == Decimal("45000")
        assert payments[0].payment_method == "bank_transfer"

    async def test_mark_paid_amount_above_total_rejected(self, service, seed, session_factory):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        await service.send_invoice(seed.business_id, invoice.id)

        with pytest.raises(ValidationError) as exc_info:
            await service.mark_paid(seed.business_id, invoice.id, paid_amount=Decimal("45001"))

        assert exc_info.value.field_errors[0]["field"] == "paid_amount"
        stored = await reload(session_factory, seed.business_id, invoice.id)
        assert stored.status == InvoiceStatus.SENT.value

    async def test_mark_paid_from_draft_rejected(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        with pytest.raises(InvalidStateTransition):
            await service.mark_paid(seed.business_id, invoice.id)

    async def test_paid_is_terminal(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        await service.send_invoice(seed.business_id, invoice.id)
        await service.mark_paid(seed.business_id, invoice.id)

        with pytest.raises(InvalidStateTransition):
            await service.cancel_invoice(seed.business_id, invoice.id)

    async def test_cancel_draft(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))

        cancelled = await service.cancel_invoice(seed.business_id, invoice.id)

        assert cancelled.status == InvoiceStatus.CANCELLED.value


class TestOverdueSweep:

    async def test_marks_past_due_sent_and_viewed(self, service, seed):
        late_sent = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        late_viewed = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        not_due = await service.create_invoice(seed.business_id, make_create(seed.client_id, due_date="2026-04-30"))
        draft = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        for invoice in (late_sent, late_viewed, not_due):
            await service.send_invoice(seed.business_id, invoice.id)
        await service.mark_viewed(seed.business_id, late_viewed.id)

        summary = await service.mark_overdue_invoices(today=date(2026, 3, 20))

        assert summary["checked"] == 2
        assert sorted(summary["invoice_numbers"]) == sorted([late_sent.invoice_number, late_viewed.invoice_number])
        for invoice_id, expected in [
            (late_sent.id, "overdue"),
            (late_viewed.id, "overdue"),
            (not_due.id, "sent"),
            (draft.id, "draft"),
        ]:
            assert (await service.get_invoice(seed.business_id, invoice_id)).status == expected

    async def test_overdue_can_still_be_paid(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        await service.send_invoice(seed.business_id, invoice.id)
        await service.mark_overdue_invoices(today=date(2026, 3, 20))

        paid = await service.mark_paid(seed.business_id, invoice.id, paid_amount=Decimal("20000"))

        assert paid.status == InvoiceStatus.PAID.value
        assert paid.amount_due == Decimal("25000")

    async def test_due_today_is_not_overdue(self, service, seed):
        invoice = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        await service.send_invoice(seed.business_id, invoice.id)

        summary = await service.mark_overdue_invoices(today=date(2026, 3, 15))

        assert summary["marked_overdue"] == 0

    async def test_invoice_changed_mid_sweep_is_skipped(self, service, seed, db, session_factory):
        contended = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        other = await service.create_invoice(seed.business_id, make_create(seed.client_id, due_date="2026-03-16"))
        for invoice in (contended, other):
            await service.send_invoice(seed.business_id, invoice.id)

        sweeper = InvoiceService(db, repository=RacingRepository(db, session_factory, contended.id))
        summary = await sweeper.mark_overdue_invoices(today=date(2026, 3, 20))

        assert summary["checked"] == 2
        assert summary["invoice_numbers"] == [other.invoice_number]
        assert summary["skipped"] == [contended.invoice_number]
        assert (await reload(session_factory, seed.business_id, contended.id)).status == "sent"
        assert (await reload(session_factory, seed.business_id, other.id)).status == "overdue"


class TestListInvoices:

    async def test_search_and_filters(self, service, seed):
        acme = await service.create_invoice(seed.business_id, make_create(seed.client_id))
        globex = await service.create_invoice(seed.business_id, make_create(seed.other_client_id))
        await service.send_invoice(seed.business_id, globex.id)

        by_name = await service.list_invoices(seed.business_id, search="globex")
        by_number = await service.list_invoices(seed.business_id, search="0043")
        sent = await service.list_invoices(seed.business_id, status=InvoiceStatus.SENT)
        everything = await service.list_invoices(seed.business_id, limit=1)

        assert [inv.id for inv in by_name["items"]] == [globex.id]
        assert [inv.id for inv in by_number["items"]] == [acme.id]
        assert [inv.id for inv in sent["items"]] == [globex.id]
        assert everything["total"] == 2
        assert everything["pages"] == 2
        assert len(everything["items"]) == 1

    async def test_invalid_paging_rejected(self, service, seed):
        with pytest.raises(ValidationError):
            await service.list_invoices(seed.business_id, page=0)
