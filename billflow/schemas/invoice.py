"""Pydantic schemas for invoices."""
from datetime import datetime, date
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from billflow.core.money import Currency
from billflow.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema
from billflow.services.invoice_status import InvoiceStatus
from billflow.services.totals_calculator import (
    DiscountSpec, NO_DISCOUNT, PercentageDiscount, FixedAmountDiscount, LineItemInput
)


Language = Literal["zh", "en"]


# ==================== Discount ====================

class PercentageDiscountIn(BaseModel):
    type: Literal["percentage"]
    value: Decimal = Field(..., ge=0, le=100, decimal_places=4, description="Percent of the subtotal, 0-100")

    def to_spec(self) -> DiscountSpec:
        return PercentageDiscount(self.value)


class FixedDiscountIn(BaseModel):
    type: Literal["fixed"]
    value: Decimal = Field(..., ge=0, max_digits=14, decimal_places=4, description="Amount in invoice currency")

    def to_spec(self) -> DiscountSpec:
        return FixedAmountDiscount(self.value)


DiscountIn = Annotated[Union[PercentageDiscountIn, FixedDiscountIn], Field(discriminator="type")]


def discount_spec(discount: Optional[Union[PercentageDiscountIn, FixedDiscountIn]]) -> DiscountSpec:
    return discount.to_spec() if discount is not None else NO_DISCOUNT


# ==================== Line Items ====================

class LineItemCreate(BaseCreateSchema):
    """Line item input. ``amount`` is always derived and never accepted."""
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., gt=0, max_digits=12, decimal_places=3)
    unit_price: Decimal = Field(..., ge=0, max_digits=14, decimal_places=4)
    sort_order: Optional[int] = Field(None, ge=0)

    @field_validator("description")
    @classmethod
    def strip_description(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Description cannot be blank")
        return v


def resolve_sort_orders(items: List[LineItemCreate]) -> List[int]:
    """
    Sort order per item. A missing sort_order takes the item's position,
    or the next value above every order in use when that position is taken.

    >>> resolve_sort_orders([LineItemCreate(description="a", quantity=1, unit_price=1, sort_order=1),
    ...                      LineItemCreate(description="b", quantity=1, unit_price=1)])
    [1, 2]
    """
    used = {item.sort_order for item in items if item.sort_order is not None}
    orders = []
    for index, item in enumerate(items):
        if item.sort_order is not None:
            orders.append(item.sort_order)
            continue
        order = index if index not in used else max(used) + 1
        used.add(order)
        orders.append(order)
    return orders


def to_line_inputs(items: List[LineItemCreate]) -> List[LineItemInput]:
    """Convert request items to engine inputs."""
    return [
        LineItemInput(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            sort_order=order,
        )
        for item, order in zip(items, resolve_sort_orders(items))
    ]


class LineItemResponse(BaseResponseSchema):
    id: UUID
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    sort_order: int


# ==================== Invoice ====================

def _check_sort_orders(items: Optional[List[LineItemCreate]]) -> None:
    if not items:
        return
    explicit = [item.sort_order for item in items if item.sort_order is not None]
    if len(explicit) != len(set(explicit)):
        raise ValueError("Line item sort_order values must be unique")


class InvoiceCreate(BaseCreateSchema):
    """Schema for creating an invoice. Omitted defaults come from the business or client."""
    client_id: UUID
    invoice_number: Optional[str] = Field(None, min_length=1, max_length=50)
    currency: Optional[Currency] = None
    exchange_rate_to_base: Decimal = Field(Decimal("1"), gt=0, max_digits=14, decimal_places=6)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=1, decimal_places=4)
    discount: Optional[DiscountIn] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    language: Optional[Language] = None
    notes_external: Optional[str] = None
    notes_internal: Optional[str] = None
    items: List[LineItemCreate] = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_dates_and_items(self):
        if self.issue_date and self.due_date and self.due_date < self.issue_date:
            raise ValueError("due_date cannot be before issue_date")
        _check_sort_orders(self.items)
        return self


class InvoiceUpdate(BaseUpdateSchema):
    """
    Schema for editing a draft invoice.

    ``discount`` set to null removes the discount; leaving it out keeps the
    current one. ``version`` enables the optimistic-concurrency check.
    """
    client_id: Optional[UUID] = None
    currency: Optional[Currency] = None
    exchange_rate_to_base: Optional[Decimal] = Field(None, gt=0, max_digits=14, decimal_places=6)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=1, decimal_places=4)
    discount: Optional[DiscountIn] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    language: Optional[Language] = None
    notes_external: Optional[str] = None
    notes_internal: Optional[str] = None
    items: Optional[List[LineItemCreate]] = Field(None, min_length=1)
    version: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def validate_dates_and_items(self):
        if self.issue_date and self.due_date and self.due_date < self.issue_date:
            raise ValueError("due_date cannot be before issue_date")
        _check_sort_orders(self.items)
        return self


class StatusChangeRequest(BaseUpdateSchema):
    """Body for send / viewed / cancel. ``version`` is optional."""
    version: Optional[int] = Field(None, ge=1)


class MarkPaidRequest(BaseUpdateSchema):
    """Body for mark-paid. ``paid_amount`` defaults to the invoice total."""
    paid_amount: Optional[Decimal] = Field(None, ge=0, max_digits=14, decimal_places=2)
    paid_date: Optional[date] = None
    payment_method: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None
    version: Optional[int] = Field(None, ge=1)


class PaymentRecordResponse(BaseResponseSchema):
    id: UUID
    amount: Decimal
    payment_date: date
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class InvoiceResponse(BaseResponseSchema):
    """Full invoice with its frozen totals snapshot."""
    id: UUID
    business_id: UUID
    client_id: UUID
    client_name: Optional[str] = None
    invoice_number: str
    status: InvoiceStatus
    currency: str
    exchange_rate_to_base: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    discount_type: Optional[str] = None
    discount_value: Decimal
    discount_amount: Decimal
    total: Decimal
    amount_due: Decimal
    issue_date: date
    due_date: date
    paid_date: Optional[date] = None
    paid_amount: Decimal
    language: str
    notes_external: Optional[str] = None
    notes_internal: Optional[str] = None
    pdf_url: Optional[str] = None
    sent_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime
    items: List[LineItemResponse] = []
    payments: List[PaymentRecordResponse] = []


class InvoiceBrief(BaseResponseSchema):
    """Row in the invoice list."""
    id: UUID
    invoice_number: str
    status: InvoiceStatus
    client_id: UUID
    client_name: Optional[str] = None
    currency: str
    total: Decimal
    paid_amount: Decimal
    issue_date: date
    due_date: date
    paid_date: Optional[date] = None
    created_at: datetime


class InvoiceListResponse(BaseModel):
    """Response for listing invoices."""
    items: List[InvoiceBrief]
    total: int
    page: int = 1
    limit: int = 20
    pages: int = 1


# ==================== Previews ====================

class TotalsPreviewRequest(BaseCreateSchema):
    """Speculative totals for a form that has not been saved yet."""
    items: List[LineItemCreate] = Field(..., min_length=1)
    tax_rate: Decimal = Field(..., ge=0, le=1, decimal_places=4)
    discount: Optional[DiscountIn] = None
    currency: Currency = Currency.TWD


class TotalsPreview(BaseModel):
    currency: str
    line_amounts: List[Decimal]
    subtotal: Decimal
    discount_amount: Decimal
    taxable_base: Decimal
    tax_amount: Decimal
    total: Decimal
    formatted_total: str


class NextNumberResponse(BaseModel):
    invoice_number: str
    sequence: int


class ErrorResponse(BaseModel):
    error: str
    kind: str
    details: Optional[Union[List[Dict[str, Any]], Dict[str, Any]]] = None
