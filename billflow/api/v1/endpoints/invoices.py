"""API endpoints for invoices."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from billflow.api.deps import BusinessID, InvoiceSvc
from billflow.schemas.invoice import (
    InvoiceCreate, InvoiceUpdate, InvoiceResponse, InvoiceBrief, InvoiceListResponse,
    MarkPaidRequest, StatusChangeRequest, TotalsPreviewRequest, TotalsPreview, NextNumberResponse,
    ErrorResponse,
)
from billflow.services.invoice_status import InvoiceStatus


router = APIRouter(
    responses={
        400: {"model": ErrorResponse, "description": "Validation failed or illegal state change"},
        404: {"model": ErrorResponse, "description": "Invoice or business not found"},
        409: {"model": ErrorResponse, "description": "Concurrent modification"},
        503: {"model": ErrorResponse, "description": "Storage unavailable, retry"},
    },
)


# ==================== Previews ====================

@router.get("/next-number", response_model=NextNumberResponse)
async def preview_next_number(
    business_id: BusinessID,
    service: InvoiceSvc,
):
    """Number the next created invoice would get. Nothing is consumed."""
    allocated = await service.preview_next_number(business_id)
    return NextNumberResponse(invoice_number=allocated.invoice_number, sequence=allocated.sequence)


@router.post("/preview-totals", response_model=TotalsPreview)
async def preview_totals(
    data: TotalsPreviewRequest,
    business_id: BusinessID,
    service: InvoiceSvc,
):
    """Live totals for an unsaved invoice form."""
    return TotalsPreview(**service.preview_totals(data))


# ==================== CRUD ====================

@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    business_id: BusinessID,
    service: InvoiceSvc,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[InvoiceStatus] = None,
    client_id: Optional[UUID] = None,
    search: Optional[str] = Query(None, max_length=100),
):
    """List invoices, newest first. ``search`` matches invoice number or client name."""
    result = await service.list_invoices(
        business_id, page=page, limit=limit, status=status, client_id=client_id, search=search
    )
    return InvoiceListResponse(
        items=[InvoiceBrief.model_validate(inv) for inv in result["items"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
        pages=result["pages"],
    )


@router.post("", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    data: InvoiceCreate,
    business_id: BusinessID,
    service: InvoiceSvc,
):
    """
    Create a draft invoice.

    Totals are computed here and frozen; any ``amount`` sent on line items is
    ignored. The invoice number is allocated unless one is supplied.
    """
    return await service.create_invoice(business_id, data)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: UUID,
    business_id: BusinessID,
    service: InvoiceSvc,
):
    """Get invoice by ID."""
    return await service.get_invoice(business_id, invoice_id)


@router.put("/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: UUID,
    data: InvoiceUpdate,
    business_id: BusinessID,
    service: InvoiceSvc,
):
    """Edit a draft invoice. Non-draft invoices are rejected unchanged."""
    return await service.update_invoice(business_id, invoice_id, data)


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(
    invoice_id: UUID,
    business_id: BusinessID,
    service: InvoiceSvc,
    version: Optional[int] = Query(None, ge=1),
):
    """Delete a draft invoice and its line items."""
    await service.delete_invoice(business_id, invoice_id, version=version)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{invoice_id}/pdf")
async def download_invoice_document(
    invoice_id: UUID,
    business_id: BusinessID,
    service: InvoiceSvc,
):
    """Download the rendered invoice as an attachment named after its number."""
    content, filename, media_type = await service.render_invoice_document(business_id, invoice_id)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ==================== Status ====================

@router.post("/{invoice_id}/send", response_model=InvoiceResponse)
async def send_invoice(
    invoice_id: UUID,
    business_id: BusinessID,
    service: InvoiceSvc,
    body: Optional[StatusChangeRequest] = None,
):
    """draft -> sent. Emails the client after the change is saved."""
    return await service.send_invoice(business_id, invoice_id, version=body.version if body else None)


@router.post("/{invoice_id}/viewed", response_model=InvoiceResponse)
async def mark_invoice_viewed(
    invoice_id: UUID,
    business_id: BusinessID,
    service: InvoiceSvc,
    body: Optional[StatusChangeRequest] = None,
):
    """sent -> viewed."""
    return await service.mark_viewed(business_id, invoice_id, version=body.version if body else None)


@router.post("/{invoice_id}/mark-paid", response_model=InvoiceResponse)
async def mark_invoice_paid(
    invoice_id: UUID,
    business_id: BusinessID,
    service: InvoiceSvc,
    body: Optional[MarkPaidRequest] = None,
):
    """sent / viewed / overdue -> paid."""
    body = body or MarkPaidRequest()
    return await service.mark_paid(
        business_id,
        invoice_id,
        paid_amount=body.paid_amount,
        paid_date=body.paid_date,
        payment_method=body.payment_method,
        notes=body.notes,
        version=body.version,
    )


@router.post("/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_invoice(
    invoice_id: UUID,
    business_id: BusinessID,
    service: InvoiceSvc,
    body: Optional[StatusChangeRequest] = None,
):
    """draft / sent / viewed -> cancelled."""
    return await service.cancel_invoice(business_id, invoice_id, version=body.version if body else None)
