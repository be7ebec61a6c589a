from typing import Annotated
import uuid
import logging

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from billflow.database import get_db
from billflow.core.exceptions import BusinessNotFoundError, ValidationError
from billflow.models.business import Business
from billflow.services.email_service import EmailService, get_email_service
from billflow.services.invoice_service import InvoiceService
from billflow.services.pdf_service import InvoiceRenderer, get_invoice_renderer


logger = logging.getLogger(__name__)


DB = Annotated[AsyncSession, Depends(get_db)]


async def get_business_id(
    db: DB,
    x_business_id: Annotated[str, Header(alias="X-Business-ID", description="Business the request acts for")],
) -> uuid.UUID:
    """
    Resolve the business context from the X-Business-ID header.

    Raises:
        ValidationError: Header is not a UUID
        BusinessNotFoundError: No such business
    """
    try:
        business_id = uuid.UUID(x_business_id.strip())
    except ValueError:
        logger.warning(f"Invalid X-Business-ID header: {x_business_id!r}")
        raise ValidationError.for_field("X-Business-ID", "Must be a valid UUID")

    business = await db.get(Business, business_id)
    if business is None:
        raise BusinessNotFoundError(
            f"Business {business_id} not found",
            details={"business_id": str(business_id)},
        )
    return business_id


def get_notifier() -> EmailService:
    return get_email_service()


def get_renderer() -> InvoiceRenderer:
    return get_invoice_renderer()


def get_invoice_service(
    db: DB,
    notifier: Annotated[EmailService, Depends(get_notifier)],
    renderer: Annotated[InvoiceRenderer, Depends(get_renderer)],
) -> InvoiceService:
    return InvoiceService(db, notifier=notifier, renderer=renderer)


BusinessID = Annotated[uuid.UUID, Depends(get_business_id)]
InvoiceSvc = Annotated[InvoiceService, Depends(get_invoice_service)]
