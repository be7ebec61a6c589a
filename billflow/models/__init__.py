from billflow.models.business import Business, Client
from billflow.models.invoice import Invoice, InvoiceLineItem, PaymentRecord

__all__ = [
    "Business",
    "Client",
    "Invoice",
    "InvoiceLineItem",
    "PaymentRecord",
]
