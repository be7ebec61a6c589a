"""
Invoice document rendering.

Renderers only read the stored snapshot (line amounts and totals) and never
recompute anything, so a rendered document always matches what was issued.

The default renderer produces print-ready HTML; a PDF engine can be plugged in
by providing another ``InvoiceRenderer`` through the API dependency.
"""
import logging
from html import escape
from typing import Optional, Protocol

from billflow.core.money import format_money, format_percentage
from billflow.models.business import Business
from billflow.models.invoice import Invoice


logger = logging.getLogger(__name__)


class InvoiceRenderer(Protocol):
    media_type: str
    file_extension: str

    def render(self, invoice: Invoice, business: Business) -> bytes:
        ...


LABELS = {
    "en": {
        "title": "INVOICE",
        "number": "Invoice No.",
        "issue_date": "Issue Date",
        "due_date": "Due Date",
        "bill_to": "Bill To",
        "tax_id": "Tax ID",
        "description": "Description",
        "quantity": "Qty",
        "unit_price": "Unit Price",
        "amount": "Amount",
        "subtotal": "Subtotal",
        "discount": "Discount",
        "tax": "Tax",
        "total": "Total",
        "paid": "Paid",
        "notes": "Notes",
    },
    "zh": {
        "title": "發票",
        "number": "發票號碼",
        "issue_date": "開立日期",
        "due_date": "付款期限",
        "bill_to": "客戶",
        "tax_id": "統一編號",
        "description": "項目",
        "quantity": "數量",
        "unit_price": "單價",
        "amount": "金額",
        "subtotal": "小計",
        "discount": "折扣",
        "tax": "稅額",
        "total": "總計",
        "paid": "已付款",
        "notes": "備註",
    },
}


class HtmlInvoiceRenderer:
    """Renders an invoice as a standalone HTML document (UTF-8 bytes)."""

    media_type = "text/html"
    file_extension = "html"

    def __init__(self, footer: Optional[str] = None):
        self.footer = footer

    def render(self, invoice: Invoice, business: Business) -> bytes:
        html = self._generate_invoice_html(invoice, business)
        logger.debug(f"Rendered invoice {invoice.invoice_number} ({len(html)} chars)")
        return html.encode("utf-8")

    def _generate_invoice_html(self, invoice: Invoice, business: Business) -> str:
        labels = LABELS.get(invoice.language, LABELS["en"])
        currency = invoice.currency
        client = invoice.client

        def money(value) -> str:
            return format_money(value, currency)

        items_html = ""
        for item in invoice.items:
            items_html += f"""
                <tr>
                    <td>{escape(item.description)}</td>
                    <td class="num">{item.quantity.normalize():f}</td>
                    <td class="num">{money(item.unit_price)}</td>
                    <td class="num">{money(item.amount)}</td>
                </tr>"""

        discount_html = ""
        if invoice.discount_amount:
            suffix = f" ({invoice.discount_value.normalize():f}%)" if invoice.discount_type == "percentage" else ""
            discount_html = f"""
                <tr><td>{labels['discount']}{suffix}</td><td class="num">-{money(invoice.discount_amount)}</td></tr>"""

        paid_html = ""
        if invoice.paid_date:
            paid_html = f"""
                <tr><td>{labels['paid']} ({invoice.paid_date.isoformat()})</td><td class="num">{money(invoice.paid_amount)}</td></tr>"""

        notes_html = ""
        if invoice.notes_external:
            notes_html = f"""
            <div class="notes"><h3>{labels['notes']}</h3><p>{escape(invoice.notes_external)}</p></div>"""

        client_tax_id = ""
        if client is not None and client.tax_id:
            client_tax_id = f"<div>{labels['tax_id']}: {escape(client.tax_id)}</div>"

        footer = escape(self.footer) if self.footer else ""

        return f"""<!DOCTYPE html>
<html lang="{'zh-Hant' if invoice.language == 'zh' else 'en'}">
<head>
    <meta charset="utf-8">
    <title>{escape(invoice.invoice_number)}</title>
    <style>
        body {{ font-family: Arial, "Noto Sans TC", sans-serif; color: #333; margin: 40px; }}
        h1 {{ margin: 0; }}
        .header {{ display: flex; justify-content: space-between; }}
        table {{ width: 100%; border-collapse: collapse; margin-top: 20px; }}
        th, td {{ padding: 8px; border-bottom: 1px solid #ddd; text-align: left; }}
        .num {{ text-align: right; }}
        .totals {{ width: 40%; margin-left: auto; }}
        .total-row td {{ font-weight: bold; border-top: 2px solid #333; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #666; }}
    </style>
</head>
<body>
    <div class="header">
        <div>
            <h1>{escape(business.display_name)}</h1>
            <div>{escape(business.address or '')}</div>
            <div>{labels['tax_id']}: {escape(business.tax_id or '-')}</div>
        </div>
        <div>
            <h2>{labels['title']}</h2>
            <div>{labels['number']}: {escape(invoice.invoice_number)}</div>
            <div>{labels['issue_date']}: {invoice.issue_date.isoformat()}</div>
            <div>{labels['due_date']}: {invoice.due_date.isoformat()}</div>
        </div>
    </div>

    <div class="bill-to">
        <h3>{labels['bill_to']}</h3>
        <div>{escape(client.display_name if client else '')}</div>
        {client_tax_id}
    </div>

    <table>
        <thead>
            <tr>
                <th>{labels['description']}</th>
                <th class="num">{labels['quantity']}</th>
                <th class="num">{labels['unit_price']}</th>
                <th class="num">{labels['amount']}</th>
            </tr>
        </thead>
        <tbody>{items_html}
        </tbody>
    </table>

    <table class="totals">
        <tr><td>{labels['subtotal']}</td><td class="num">{money(invoice.subtotal)}</td></tr>{discount_html}
        <tr><td>{labels['tax']} ({format_percentage(invoice.tax_rate)})</td><td class="num">{money(invoice.tax_amount)}</td></tr>
        <tr class="total-row"><td>{labels['total']}</td><td class="num">{money(invoice.total)}</td></tr>{paid_html}
    </table>
    {notes_html}
    <div class="footer">{footer}</div>
</body>
</html>
"""


def get_invoice_renderer() -> InvoiceRenderer:
    from billflow.config import settings

    return HtmlInvoiceRenderer(footer=settings.DOCUMENT_FOOTER)
