import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from html import escape
from typing import Optional
import logging

from billflow.core.money import format_money

logger = logging.getLogger(__name__)


SUBJECTS = {
    "en": "Invoice {number} from {business}",
    "zh": "{business} 發票 {number}",
}


class EmailService:
    """Email service for sending invoices to clients via SMTP."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Billflow",
        timeout: int = 10,
        frontend_url: str = "",
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout
        self.frontend_url = frontend_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send an email over SMTP with STARTTLS.

        Returns:
            True if email sent successfully, False otherwise
        """
        if not self.is_configured:
            logger.warning("Email not configured. SMTP credentials missing.")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            if text_content:
                msg.attach(MIMEText(text_content, 'plain', 'utf-8'))
            msg.attach(MIMEText(html_content, 'html', 'utf-8'))

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info(f"Email sent successfully to {to_email}")
            return True

        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP Authentication failed. Check email credentials.")
            return False
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            return False
        except OSError as e:
            # Includes socket timeouts
            logger.error(f"Network error sending email: {e}")
            return False

    def send_invoice_email(self, invoice, business, client) -> bool:
        """
        Notify a client that an invoice was sent.

        Args:
            invoice: Invoice with its frozen totals
            business: Issuing business
            client: Recipient; its email address is used

        Returns:
            True if email sent successfully, False otherwise
        """
        if not client.email:
            logger.warning(f"Client {client.id} has no email, invoice {invoice.invoice_number} not emailed")
            return False

        language = invoice.language if invoice.language in SUBJECTS else "en"
        subject = SUBJECTS[language].format(number=invoice.invoice_number, business=business.display_name)
        total = format_money(invoice.total, invoice.currency)
        due = invoice.due_date.isoformat()
        link = f"{self.frontend_url}/invoices/{invoice.id}" if self.frontend_url else ""

        if language == "zh":
            greeting = f"{escape(client.display_name)} 您好，"
            body = f"發票 <strong>{escape(invoice.invoice_number)}</strong> 金額 {total}，付款期限 {due}。"
            action = "查看發票"
        else:
            greeting = f"Hello {escape(client.display_name)},"
            body = (
                f"Invoice <strong>{escape(invoice.invoice_number)}</strong> for {total} "
                f"is due on {due}."
            )
            action = "View invoice"

        button = f'<p style="text-align: center;"><a href="{link}" class="button">{action}</a></p>' if link else ""

        html_content = f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <style>
                body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
                .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
                .header {{ background: #1a56db; color: white; padding: 20px; text-align: center; }}
                .content {{ padding: 30px; background: #f9f9f9; }}
                .button {{ display: inline-block; padding: 12px 30px; background: #1a56db; color: white; text-decoration: none; border-radius: 5px; margin: 20px 0; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div class="header"><h1>{escape(business.display_name)}</h1></div>
                <div class="content">
                    <p>{greeting}</p>
                    <p>{body}</p>
                    {button}
                </div>
            </div>
        </body>
        </html>
        """

        text_content = f"{subject}\n\nTotal: {total}\nDue: {due}\n{link}"

        return self.send_email(client.email, subject, html_content, text_content)


def get_email_service() -> EmailService:
    """Get configured email service instance."""
    from billflow.config import settings

    return EmailService(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
        timeout=settings.SMTP_TIMEOUT,
        frontend_url=settings.FRONTEND_URL,
    )
