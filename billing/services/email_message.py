"""RFC 2822 invoice messages with a PDF attachment."""

from __future__ import annotations

from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.policy import SMTP
from email.utils import formataddr, formatdate, make_msgid
from html import escape

from billing.utils.money import format_money
from billing.utils.validators import safe_filename


def attachment_filename(invoice_num: str) -> str:
    return f"{safe_filename(invoice_num, 'invoice')}.pdf"


def invoice_subject(invoice, sender_name: str) -> str:
    return f"Invoice {invoice.invoice_num} from {sender_name}"


def invoice_text_body(invoice, sender_name: str) -> str:
    lines = ["Hi,", ""]
    if invoice.period_start and invoice.period_end:
        lines.append(f"Here is invoice {invoice.invoice_num} for {invoice.period_start} to {invoice.period_end}.")
    else:
        lines.append(f"Here is invoice {invoice.invoice_num}.")
    lines += [
        f"Amount due: {format_money(invoice.amount, invoice.currency)}, payable by {invoice.due_date.isoformat()}.",
        "",
        "Best regards,",
        sender_name,
    ]
    return "\n".join(lines)


def invoice_html_body(invoice, sender_name: str) -> str:
    paragraphs = [
        escape(line) if line else "<br/>"
        for line in invoice_text_body(invoice, sender_name).split("\n")
    ]
    return "<html><body>" + "".join(f"<p>{p}</p>" for p in paragraphs) + "</body></html>"


def build_invoice_message(
    *,
    sender_email: str,
    sender_name: str,
    recipient: str,
    subject: str,
    invoice_num: str,
    pdf_bytes: bytes,
    text_body: str,
    html_body: str | None = None,
) -> MIMEMultipart:
    """Build a ``multipart/mixed`` message carrying the invoice PDF.

    With an HTML body the readable part is a nested ``multipart/alternative``
    holding the plain text first and the HTML second. The attachment is
    base64 encoded in 76 character lines.
    """
    message = MIMEMultipart("mixed")
    message["From"] = formataddr((sender_name, sender_email))
    message["To"] = recipient
    message["Subject"] = subject
    message["Date"] = formatdate(localtime=False, usegmt=True)
    message["Message-ID"] = make_msgid(domain=sender_email.rpartition("@")[2] or None)

    if html_body:
        body = MIMEMultipart("alternative")
        body.attach(MIMEText(text_body, "plain", "utf-8"))
        body.attach(MIMEText(html_body, "html", "utf-8"))
        message.attach(body)
    else:
        message.attach(MIMEText(text_body, "plain", "utf-8"))

    attachment = MIMEApplication(pdf_bytes, _subtype="pdf")
    attachment.add_header("Content-Disposition", "attachment", filename=attachment_filename(invoice_num))
    message.attach(attachment)
    return message


def message_bytes(message: MIMEMultipart) -> bytes:
    """Serialize with CRLF line endings as sent on the wire."""
    return message.as_bytes(policy=SMTP)
