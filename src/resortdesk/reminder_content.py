"""Subjects and bodies for payment reminder emails."""

import html
import re
from typing import TYPE_CHECKING

from .reminder_policy import date_key

if TYPE_CHECKING:
    from .db import Invoice

# Per-type wording and accent colour for the default reminder layout
REMINDER_STYLES = {
    "before": {
        "title": "Payment Reminder",
        "message": "This is a friendly reminder that your payment is due soon.",
        "color": "#F59E0B",
    },
    "on": {
        "title": "Payment Due Today",
        "message": "Your payment is due today. Please process your payment as soon as possible.",
        "color": "#EF4444",
    },
    "after": {
        "title": "Overdue Payment Notice",
        "message": "Your payment is now overdue. Please make payment immediately to avoid additional late fees.",
        "color": "#DC2626",
    },
}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def default_subject(invoice: "Invoice", reminder_type: str) -> str:
    number = invoice.invoice_number
    if reminder_type == "before":
        return f"Payment Reminder - Invoice {number} Due Soon"
    if reminder_type == "on":
        return f"Payment Due Today - Invoice {number}"
    if reminder_type == "after":
        return f"Overdue Payment Notice - Invoice {number}"
    return f"Payment Reminder - Invoice {number}"


def _format_date(value) -> str:
    try:
        day = date_key(value)
    except ValueError:
        day = None
    return day.strftime("%b %d, %Y") if day else "N/A"


def template_context(invoice: "Invoice", business_name: str = "") -> dict[str, str]:
    """Values available to admin-written templates as ``{{ name }}`` placeholders."""
    return {
        "invoice_number": invoice.invoice_number,
        "customer_name": invoice.customer_name,
        "email": invoice.email,
        "due_date": _format_date(invoice.due_date),
        "invoice_date": _format_date(invoice.created_at),
        "final_amount": f"{invoice.final_amount:,.2f}",
        "paid_amount": f"{invoice.paid_amount:,.2f}",
        "balance": f"{invoice.balance:,.2f}",
        "business_name": business_name,
    }


def render_template(template: str, context: dict[str, str]) -> str:
    """Fill ``{{ name }}`` placeholders; unknown names are left untouched."""
    def _sub(match: re.Match) -> str:
        key = match.group(1)
        return context.get(key, match.group(0))
    return _PLACEHOLDER_RE.sub(_sub, template)


def default_body(invoice: "Invoice", reminder_type: str, business_name: str = "") -> str:
    """HTML body used when no admin template applies."""
    style = REMINDER_STYLES.get(reminder_type, REMINDER_STYLES["before"])
    ctx = {k: html.escape(v) for k, v in template_context(invoice, business_name).items()}
    color = style["color"]
    title = style["title"]
    message = style["message"]
    number = ctx["invoice_number"]
    customer = ctx["customer_name"]
    invoice_date = ctx["invoice_date"]
    due_date = ctx["due_date"]
    balance = ctx["balance"]
    final_amount = ctx["final_amount"]
    paid_amount = ctx["paid_amount"]
    business = ctx["business_name"]
    return f"""<!DOCTYPE html>
<html>
<head>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: {color}; color: white; padding: 30px; text-align: center; }}
    .content {{ background: #f9f9f9; padding: 30px; }}
    .invoice-box {{ background: white; padding: 20px; margin: 20px 0; border-left: 4px solid {color}; }}
    .amount {{ font-size: 32px; font-weight: bold; color: {color}; text-align: center; margin: 20px 0; }}
    .footer {{ text-align: center; padding: 20px; color: #666; font-size: 12px; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header">
      <h1>{title}</h1>
      <p>Invoice #{number}</p>
    </div>
    <div class="content">
      <p>Dear {customer},</p>
      <p>{message}</p>
      <div class="invoice-box">
        <h3>Invoice Details</h3>
        <p><strong>Invoice Number:</strong> {number}</p>
        <p><strong>Invoice Date:</strong> {invoice_date}</p>
        <p><strong>Due Date:</strong> {due_date}</p>
        <div class="amount">${balance}</div>
        <p style="text-align: center; color: #666;">Amount Due</p>
        <p><strong>Original Amount:</strong> ${final_amount}</p>
        <p><strong>Amount Paid:</strong> ${paid_amount}</p>
        <p><strong>Balance Due:</strong> ${balance}</p>
      </div>
    </div>
    <div class="footer">
      <p>{business}</p>
    </div>
  </div>
</body>
</html>
"""


def build_reminder(
    invoice: "Invoice",
    reminder_type: str,
    template: str | None = None,
    subject: str | None = None,
    business_name: str = "",
) -> tuple[str, str, str]:
    """Return (subject, body, content_type) for a reminder email.

    A non-empty admin template/subject wins over the defaults. Templates
    containing markup are sent as HTML, anything else as plain text.
    """
    context = template_context(invoice, business_name)

    if subject:
        final_subject = render_template(subject, context)
    else:
        final_subject = default_subject(invoice, reminder_type)

    if template:
        body = render_template(template, context)
        content_type = "html" if "<" in body else "plain"
    else:
        body = default_body(invoice, reminder_type, business_name)
        content_type = "html"

    return final_subject, body, content_type
