"""Email bodies for billing notifications (subject, HTML and plain text)."""

import html
import os

BASE_URL = os.environ.get("BASE_URL", "https://steadycoach.app")
PRODUCT_NAME = "Steady Coach Premium"

_BUTTON_STYLE = (
    "display:inline-block;background:#3b82f6;color:white;padding:12px 24px;"
    "text-decoration:none;border-radius:6px;margin:20px 0;"
)


def _html_page(title: str, paragraphs: list[str], button: tuple[str, str] | None = None,
               warning: str | None = None) -> str:
    parts = [
        '<html><body style="font-family:system-ui,sans-serif;max-width:600px;margin:0 auto;padding:20px;">',
        f'<h1 style="color:#1e293b;">{title}</h1>',
    ]
    for paragraph in paragraphs:
        parts.append(f'<p style="color:#475569;font-size:16px;">{paragraph}</p>')
    if button:
        label, url = button
        parts.append(f'<a href="{url}" style="{_BUTTON_STYLE}">{label}</a>')
    if warning:
        parts.append(f'<p style="color:#dc2626;font-size:14px;"><strong>Important:</strong> {warning}</p>')
    parts.append('<p style="color:#94a3b8;font-size:14px;">The Steady Coach Team</p>')
    parts.append("</body></html>")
    return "".join(parts)


def _text_page(greeting: str, paragraphs: list[str]) -> str:
    return "\n\n".join([greeting, *paragraphs, "Best regards,\nThe Steady Coach Team"])


def render(template: str, data: dict | None = None) -> dict:
    """
    Render a notification template.

    Args:
        template: Template kind (e.g. "payment_failed_urgent")
        data: Template variables: user_name, amount, currency, invoice_id,
            days_since_failure, grace_period_end_date

    Returns:
        {"subject", "html", "text"}; unknown kinds get a generic notice.
    """
    data = data or {}
    name = data.get("user_name") or "there"
    safe_name = html.escape(str(name))
    account_url = f"{BASE_URL}/account"
    amount = f"{data.get('currency', 'USD')} {data.get('amount', '')}".strip()
    invoice_id = data.get("invoice_id", "")
    grace_end = data.get("grace_period_end_date", "")
    days = data.get("days_since_failure", "")
    greeting = f"Hi {name},"

    if template == "payment_failed_gentle":
        lines = [
            f"We had trouble processing your recent payment for {PRODUCT_NAME}.",
            "Your account is still active and we will retry the payment automatically. "
            "You can also update your payment method in your account settings.",
        ]
        return {
            "subject": f"Payment Update - {PRODUCT_NAME}",
            "html": _html_page("Payment Update", [f"Hi {safe_name},", *lines],
                               ("Update Payment Method", account_url)),
            "text": _text_page(greeting, lines),
        }

    if template == "payment_failed_urgent":
        lines = [
            f"We have been unable to process your payment for {PRODUCT_NAME} "
            f"for {days} days.",
            "Your account is at risk of being restricted. Please update your payment "
            "method as soon as possible to avoid any interruption.",
            f"Amount due: {amount}\nInvoice: {invoice_id}",
        ]
        return {
            "subject": f"Action Required - Payment Issue with {PRODUCT_NAME}",
            "html": _html_page("Action Required", [f"Hi {safe_name},", *lines[:2]],
                               ("Update Payment Method", account_url),
                               warning=f"Amount due: {html.escape(amount)} (invoice {html.escape(str(invoice_id))})"),
            "text": _text_page(greeting, [*lines, f"Update your payment method: {account_url}"]),
        }

    if template == "payment_failed_final":
        lines = [
            f"This is our final notice about your unpaid {PRODUCT_NAME} subscription.",
            f"Your account now has limited access (20 messages per day) until {grace_end}. "
            "After that date your account will be suspended.",
            f"Amount due: {amount}\nInvoice: {invoice_id}\nGrace period ends: {grace_end}",
        ]
        return {
            "subject": f"Final Notice - {PRODUCT_NAME} Payment Required",
            "html": _html_page("Final Notice", [f"Hi {safe_name},", *lines[:2]],
                               ("Restore Full Access", account_url),
                               warning=f"Your account will be suspended after {html.escape(str(grace_end))}."),
            "text": _text_page(greeting, [*lines, f"Update your payment method: {account_url}"]),
        }

    if template == "grace_period_started":
        lines = [
            f"Your {PRODUCT_NAME} account is in a grace period until {grace_end} "
            "because of a payment issue.",
            "During the grace period chat is limited to 20 messages per day, premium "
            "content is paused and the self-assessment stays available.",
            "Update your payment method to restore full access.",
        ]
        return {
            "subject": f"Grace Period Active - {PRODUCT_NAME}",
            "html": _html_page("Grace Period Active", [f"Hi {safe_name},", *lines],
                               ("Update Payment Method", account_url)),
            "text": _text_page(greeting, lines),
        }

    if template == "account_suspended":
        lines = [
            f"Your {PRODUCT_NAME} account has been suspended because of unpaid invoices.",
            "Chat and premium content are no longer available. The self-assessment "
            "remains open to you.",
            "To reactivate your account, update your payment method and contact support.",
        ]
        return {
            "subject": f"Account Suspended - {PRODUCT_NAME}",
            "html": _html_page("Account Suspended", [f"Hi {safe_name},", *lines],
                               ("Reactivate Account", account_url)),
            "text": _text_page(greeting, lines),
        }

    if template == "payment_succeeded":
        lines = [
            f"Your payment went through and your {PRODUCT_NAME} account is fully restored.",
            f"Amount: {amount}\nInvoice: {invoice_id}",
        ]
        return {
            "subject": "Payment Successful - Welcome Back!",
            "html": _html_page("Welcome Back", [f"Hi {safe_name},", lines[0]],
                               ("Open Steady Coach", BASE_URL)),
            "text": _text_page(greeting, lines),
        }

    if template == "subscription_created":
        lines = [
            f"Welcome to {PRODUCT_NAME}! Your subscription is active.",
            "You now have premium coach conversations, premium content and priority support.",
        ]
        return {
            "subject": f"Welcome to {PRODUCT_NAME}!",
            "html": _html_page("Welcome!", [f"Hi {safe_name},", *lines],
                               ("Start Chatting", f"{BASE_URL}/coach")),
            "text": _text_page(greeting, lines),
        }

    if template == "subscription_cancelled":
        lines = [
            f"Your {PRODUCT_NAME} subscription has been cancelled.",
            "Your account has returned to the free plan. You can resubscribe at any "
            "time from your account settings.",
        ]
        return {
            "subject": f"Subscription Cancelled - {PRODUCT_NAME}",
            "html": _html_page("Subscription Cancelled", [f"Hi {safe_name},", *lines],
                               ("Resubscribe", account_url)),
            "text": _text_page(greeting, lines),
        }

    if template == "test_email":
        lines = ["This is a test message from the Steady Coach billing system."]
        return {
            "subject": f"Test Notification - {PRODUCT_NAME}",
            "html": _html_page("Test Notification", [f"Hi {safe_name},", *lines]),
            "text": _text_page(greeting, lines),
        }

    return {
        "subject": f"{PRODUCT_NAME} Notification",
        "html": _html_page("Notification", [f"Hi {safe_name},", f"This is a notification from {PRODUCT_NAME}."]),
        "text": _text_page(greeting, [f"This is a notification from {PRODUCT_NAME}."]),
    }
