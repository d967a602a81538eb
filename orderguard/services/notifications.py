"""
Customer payment notifications - SendGrid transactional email.

Best-effort: every function returns the SendGrid result dict and never raises.
A failed send is logged and does not undo the payment state change that
triggered it.
"""
import asyncio
import logging

from orderguard.config import get_settings

logger = logging.getLogger(__name__)


async def _send_transactional(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: str,
) -> dict:
    """
    Send a transactional email via SendGrid.

    Returns: {"message_id": str|None, "status": str, "error": str|None}
    """
    settings = get_settings()
    api_key = settings.sendgrid_api_key

    if not api_key:
        logger.error("No SendGrid API key configured for transactional email")
        return {"message_id": None, "status": "error", "error": "SendGrid not configured"}

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail, Email, To, Content

        message = Mail(
            from_email=Email(settings.from_email_transactional, settings.from_name_transactional),
            to_emails=To(to_email),
            subject=subject,
        )
        message.content = [
            Content("text/plain", text_content),
            Content("text/html", html_content),
        ]

        sg = SendGridAPIClient(api_key=api_key)
        # Offload synchronous SendGrid SDK call to thread pool
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, lambda: sg.send(message))
        message_id = response.headers.get("X-Message-Id", "")

        logger.info(
            "Transactional email sent: to=%s subject=%s",
            to_email[:20] + "***", subject[:40],
        )
        return {"message_id": message_id, "status": "sent", "error": None}

    except Exception as e:
        logger.error(
            "Transactional email failed: to=%s error=%s",
            to_email[:20] + "***", str(e),
        )
        return {"message_id": None, "status": "error", "error": str(e)}


def _wrap(title: str, body_html: str) -> str:
    brand = get_settings().from_name_transactional
    return f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 32px 20px;">
      <h2 style="margin: 0 0 16px; color: #111; font-size: 20px;">{title}</h2>
      {body_html}
      <p style="color: #555; font-size: 15px; line-height: 1.6;">Best regards,<br>The {brand} Team</p>
    </div>
    """


async def send_payment_succeeded(
    email: str, order_id: str, amount: int, currency: str,
) -> dict:
    """Receipt for a succeeded payment intent. Amount is in minor units."""
    short_id = order_id[:8]
    display = f"{amount / 100:.2f} {currency.upper()}"
    html = _wrap(
        "Payment Received",
        f"""
      <p style="color: #555; font-size: 15px; line-height: 1.6;">
        We received your payment of <strong>{display}</strong> for Order #{short_id}.
      </p>
      <p style="color: #555; font-size: 15px; line-height: 1.6;">
        Our team will confirm your order and start fulfillment shortly.
      </p>
        """,
    )
    text = (
        f"Payment Received\n\n"
        f"We received your payment of {display} for Order #{short_id}.\n"
        "Our team will confirm your order and start fulfillment shortly."
    )
    return await _send_transactional(email, f"Payment Received - Order #{short_id}", html, text)


async def send_payment_failed(email: str, order_id: str, error_message: str) -> dict:
    """Tell the customer their payment failed and how to retry."""
    short_id = order_id[:8]
    html = _wrap(
        "Payment Failed",
        f"""
      <p style="color: #555; font-size: 15px; line-height: 1.6;">Your payment for Order #{short_id} has failed.</p>
      <p style="color: #555; font-size: 15px; line-height: 1.6;"><strong>Error:</strong> {error_message}</p>
      <p style="color: #555; font-size: 15px; line-height: 1.6;">
        Please try submitting your payment again, or contact our support team if you continue to experience issues.
      </p>
        """,
    )
    text = (
        f"Your payment for Order #{short_id} has failed. "
        f"Please try again or contact support.\n\nError: {error_message}"
    )
    return await _send_transactional(email, f"Payment Failed - Order #{short_id}", html, text)


async def send_payment_action_required(email: str, order_id: str) -> dict:
    """3D Secure or similar verification is pending on the customer's side."""
    short_id = order_id[:8]
    html = _wrap(
        "Payment Action Required",
        f"""
      <p style="color: #555; font-size: 15px; line-height: 1.6;">
        Your payment for Order #{short_id} requires additional verification (such as 3D Secure).
      </p>
      <p style="color: #555; font-size: 15px; line-height: 1.6;">
        Please return to your order page and complete the payment process.
      </p>
        """,
    )
    text = (
        f"Your payment for Order #{short_id} requires additional verification. "
        "Please complete the payment process."
    )
    return await _send_transactional(
        email, f"Payment Action Required - Order #{short_id}", html, text,
    )
