"""Transactional email for payment confirmations and withdrawal updates (Brevo)"""

import asyncio
import html
import logging
from typing import Any, Dict, Optional

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from config import Config

logger = logging.getLogger(__name__)

PAYMENT_KIND_LABELS = {
    "movie_watch": "Movie rental",
    "movie_download": "Movie download",
    "series_access": "Series pass",
    "series_episode": "Episode rental",
    "subscription_upgrade": "Subscription",
    "subscription_renewal": "Subscription renewal",
}


def _format_rwf(amount: Any) -> str:
    try:
        return f"{float(amount):,.0f} RWF"
    except (TypeError, ValueError):
        return f"{amount} RWF"


def payment_confirmation_template(name: Optional[str], details: Dict[str, Any]) -> Dict[str, str]:
    """Subject and bodies for a successful purchase"""
    label = PAYMENT_KIND_LABELS.get(details.get("kind"), "Purchase")
    title = details.get("title") or details.get("planId") or "CinemaRwa"
    expires = details.get("expiresAt")
    greeting = f"Hi {name}," if name else "Hi,"
    expiry_line = f"Your access is valid until {expires} (UTC)." if expires else "Your access does not expire."

    text_content = (
        f"{greeting}\n\n"
        f"Thank you for your payment. {label}: {title}\n"
        f"Amount: {_format_rwf(details.get('amount'))}\n"
        f"Reference: {details.get('reference')}\n"
        f"{expiry_line}\n\n"
        f"Watch now: {Config.FRONTEND_URL}\n"
        f"Questions? {Config.SUPPORT_EMAIL}"
    )
    html_content = (
        f"<p>{html.escape(greeting)}</p>"
        f"<p>Thank you for your payment.</p>"
        f"<table>"
        f"<tr><td>{html.escape(label)}</td><td><strong>{html.escape(str(title))}</strong></td></tr>"
        f"<tr><td>Amount</td><td>{html.escape(_format_rwf(details.get('amount')))}</td></tr>"
        f"<tr><td>Reference</td><td>{html.escape(str(details.get('reference')))}</td></tr>"
        f"</table>"
        f"<p>{html.escape(expiry_line)}</p>"
        f"<p><a href=\"{html.escape(Config.FRONTEND_URL)}\">Start watching</a></p>"
        f"<p>Questions? {html.escape(Config.SUPPORT_EMAIL)}</p>"
    )
    return {
        "subject": f"Payment confirmed - {title}",
        "html_content": html_content,
        "text_content": text_content,
    }


def withdrawal_status_template(name: Optional[str], details: Dict[str, Any]) -> Dict[str, str]:
    status = details.get("status", "updated")
    amount = _format_rwf(details.get("amount"))
    greeting = f"Hi {name}," if name else "Hi,"
    reason = details.get("reason")
    lines = [greeting, "", f"Your withdrawal of {amount} is now {status}."]
    if reason:
        lines.append(f"Reason: {reason}")
    lines += ["", f"Questions? {Config.SUPPORT_EMAIL}"]
    text_content = "\n".join(lines)
    html_content = "".join(f"<p>{html.escape(line)}</p>" for line in lines if line)
    return {
        "subject": f"Withdrawal {status} - {amount}",
        "html_content": html_content,
        "text_content": text_content,
    }


class EmailService:
    """Brevo transactional email client"""

    def __init__(self):
        api_key = Config.BREVO_API_KEY
        if not api_key:
            logger.warning("BREVO_API_KEY not configured - emails will be skipped")
            self.api_client = None
            return

        configuration = sib_api_v3_sdk.Configuration()
        configuration.api_key["api-key"] = api_key
        self.api_client = sib_api_v3_sdk.ApiClient(configuration)
        self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(self.api_client)

    def is_configured(self) -> bool:
        return self.api_client is not None

    async def send_payment_confirmation(self, to_email: str, name: Optional[str], details: Dict[str, Any]) -> bool:
        """
        Send the purchase confirmation.

        Returns:
            bool: True if sent, False if email is not configured.
            Delivery errors propagate so the outbox can retry.
        """
        template = payment_confirmation_template(name, details)
        return await self._send(to_email, name, template, tags=["payment", "confirmation"])

    async def send_withdrawal_status(self, to_email: str, name: Optional[str], details: Dict[str, Any]) -> bool:
        template = withdrawal_status_template(name, details)
        return await self._send(to_email, name, template, tags=["withdrawal", str(details.get("status", ""))])

    async def _send(self, to_email: str, name: Optional[str], template: Dict[str, str], tags) -> bool:
        if not self.api_client:
            logger.warning(f"Email service not configured - skipping '{template['subject']}'")
            return False

        send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
            to=[sib_api_v3_sdk.SendSmtpEmailTo(email=to_email, name=name or to_email)],
            sender=sib_api_v3_sdk.SendSmtpEmailSender(email=Config.FROM_EMAIL, name=Config.FROM_NAME),
            subject=template["subject"],
            html_content=template["html_content"],
            text_content=template["text_content"],
            tags=tags,
        )
        api_response = await self._send_email_with_retry(send_smtp_email, to_email)
        logger.info(f"📧 EMAIL_SENT: '{template['subject']}' to {to_email} - Message ID: {api_response.message_id}")
        return True

    async def _send_email_with_retry(
        self, send_smtp_email: sib_api_v3_sdk.SendSmtpEmail, recipient_email: str,
        max_retries: int = 3, timeout: float = 30.0
    ) -> sib_api_v3_sdk.CreateSmtpEmail:
        """Send email with non-blocking I/O, timeout, and retry logic"""
        for attempt in range(max_retries):
            try:
                # Brevo's client is blocking
                return await asyncio.wait_for(
                    asyncio.to_thread(self.transactional_emails_api.send_transac_email, send_smtp_email),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Email send timeout (attempt {attempt + 1}/{max_retries}) for {recipient_email}")
                if attempt == max_retries - 1:
                    raise
            except ApiException as e:
                logger.warning(f"Email API error (attempt {attempt + 1}/{max_retries}) for {recipient_email}: {e}")
                if attempt == max_retries - 1:
                    raise

            backoff_time = (2 ** attempt) * 0.5  # 0.5s, 1s
            await asyncio.sleep(backoff_time)

        raise RuntimeError("unreachable")


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
