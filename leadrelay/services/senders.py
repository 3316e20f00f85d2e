"""
Channel senders - the actual outbound call for each delivery queue.

Each worker pool is handed one Sender. Senders raise DeliveryError subclasses
(or let provider exceptions propagate) instead of returning error dicts, so
the retry engine can tell transient failures from permanent ones.
"""
import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional

import httpx

from leadrelay.services.credential_cache import CredentialCache, token_expired
from leadrelay.services.errors import (
    CredentialsMissingError,
    InvalidRecipientError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from leadrelay.services.retry_policy import RETRYABLE_STATUS_CODES, TRANSIENT, classify_error

logger = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+?[1-9]\d{7,14}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ProgressCallback = Callable[[dict], Awaitable[object]]


@dataclass
class SendContext:
    job_id: str
    attempt: int
    report_progress: Optional[ProgressCallback] = None
    metadata: dict = field(default_factory=dict)


def mask_recipient(recipient: str) -> str:
    """Mask a phone number or email for logging."""
    if "@" in recipient:
        local, _, domain = recipient.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(recipient) > 6:
        return recipient[:6] + "***"
    return recipient


class Sender(ABC):
    """Strategy interface: deliver one job payload or raise."""

    channel: str = ""

    @abstractmethod
    async def send(self, payload: dict, context: SendContext) -> dict:
        ...


class WhatsAppSender(Sender):
    """Direct messages through the WhatsApp Cloud API, using cached OAuth credentials."""

    channel = "whatsapp"

    def __init__(
        self,
        credentials: Optional[CredentialCache],
        phone_number_id: str,
        base_url: str = "https://graph.facebook.com/v19.0",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.credentials = credentials
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _access_token(self, account: str) -> str:
        if self.credentials is None:
            raise CredentialsMissingError("Credential cache not configured", error_code="credentials_missing")
        token_data = await self.credentials.get(self.channel, account)
        if not token_data or token_expired(token_data):
            raise CredentialsMissingError(
                f"No valid WhatsApp credentials for account {account}",
                error_code="credentials_missing",
            )
        token = token_data.get("access_token") or token_data.get("accessToken")
        if not token:
            raise CredentialsMissingError("Cached WhatsApp credentials have no access token")
        return token

    async def send(self, payload: dict, context: SendContext) -> dict:
        to = str(payload.get("to") or "").replace(" ", "")
        content = payload.get("content") or ""
        if not E164_PATTERN.match(to):
            raise InvalidRecipientError(f"Malformed WhatsApp recipient: {mask_recipient(to)}")
        if not content:
            raise PermanentDeliveryError("Empty message content", error_code="empty_content")

        token = await self._access_token(payload.get("account_id") or "default")
        body = {
            "messaging_product": "whatsapp",
            "to": to.lstrip("+"),
            "type": "text",
            "text": {"body": content},
        }
        url = f"{self.base_url}/{self.phone_number_id}/messages"
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

        if self._client is not None:
            response = await self._client.post(url, json=body, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=body, headers=headers)
        response.raise_for_status()

        data = response.json()
        messages = data.get("messages") or [{}]
        provider_id = messages[0].get("id")
        logger.info(
            "WhatsApp message sent to %s: %s", mask_recipient(to), provider_id,
            extra={"provider": "whatsapp", "job_id": context.job_id},
        )
        return {
            "message_id": payload.get("message_id"),
            "provider_message_id": provider_id,
            "provider": "whatsapp",
            "status": "sent",
        }


class SendGridEmailSender(Sender):
    """Transactional email through SendGrid."""

    channel = "email"

    def __init__(self, api_key: str, from_email: str, from_name: str = "LeadRelay"):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name

    def _build_message(self, to_email: str, subject: str, text: str, html: Optional[str]):
        from sendgrid.helpers.mail import Content, Email, Mail, To

        message = Mail(
            from_email=Email(self.from_email, self.from_name),
            to_emails=To(to_email),
            subject=subject,
        )
        contents = [Content("text/plain", text)]
        if html:
            contents.append(Content("text/html", html))
        message.content = contents
        return message

    @staticmethod
    def _raise_for_status(status: int, cause: Optional[Exception] = None) -> None:
        if status in RETRYABLE_STATUS_CODES or status >= 500:
            raise TransientDeliveryError(f"SendGrid returned {status}", error_code=str(status)) from cause
        if status >= 400:
            raise PermanentDeliveryError(f"SendGrid rejected message ({status})", error_code=str(status)) from cause

    async def send(self, payload: dict, context: SendContext) -> dict:
        to_email = str(payload.get("to") or "").strip()
        subject = payload.get("subject") or ""
        text = payload.get("content") or ""
        if not EMAIL_PATTERN.match(to_email):
            raise InvalidRecipientError(f"Malformed email recipient: {mask_recipient(to_email)}")
        if not self.api_key:
            raise CredentialsMissingError("SendGrid not configured", error_code="sendgrid_not_configured")

        from sendgrid import SendGridAPIClient

        message = self._build_message(to_email, subject, text, payload.get("html"))
        sg = SendGridAPIClient(api_key=self.api_key)
        # Offload synchronous SendGrid SDK call to thread pool
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, lambda: sg.send(message))
        except Exception as e:
            # The SDK raises python_http_client errors for 4xx/5xx
            status = getattr(e, "status_code", None)
            if not isinstance(status, int):
                raise
            self._raise_for_status(status, e)
            raise

        self._raise_for_status(response.status_code)

        message_id = response.headers.get("X-Message-Id", "")
        logger.info(
            "Email sent: to=%s subject=%s", mask_recipient(to_email), subject[:40],
            extra={"provider": "sendgrid", "job_id": context.job_id},
        )
        return {
            "message_id": payload.get("message_id"),
            "provider_message_id": message_id,
            "provider": "sendgrid",
            "status": "sent",
        }


class CampaignSender(Sender):
    """
    Bulk campaign fan-out.

    Recipients are sent sequentially inside the one job with a pacing delay
    between them. Per-recipient failures are recorded, not raised; the job
    only fails (transiently) when nothing at all could be delivered.
    """

    channel = "campaign"

    def __init__(
        self,
        senders: Mapping[str, Sender],
        pacing_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.senders = dict(senders)
        self.pacing_seconds = pacing_seconds
        self._sleep = sleep

    @staticmethod
    def _contact_for(lead: dict) -> Optional[str]:
        return lead.get("contact_detail") or lead.get("email") or lead.get("phone")

    async def send(self, payload: dict, context: SendContext) -> dict:
        campaign_id = payload.get("campaign_id") or context.job_id
        channel = payload.get("channel") or "whatsapp"
        leads = payload.get("leads") or []
        sender = self.senders.get(channel)
        if sender is None:
            raise PermanentDeliveryError(f"Unsupported campaign channel: {channel}")

        logger.info(
            "Processing campaign %s - %d leads via %s", campaign_id, len(leads), channel,
            extra={"job_id": context.job_id},
        )

        results = []
        transient_failures = 0
        for index, lead in enumerate(leads):
            to = self._contact_for(lead)
            if not to:
                logger.warning("Lead %s has no contact detail, skipping", lead.get("id"))
                results.append({"lead_id": lead.get("id"), "success": False, "error": "no contact detail"})
                continue

            message_payload = {
                "message_id": f"campaign-{campaign_id}-{lead.get('id')}",
                "to": to,
                "content": payload.get("message") or "",
                "subject": payload.get("subject"),
                "account_id": payload.get("account_id"),
            }
            try:
                await sender.send(message_payload, context)
                results.append({"lead_id": lead.get("id"), "success": True, "error": None})
            except Exception as e:
                # One bad recipient never aborts the rest of the campaign
                if classify_error(e) == TRANSIENT:
                    transient_failures += 1
                logger.warning(
                    "Campaign %s send to lead %s failed: %s", campaign_id, lead.get("id"), str(e),
                    extra={"job_id": context.job_id},
                )
                results.append({"lead_id": lead.get("id"), "success": False, "error": str(e)})

            if context.report_progress is not None:
                await context.report_progress({"processed": index + 1, "total": len(leads)})

            if index < len(leads) - 1 and self.pacing_seconds > 0:
                await self._sleep(self.pacing_seconds)

        sent = sum(1 for r in results if r["success"])
        if leads and sent == 0 and transient_failures:
            raise TransientDeliveryError(
                f"Campaign {campaign_id}: no recipients reached ({transient_failures} transient failures)"
            )

        logger.info(
            "Campaign completed: %s - %d/%d sent", campaign_id, sent, len(results),
            extra={"job_id": context.job_id},
        )
        return {"campaign_id": campaign_id, "sent": sent, "total": len(leads), "results": results}
