"""
Tests for leadrelay/services/senders.py - WhatsApp, SendGrid and campaign fan-out.
All provider calls are mocked.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from leadrelay.services.credential_cache import CredentialCache
from leadrelay.services.errors import (
    CredentialsMissingError,
    InvalidRecipientError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from leadrelay.services.senders import (
    CampaignSender,
    SendContext,
    SendGridEmailSender,
    Sender,
    WhatsAppSender,
    mask_recipient,
)


class SdkHTTPError(Exception):
    """Shaped like the python_http_client errors the SendGrid SDK raises."""

    def __init__(self, status_code: int):
        super().__init__(f"HTTP Error {status_code}")
        self.status_code = status_code


def _context(**kwargs) -> SendContext:
    return SendContext(job_id="job-1", attempt=1, **kwargs)


@pytest.fixture
def credentials(redis):
    return CredentialCache(redis, "test-credential-secret")


def _whatsapp(credentials, handler) -> tuple[WhatsAppSender, list]:
    requests = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return WhatsAppSender(credentials, "1234567890", base_url="https://graph.test/v19.0", client=client), requests


def test_mask_recipient():
    assert mask_recipient("+15125550100") == "+15125***"
    assert mask_recipient("jane@example.com") == "ja***@example.com"
    assert mask_recipient("123") == "123"


# ---------------------------------------------------------------------------
# WhatsApp
# ---------------------------------------------------------------------------


class TestWhatsAppSender:
    @pytest.mark.asyncio
    async def test_sends_with_cached_token(self, credentials):
        await credentials.set("whatsapp", "default", {"access_token": "EAAG-token"})
        sender, requests = _whatsapp(
            credentials, lambda r: httpx.Response(200, json={"messages": [{"id": "wamid.abc"}]})
        )

        result = await sender.send(
            {"to": "+15125550100", "content": "Your tech is on the way", "message_id": "m-1"},
            _context(),
        )

        assert result == {
            "message_id": "m-1",
            "provider_message_id": "wamid.abc",
            "provider": "whatsapp",
            "status": "sent",
        }
        request = requests[0]
        assert str(request.url) == "https://graph.test/v19.0/1234567890/messages"
        assert request.headers["Authorization"] == "Bearer EAAG-token"
        body = json.loads(request.content)
        assert body["to"] == "15125550100"
        assert body["text"] == {"body": "Your tech is on the way"}

    @pytest.mark.asyncio
    async def test_account_scoped_token(self, credentials):
        await credentials.set("whatsapp", "acct-9", {"access_token": "acct-token"})
        sender, requests = _whatsapp(
            credentials, lambda r: httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})
        )
        await sender.send({"to": "+15125550100", "content": "hi", "account_id": "acct-9"}, _context())
        assert requests[0].headers["Authorization"] == "Bearer acct-token"

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, credentials):
        await credentials.set("whatsapp", "default", {"access_token": "EAAG-token"})
        sender, _ = _whatsapp(credentials, lambda r: httpx.Response(401, json={"error": "bad token"}))

        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await sender.send({"to": "+15125550100", "content": "hi"}, _context())
        assert exc_info.value.response.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_recipient(self, credentials):
        sender, requests = _whatsapp(credentials, lambda r: httpx.Response(200, json={}))
        with pytest.raises(InvalidRecipientError):
            await sender.send({"to": "call me maybe", "content": "hi"}, _context())
        assert requests == []

    @pytest.mark.asyncio
    async def test_empty_content(self, credentials):
        sender, _ = _whatsapp(credentials, lambda r: httpx.Response(200, json={}))
        with pytest.raises(PermanentDeliveryError):
            await sender.send({"to": "+15125550100", "content": ""}, _context())

    @pytest.mark.asyncio
    async def test_missing_credentials(self, credentials):
        sender, requests = _whatsapp(credentials, lambda r: httpx.Response(200, json={}))
        with pytest.raises(CredentialsMissingError):
            await sender.send({"to": "+15125550100", "content": "hi"}, _context())
        assert requests == []

    @pytest.mark.asyncio
    async def test_expired_credentials(self, credentials):
        await credentials.set("whatsapp", "default", {"access_token": "old", "expiry_date": 1000})
        sender, _ = _whatsapp(credentials, lambda r: httpx.Response(200, json={}))
        with pytest.raises(CredentialsMissingError):
            await sender.send({"to": "+15125550100", "content": "hi"}, _context())

    @pytest.mark.asyncio
    async def test_no_credential_cache_configured(self):
        sender, _ = _whatsapp(None, lambda r: httpx.Response(200, json={}))
        with pytest.raises(CredentialsMissingError):
            await sender.send({"to": "+15125550100", "content": "hi"}, _context())


# ---------------------------------------------------------------------------
# SendGrid
# ---------------------------------------------------------------------------


class TestSendGridEmailSender:
    def _sender(self, api_key="SG.test-key"):
        return SendGridEmailSender(api_key=api_key, from_email="noreply@leadrelay.io")

    @pytest.mark.asyncio
    async def test_success(self):
        response = MagicMock(status_code=202, headers={"X-Message-Id": "sg-123"})
        with patch("sendgrid.SendGridAPIClient") as client_cls:
            client_cls.return_value.send.return_value = response
            result = await self._sender().send(
                {"to": "jane@example.com", "subject": "Booking confirmed", "content": "See you at 9"},
                _context(),
            )

        assert result["provider_message_id"] == "sg-123"
        assert result["provider"] == "sendgrid"
        client_cls.assert_called_once_with(api_key="SG.test-key")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status(self, status):
        with patch("sendgrid.SendGridAPIClient") as client_cls:
            client_cls.return_value.send.return_value = MagicMock(status_code=status, headers={})
            with pytest.raises(TransientDeliveryError):
                await self._sender().send({"to": "jane@example.com", "content": "x"}, _context())

    @pytest.mark.asyncio
    async def test_rejected_status(self):
        with patch("sendgrid.SendGridAPIClient") as client_cls:
            client_cls.return_value.send.return_value = MagicMock(status_code=400, headers={})
            with pytest.raises(PermanentDeliveryError):
                await self._sender().send({"to": "jane@example.com", "content": "x"}, _context())

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, expected",
        [
            (400, PermanentDeliveryError),
            (403, PermanentDeliveryError),
            (429, TransientDeliveryError),
            (502, TransientDeliveryError),
        ],
    )
    async def test_sdk_http_errors_converted(self, status, expected):
        with patch("sendgrid.SendGridAPIClient") as client_cls:
            client_cls.return_value.send.side_effect = SdkHTTPError(status)
            with pytest.raises(expected) as exc_info:
                await self._sender().send({"to": "jane@example.com", "content": "x"}, _context())

        assert exc_info.value.error_code == str(status)
        assert isinstance(exc_info.value.__cause__, SdkHTTPError)

    @pytest.mark.asyncio
    async def test_sdk_error_without_status_propagates(self):
        with patch("sendgrid.SendGridAPIClient") as client_cls:
            client_cls.return_value.send.side_effect = ConnectionResetError("reset")
            with pytest.raises(ConnectionResetError):
                await self._sender().send({"to": "jane@example.com", "content": "x"}, _context())

    @pytest.mark.asyncio
    async def test_invalid_email(self):
        with pytest.raises(InvalidRecipientError):
            await self._sender().send({"to": "not-an-email", "content": "x"}, _context())

    @pytest.mark.asyncio
    async def test_not_configured(self):
        with pytest.raises(CredentialsMissingError):
            await self._sender(api_key="").send({"to": "jane@example.com", "content": "x"}, _context())


# ---------------------------------------------------------------------------
# Campaign fan-out
# ---------------------------------------------------------------------------


class RecordingSender(Sender):
    def __init__(self, failures=None):
        self.failures = failures or {}
        self.sent = []

    async def send(self, payload, context):
        error = self.failures.get(payload["to"])
        if error is not None:
            raise error
        self.sent.append(payload)
        return {"status": "sent"}


LEADS = [
    {"id": "lead-1", "phone": "+15125550101"},
    {"id": "lead-2", "contact_detail": "+15125550102"},
    {"id": "lead-3", "phone": "+15125550103"},
]


class TestCampaignSender:
    @pytest.mark.asyncio
    async def test_sends_every_lead_with_pacing(self):
        channel = RecordingSender()
        sleep = AsyncMock()
        sender = CampaignSender({"whatsapp": channel}, pacing_seconds=0.1, sleep=sleep)

        result = await sender.send(
            {"campaign_id": "c-1", "channel": "whatsapp", "message": "Spring tune-up", "leads": LEADS},
            _context(),
        )

        assert result["sent"] == 3 and result["total"] == 3
        assert [p["to"] for p in channel.sent] == ["+15125550101", "+15125550102", "+15125550103"]
        assert channel.sent[0]["message_id"] == "campaign-c-1-lead-1"
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_partial_failures_recorded_not_raised(self):
        channel = RecordingSender({"+15125550102": InvalidRecipientError("bad")})
        sender = CampaignSender({"whatsapp": channel}, pacing_seconds=0)

        result = await sender.send({"campaign_id": "c-1", "leads": LEADS}, _context())

        assert result["sent"] == 2
        failed = [r for r in result["results"] if not r["success"]]
        assert failed[0]["lead_id"] == "lead-2"

    @pytest.mark.asyncio
    async def test_all_transient_failures_raise(self):
        error = TransientDeliveryError("503")
        channel = RecordingSender({lead.get("phone") or lead.get("contact_detail"): error for lead in LEADS})
        sender = CampaignSender({"whatsapp": channel}, pacing_seconds=0)

        with pytest.raises(TransientDeliveryError):
            await sender.send({"campaign_id": "c-1", "leads": LEADS}, _context())

    @pytest.mark.asyncio
    async def test_all_permanent_failures_complete(self):
        error = InvalidRecipientError("bad")
        channel = RecordingSender({lead.get("phone") or lead.get("contact_detail"): error for lead in LEADS})
        sender = CampaignSender({"whatsapp": channel}, pacing_seconds=0)

        result = await sender.send({"campaign_id": "c-1", "leads": LEADS}, _context())
        assert result["sent"] == 0

    @pytest.mark.asyncio
    async def test_lead_without_contact_skipped(self):
        channel = RecordingSender()
        sender = CampaignSender({"whatsapp": channel}, pacing_seconds=0)
        result = await sender.send({"leads": [{"id": "lead-x"}] + LEADS[:1]}, _context())
        assert result["sent"] == 1
        assert result["results"][0] == {"lead_id": "lead-x", "success": False, "error": "no contact detail"}

    @pytest.mark.asyncio
    async def test_progress_reported(self):
        progress = AsyncMock()
        sender = CampaignSender({"whatsapp": RecordingSender()}, pacing_seconds=0)
        await sender.send({"leads": LEADS}, _context(report_progress=progress))

        assert progress.await_count == 3
        progress.assert_awaited_with({"processed": 3, "total": 3})

    @pytest.mark.asyncio
    async def test_unknown_channel(self):
        sender = CampaignSender({"whatsapp": RecordingSender()})
        with pytest.raises(PermanentDeliveryError):
            await sender.send({"channel": "fax", "leads": LEADS}, _context())

    @pytest.mark.asyncio
    async def test_provider_exception_does_not_abort_campaign(self):
        leads = [
            {"id": "lead-bad", "email": "bad@x.io"},
            {"id": "lead-a", "email": "a@x.io"},
            {"id": "lead-b", "email": "b@x.io"},
        ]
        channel = RecordingSender({"bad@x.io": SdkHTTPError(400)})
        sender = CampaignSender({"email": channel}, pacing_seconds=0)

        result = await sender.send({"campaign_id": "c-2", "channel": "email", "leads": leads}, _context())

        assert [p["to"] for p in channel.sent] == ["a@x.io", "b@x.io"]
        assert result["sent"] == 2
        assert result["results"][0]["lead_id"] == "lead-bad"
        assert result["results"][0]["success"] is False

    @pytest.mark.asyncio
    async def test_unclassified_errors_count_as_transient(self):
        channel = RecordingSender({
            "+15125550101": SdkHTTPError(503),
            "+15125550102": RuntimeError("socket closed"),
            "+15125550103": SdkHTTPError(502),
        })
        sender = CampaignSender({"whatsapp": channel}, pacing_seconds=0)

        with pytest.raises(TransientDeliveryError):
            await sender.send({"campaign_id": "c-3", "leads": LEADS}, _context())
