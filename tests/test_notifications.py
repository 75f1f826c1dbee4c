"""Tests for notification templates, the SMS gateway client and the dispatcher."""

import httpx
import pytest

from caldost.logging import redact_contact
from caldost.service.notifications import (
    Channel,
    EmailService,
    Message,
    NotificationDispatcher,
    SmsService,
    Template,
    render,
)


def _gateway(handler):
    return SmsService(
        api_url="https://sms.example.org/bulkV2",
        api_key="gateway-key",
        sender_id="CALDST",
        transport=httpx.MockTransport(handler),
    )


class TestRender:
    def test_admin_otp_subject_and_code(self):
        message = render(Template.ADMIN_LOGIN_OTP, {"otp": "123456", "expires_in_seconds": 300})
        assert message.subject == "CALDOST Admin Login Verification Code"
        assert "123456" in message.text
        assert "5 minutes" in message.text
        assert "123456" in message.html

    def test_registered_includes_link(self):
        message = render(
            Template.COMPLAINT_REGISTERED,
            {"complaint_number": "EDU-2026-0001", "access_link": "https://x/complaint/1?token=t"},
        )
        assert "EDU-2026-0001" in message.subject
        assert "https://x/complaint/1?token=t" in message.text

    def test_closed_mentions_status_and_note(self):
        message = render(
            Template.COMPLAINT_CLOSED,
            {"complaint_number": "HLT-2026-0001", "status": "RESOLVED", "final_note": "Doctor posted"},
        )
        assert message.subject == "Complaint HLT-2026-0001 resolved"
        assert "Doctor posted" in message.text

    def test_admin_notes_are_escaped_in_html_only(self):
        note = "<script>alert(1)</script> & more"
        updated = render(
            Template.COMPLAINT_UPDATED,
            {"complaint_number": "EDU-2026-0001", "status": "IN_PROGRESS", "note": note},
        )
        closed = render(
            Template.COMPLAINT_CLOSED,
            {"complaint_number": "EDU-2026-<b>", "status": "CLOSED", "final_note": note},
        )
        for message in (updated, closed):
            assert "<script>" not in message.html
            assert "&lt;script&gt;alert(1)&lt;/script&gt; &amp; more" in message.html
            assert note in message.text
        assert "EDU-2026-&lt;b&gt;" in closed.html

    def test_registered_link_is_attribute_safe(self):
        message = render(
            Template.COMPLAINT_REGISTERED,
            {"complaint_number": "EDU-2026-0001", "access_link": 'https://x/c/1?token=t&x="><'},
        )
        assert 'href="https://x/c/1?token=t&amp;x=&quot;&gt;&lt;"' in message.html


class TestSmsService:
    def test_normalize_number(self):
        assert SmsService.normalize_number("+91 98765-43210") == "9876543210"
        assert SmsService.normalize_number("9876543210") == "9876543210"

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_logs_and_succeeds(self):
        sent = await SmsService().send("9876543210", Message("s", "hello", "<p>hello</p>"))
        assert sent is True

    @pytest.mark.asyncio
    async def test_otp_uses_otp_route(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(dict(request.url.params))
            return httpx.Response(200, json={"return": True, "request_id": "r1"})

        sent = await _gateway(handler).send(
            "+919876543210", Message("s", "code 123456", ""), otp="123456"
        )
        assert sent is True
        assert seen["route"] == "otp"
        assert seen["variables_values"] == "123456"
        assert seen["numbers"] == "9876543210"
        assert seen["authorization"] == "gateway-key"

    @pytest.mark.asyncio
    async def test_plain_message_uses_quick_route(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(dict(request.url.params))
            return httpx.Response(200, json={"return": True})

        await _gateway(handler).send("9876543210", Message("s", "Complaint updated", ""))
        assert seen["route"] == "q"
        assert seen["message"] == "Complaint updated"

    @pytest.mark.asyncio
    async def test_gateway_rejection_is_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"return": False, "message": "invalid key"})

        assert await _gateway(handler).send("9876543210", Message("s", "t", "")) is False

    @pytest.mark.asyncio
    async def test_http_error_is_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        assert await _gateway(handler).send("9876543210", Message("s", "t", "")) is False


class FailingEmail(EmailService):
    def send(self, to_email, message):
        return False


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_notify_delivers_in_background(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(dict(request.url.params))
            return httpx.Response(200, json={"return": True})

        dispatcher = NotificationDispatcher(EmailService(), _gateway(handler))
        dispatcher.notify(
            Channel.SMS,
            "9876543210",
            Template.COMPLAINANT_LOGIN_OTP,
            {"otp": "654321", "expires_in_seconds": 300},
        )
        await dispatcher.drain()
        assert calls[0]["route"] == "otp"
        assert calls[0]["variables_values"] == "654321"
        assert not dispatcher.dead_letters

    @pytest.mark.asyncio
    async def test_failed_delivery_is_dead_lettered(self):
        dispatcher = NotificationDispatcher(FailingEmail(), SmsService())
        dispatcher.notify(
            Channel.EMAIL,
            "someone@example.org",
            Template.COMPLAINT_UPDATED,
            {"complaint_number": "EDU-2026-0001", "status": "IN_PROGRESS"},
        )
        await dispatcher.drain()
        assert len(dispatcher.dead_letters) == 1
        letter = dispatcher.dead_letters[0]
        assert letter.channel is Channel.EMAIL
        assert letter.template is Template.COMPLAINT_UPDATED

    @pytest.mark.asyncio
    async def test_render_error_is_dead_lettered(self):
        dispatcher = NotificationDispatcher(EmailService(), SmsService())
        ok = await dispatcher.deliver(
            Channel.EMAIL, "someone@example.org", Template.COMPLAINT_REGISTERED, {}
        )
        assert ok is False
        assert len(dispatcher.dead_letters) == 1

    def test_notify_without_loop_is_dead_lettered(self):
        dispatcher = NotificationDispatcher(EmailService(), SmsService())
        dispatcher.notify(
            Channel.SMS, "9876543210", Template.ADMIN_LOGIN_OTP, {"otp": "1", "expires_in_seconds": 60}
        )
        assert dispatcher.dead_letters[0].reason == "no running event loop"

    def test_missing_contact_is_ignored(self):
        dispatcher = NotificationDispatcher(EmailService(), SmsService())
        dispatcher.notify(Channel.EMAIL, None, Template.ADMIN_LOGIN_OTP, {})
        assert not dispatcher.dead_letters

    def test_dead_letter_queue_is_bounded(self):
        dispatcher = NotificationDispatcher(EmailService(), SmsService(), dead_letter_limit=2)
        for _ in range(5):
            dispatcher.notify(Channel.SMS, "9876543210", Template.ADMIN_LOGIN_OTP, {})
        assert len(dispatcher.dead_letters) == 2


def test_redact_contact():
    assert redact_contact("9876543210") == "***3210"
    assert redact_contact("asha@example.org") == "as***@example.org"
    assert redact_contact("12") == "***"
