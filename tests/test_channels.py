"""Tests for the Twilio and SendGrid adapters and the adapter factory."""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from reachout_engine.channels import OutboundMessage, get_adapter
from reachout_engine.channels.sendgrid import SendGridAdapter, text_to_html
from reachout_engine.channels.twilio import (
    TwilioAdapter,
    format_twilio_error,
    normalize_phone,
    phone_lookup_forms,
)
from reachout_engine.db.services import SettingsService
from reachout_engine.errors import ProviderError


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestPhoneHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("5551234567", "+15551234567"),
            ("(555) 123-4567", "+15551234567"),
            ("15551234567", "+15551234567"),
            ("+44 20 7946 0958", "+442079460958"),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_lookup_forms_cover_local_formats(self):
        forms = phone_lookup_forms("+15551234567")
        assert "+15551234567" in forms
        assert "5551234567" in forms
        assert "(555) 123-4567" in forms
        assert "555-123-4567" in forms

    def test_format_error(self):
        assert format_twilio_error("21610") == "Recipient has opted out"
        assert format_twilio_error("99999") == "Twilio error: 99999"


class TestTwilioAdapter:
    def test_send_posts_form_with_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(201, json={"sid": "SM123", "status": "queued"})

        adapter = TwilioAdapter(
            "AC1", "secret", from_number="+15550001111",
            status_callback_url="https://example.com/webhooks/twilio/status",
            client=mock_client(handler),
        )

        result = adapter.send(OutboundMessage(to="555-123-4567", body="Hi"))

        assert result.provider_id == "SM123"
        assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages.json"
        assert seen["auth"].startswith("Basic ")
        assert seen["form"]["To"] == ["+15551234567"]
        assert seen["form"]["From"] == ["+15550001111"]
        assert seen["form"]["StatusCallback"] == ["https://example.com/webhooks/twilio/status"]

    def test_error_response_raises_provider_error(self):
        def handler(request):
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        adapter = TwilioAdapter("AC1", "secret", from_number="+1555", client=mock_client(handler))

        with pytest.raises(ProviderError) as exc_info:
            adapter.send(OutboundMessage(to="+15551234567", body="Hi"))
        assert exc_info.value.provider_code == "21211"
        assert exc_info.value.message == "Invalid 'To' Phone Number"

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        adapter = TwilioAdapter("AC1", "secret", from_number="+1555", client=mock_client(handler))

        with pytest.raises(ProviderError):
            adapter.send(OutboundMessage(to="+15551234567", body="Hi"))

    def test_success_without_json_body_is_provider_error(self):
        adapter = TwilioAdapter(
            "AC1", "secret", from_number="+1555",
            client=mock_client(lambda r: httpx.Response(201, text="<html>proxy page</html>")),
        )

        with pytest.raises(ProviderError, match="no message sid"):
            adapter.send(OutboundMessage(to="+15551234567", body="Hi"))

    def test_error_with_list_body(self):
        adapter = TwilioAdapter(
            "AC1", "secret", from_number="+1555",
            client=mock_client(lambda r: httpx.Response(400, json=[{"code": 21211}])),
        )

        with pytest.raises(ProviderError) as exc_info:
            adapter.send(OutboundMessage(to="+15551234567", body="Hi"))
        assert exc_info.value.message == "Twilio error"

    def test_requires_sender(self):
        adapter = TwilioAdapter("AC1", "secret", client=mock_client(lambda r: httpx.Response(201)))
        with pytest.raises(ProviderError):
            adapter.send(OutboundMessage(to="+15551234567", body="Hi"))


class TestSendGridAdapter:
    def test_send_reads_message_id_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["payload"] = json.loads(request.content)
            return httpx.Response(202, headers={"X-Message-Id": "abc123"})

        adapter = SendGridAdapter(
            "SG.key", from_email="team@example.com", from_name="Team", client=mock_client(handler)
        )

        result = adapter.send(
            OutboundMessage(to="ada@example.com", body="Line one\nLine <two>", subject="Hello")
        )

        assert result.provider_id == "abc123"
        assert seen["auth"] == "Bearer SG.key"
        payload = seen["payload"]
        assert payload["from"] == {"email": "team@example.com", "name": "Team"}
        assert payload["personalizations"][0]["to"] == [{"email": "ada@example.com"}]
        assert payload["content"][1]["value"] == "Line one<br>Line &lt;two&gt;"

    def test_error_body_is_surfaced(self):
        def handler(request):
            return httpx.Response(403, json={"errors": [{"message": "sender not verified"}]})

        adapter = SendGridAdapter("SG.key", from_email="x@example.com", client=mock_client(handler))

        with pytest.raises(ProviderError) as exc_info:
            adapter.send(OutboundMessage(to="ada@example.com", body="Hi"))
        assert exc_info.value.message == "sender not verified"
        assert exc_info.value.provider_code == "403"

    def test_unexpected_error_body_shapes(self):
        for body in ([{"message": "nope"}], {"errors": "nope"}, {"errors": ["nope"]}):
            adapter = SendGridAdapter(
                "SG.key", from_email="x@example.com",
                client=mock_client(lambda r, body=body: httpx.Response(400, json=body)),
            )
            with pytest.raises(ProviderError) as exc_info:
                adapter.send(OutboundMessage(to="ada@example.com", body="Hi"))
            assert exc_info.value.message == "SendGrid returned HTTP 400"

    def test_missing_message_id(self):
        adapter = SendGridAdapter(
            "SG.key", from_email="x@example.com", client=mock_client(lambda r: httpx.Response(202))
        )
        with pytest.raises(ProviderError):
            adapter.send(OutboundMessage(to="ada@example.com", body="Hi"))

    def test_text_to_html(self):
        assert text_to_html("a & b\nc") == "a &amp; b<br>c"


class TestAdapterFactory:
    def test_unconfigured_providers_raise(self, db_session, settings):
        store = SettingsService(db_session)
        with pytest.raises(ProviderError, match="Twilio is not configured"):
            get_adapter("sms", store, settings)
        with pytest.raises(ProviderError, match="SendGrid is not configured"):
            get_adapter("email", store, settings)

    def test_credentials_read_from_store(self, db_session, settings):
        store = SettingsService(db_session)
        store.set("twilio_account_sid", "AC9")
        store.set("twilio_auth_token", "tok")
        store.set("twilio_phone_number", "+15550009999")
        store.set("sendgrid_api_key", "SG.x")

        sms = get_adapter("sms", store, settings)
        email = get_adapter("email", store, settings)
        try:
            assert isinstance(sms, TwilioAdapter)
            assert sms.from_number == "+15550009999"
            assert isinstance(email, SendGridAdapter)
            assert email.from_name == settings.default_from_name
        finally:
            sms.close()
            email.close()
