"""
Tests for EmailClient

Uses httpx.MockTransport in place of the email provider.
"""

import json

import httpx
import pytest

from newsletter.errors import PermanentDeliveryFailure, TransientDeliveryFailure
from newsletter.services.email_client import EmailClient, classify_status
from newsletter.services.monitoring.circuit_breakers import create_email_api_breaker


def make_client(handler, breaker=None, token="server-token"):
    return EmailClient(
        base_url="https://email.example.com/",
        sender="newsletter@example.com",
        authorization_token=token,
        timeout=1.0,
        breaker=breaker or create_email_api_breaker(fail_max=100, reset_timeout=60),
        http_client=httpx.Client(transport=httpx.MockTransport(handler))
    )


def send(client):
    client.send(
        recipient="ada@example.com",
        subject="Issue #1",
        html_body="<p>Hello</p>",
        text_body="Hello"
    )


class TestClassifyStatus:

    @pytest.mark.parametrize("status_code, expected", [
        (200, None),
        (202, None),
        (429, TransientDeliveryFailure),
        (500, TransientDeliveryFailure),
        (503, TransientDeliveryFailure),
        (400, PermanentDeliveryFailure),
        (401, PermanentDeliveryFailure),
        (422, PermanentDeliveryFailure),
    ])
    def test_classification(self, status_code, expected):
        assert classify_status(status_code) is expected


class TestEmailClient:

    def test_posts_email_payload(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"MessageID": "abc"})

        send(make_client(handler))

        [request] = requests
        assert request.method == "POST"
        assert str(request.url) == "https://email.example.com/email"
        assert request.headers["X-Postmark-Server-Token"] == "server-token"
        assert json.loads(request.content) == {
            "From": "newsletter@example.com",
            "To": "ada@example.com",
            "Subject": "Issue #1",
            "HtmlBody": "<p>Hello</p>",
            "TextBody": "Hello",
        }

    def test_no_token_header_without_token(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        send(make_client(handler, token=None))

        assert "X-Postmark-Server-Token" not in requests[0].headers

    def test_server_error_is_transient(self):
        client = make_client(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(TransientDeliveryFailure):
            send(client)

    def test_rate_limit_is_transient(self):
        client = make_client(lambda request: httpx.Response(429))

        with pytest.raises(TransientDeliveryFailure):
            send(client)

    def test_rejection_is_permanent(self):
        client = make_client(lambda request: httpx.Response(422, json={"Message": "Invalid 'To' address"}))

        with pytest.raises(PermanentDeliveryFailure):
            send(client)

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientDeliveryFailure):
            send(make_client(handler))

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientDeliveryFailure):
            send(make_client(handler))


class TestEmailCircuitBreaker:

    def test_open_circuit_fails_fast_as_transient(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client = make_client(handler, breaker=create_email_api_breaker(fail_max=2, reset_timeout=60))

        for _ in range(3):
            with pytest.raises(TransientDeliveryFailure):
                send(client)

        # The third send was rejected without reaching the provider
        assert len(calls) == 2
        assert client.breaker.current_state == "open"

    def test_permanent_rejections_do_not_open_circuit(self):
        breaker = create_email_api_breaker(fail_max=2, reset_timeout=60)
        client = make_client(lambda request: httpx.Response(422), breaker=breaker)

        for _ in range(3):
            with pytest.raises(PermanentDeliveryFailure):
                send(client)

        assert breaker.current_state == "closed"
