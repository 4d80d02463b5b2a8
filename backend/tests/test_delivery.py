"""
Tests for notice delivery and the shared rate limiter.

Key tests:
1. ResendMailer returns the provider message id on success
2. Timeouts, 429 and 5xx are transient; other 4xx are permanent
3. Missing API key or recipient fail permanently without a request
4. RateLimiter allows max_calls per window per key
"""
import json

import httpx
import pytest

from productguard.services.delivery import ResendMailer, DeliveryError
from productguard.services.delivery.mailer import RESEND_API_URL
from productguard.services.rate_limit import RateLimiter


def _mailer(handler, api_key="re_test"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ResendMailer(api_key=api_key, from_email="dmca@productguard.test", client=client)


# =============================================================================
# RESEND MAILER
# =============================================================================

class TestResendMailer:
    """HTTP outcomes mapped onto delivery results."""

    def test_success_returns_message_id(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email_123"})

        message_id = _mailer(handler).send("agent@host.example", "DMCA Notice", "Body", reply_to="me@creator.example")

        assert message_id == "email_123"
        assert seen["url"] == RESEND_API_URL
        assert seen["auth"] == "Bearer re_test"
        assert seen["payload"] == {
            "from": "dmca@productguard.test",
            "to": ["agent@host.example"],
            "subject": "DMCA Notice",
            "text": "Body",
            "reply_to": "me@creator.example",
        }

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_retryable_statuses_are_transient(self, status_code):
        mailer = _mailer(lambda request: httpx.Response(status_code, json={}))

        with pytest.raises(DeliveryError) as exc:
            mailer.send("agent@host.example", "Subject", "Body")

        assert exc.value.transient

    @pytest.mark.parametrize("status_code", [400, 403, 422])
    def test_rejections_are_permanent(self, status_code):
        mailer = _mailer(lambda request: httpx.Response(status_code, text="invalid `to` field"))

        with pytest.raises(DeliveryError) as exc:
            mailer.send("agent@host.example", "Subject", "Body")

        assert not exc.value.transient
        assert str(status_code) in exc.value.message

    def test_unreadable_success_body_is_transient(self):
        mailer = _mailer(lambda request: httpx.Response(200, text="<html>OK</html>"))

        with pytest.raises(DeliveryError) as exc:
            mailer.send("agent@host.example", "Subject", "Body")

        assert exc.value.transient
        assert "unreadable" in exc.value.message

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(DeliveryError) as exc:
            _mailer(handler).send("agent@host.example", "Subject", "Body")

        assert exc.value.transient

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DeliveryError) as exc:
            _mailer(handler).send("agent@host.example", "Subject", "Body")

        assert exc.value.transient

    def test_missing_api_key_is_permanent(self):
        calls = []
        mailer = _mailer(lambda request: calls.append(request), api_key="")

        with pytest.raises(DeliveryError) as exc:
            mailer.send("agent@host.example", "Subject", "Body")

        assert not exc.value.transient
        assert calls == []

    def test_missing_recipient_is_permanent(self):
        mailer = _mailer(lambda request: httpx.Response(200, json={"id": "x"}))

        with pytest.raises(DeliveryError) as exc:
            mailer.send("", "Subject", "Body")

        assert not exc.value.transient

    def test_close_releases_client(self):
        mailer = _mailer(lambda request: httpx.Response(200, json={"id": "x"}))
        mailer.close()
        assert mailer._client is None


# =============================================================================
# RATE LIMITER
# =============================================================================

class TestRateLimiter:
    """Fixed window per key."""

    def test_window(self):
        now = [1000.0]
        limiter = RateLimiter(max_calls=1, window_seconds=300, clock=lambda: now[0])

        assert limiter.allow("submit-bulk:user-1")
        assert not limiter.allow("submit-bulk:user-1")
        assert limiter.allow("submit-bulk:user-2")
        assert limiter.retry_after("submit-bulk:user-1") == 300

        now[0] += 301
        assert limiter.allow("submit-bulk:user-1")

    def test_reset(self):
        limiter = RateLimiter(max_calls=2, window_seconds=60)
        assert limiter.allow("k")
        assert limiter.allow("k")
        assert not limiter.allow("k")

        limiter.reset()

        assert limiter.allow("k")
        assert limiter.retry_after("unknown") == 0.0
