"""Tests for the Khalti gateway adapter."""

import json

import httpx
import pytest

from conftest import khalti_lookup_handler, run
from errors import GatewayError, GatewayUnavailableError, ValidationError
from schemas.payments import InitiateRequest, SettlementStatus
from services.payment_gateway import KhaltiGateway


def initiate_request(**overrides) -> InitiateRequest:
    fields = {
        "return_url": "https://shop.example.com/payment/return",
        "website_url": "https://shop.example.com",
        "amount": 1000,
        "purchase_order_id": "order-123",
        "purchase_order_name": "Handwoven Dhaka Shawl",
    }
    fields.update(overrides)
    return InitiateRequest(**fields)


class CountingHandler:
    """MockTransport handler that replays a scripted list of outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_gateway(settings, handler) -> KhaltiGateway:
    return KhaltiGateway(settings, transport=httpx.MockTransport(handler))


class TestValidation:
    def test_amount_below_minimum_rejected(self, settings):
        handler = CountingHandler(httpx.Response(200, json={}))
        gateway = make_gateway(settings, handler)

        with pytest.raises(ValidationError) as exc:
            run(gateway.initiate(initiate_request(amount=999)))

        assert exc.value.message == "Amount should be greater than Rs. 10, that is 1000 paisa."
        assert handler.calls == 0

    def test_missing_field_named(self, settings):
        gateway = make_gateway(settings, CountingHandler(httpx.Response(200, json={})))

        with pytest.raises(ValidationError) as exc:
            run(gateway.initiate(initiate_request(purchase_order_name=None)))

        assert exc.value.message == "Missing required field: purchase_order_name"


class TestInitiate:
    def test_minimum_amount_forwarded(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "pidx": "bZQLD9wRVWo4CdESSfuSsB",
                "payment_url": "https://test-pay.khalti.com/?pidx=bZQLD9wRVWo4CdESSfuSsB",
                "expires_at": "2026-10-19T13:00:00+05:45",
                "expires_in": 1800,
            })

        result = run(make_gateway(settings, handler).initiate(initiate_request(amount=1000)))

        assert result.pidx == "bZQLD9wRVWo4CdESSfuSsB"
        assert seen["path"] == "/api/v2/epayment/initiate/"
        assert seen["auth"] == "Key test-secret-key"
        assert seen["body"]["amount"] == 1000

    def test_gateway_error_passed_through(self, settings):
        body = {"amount": ["Amount should be greater than Rs. 10, that is 1000 paisa."], "error_key": "validation_error"}
        handler = CountingHandler(httpx.Response(400, json=body))

        with pytest.raises(GatewayError) as exc:
            run(make_gateway(settings, handler).initiate(initiate_request()))

        assert exc.value.status_code == 400
        assert exc.value.body == body

    def test_server_error_not_retried(self, settings):
        handler = CountingHandler(httpx.Response(503, json={"detail": "down"}))

        with pytest.raises(GatewayError):
            run(make_gateway(settings, handler).initiate(initiate_request()))

        assert handler.calls == 1

    def test_unreachable_not_retried(self, settings):
        handler = CountingHandler(httpx.ConnectError("connection refused"))

        with pytest.raises(GatewayUnavailableError):
            run(make_gateway(settings, handler).initiate(initiate_request()))

        assert handler.calls == 1


class TestLookup:
    def test_completed_authorizes_order(self, settings):
        result = run(make_gateway(settings, khalti_lookup_handler("Completed")).lookup("pidx-1"))

        assert result.status == SettlementStatus.COMPLETED
        assert result.authorizes_order

    @pytest.mark.parametrize("status", ["Pending", "Initiated", "Expired", "User canceled", "Refunded"])
    def test_other_statuses_do_not_authorize(self, settings, status):
        result = run(make_gateway(settings, khalti_lookup_handler(status)).lookup("pidx-1"))

        assert not result.authorizes_order

    def test_retries_server_errors_then_succeeds(self, settings):
        ok = httpx.Response(200, json={"pidx": "pidx-1", "total_amount": 1000, "status": "Completed"})
        handler = CountingHandler(httpx.Response(502), httpx.Response(503), ok)

        result = run(make_gateway(settings, handler).lookup("pidx-1"))

        assert result.authorizes_order
        assert handler.calls == 3

    def test_retries_timeouts_until_exhausted(self, settings):
        handler = CountingHandler(httpx.ReadTimeout("timed out"))

        with pytest.raises(GatewayUnavailableError) as exc:
            run(make_gateway(settings, handler).lookup("pidx-1"))

        assert exc.value.operation == "lookup"
        assert handler.calls == settings.gateway_max_retries + 1

    def test_client_error_not_retried(self, settings):
        handler = CountingHandler(httpx.Response(404, json={"detail": "Not found.", "error_key": "validation_error"}))

        with pytest.raises(GatewayError) as exc:
            run(make_gateway(settings, handler).lookup("unknown"))

        assert exc.value.status_code == 404
        assert exc.value.body["detail"] == "Not found."
        assert handler.calls == 1

    def test_missing_pidx_rejected(self, settings):
        with pytest.raises(ValidationError):
            run(make_gateway(settings, CountingHandler(httpx.Response(200))).lookup(""))
