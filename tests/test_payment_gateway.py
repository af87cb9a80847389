"""Tests for the payment gateway client with the HTTP layer mocked out."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from escrow_ledger.core.config import settings
from escrow_ledger.services.errors import PaymentAuthorizationFailed, PaymentGatewayUnavailable
from escrow_ledger.services.payments.gateway import PaymentGateway, _is_transient

GATEWAY_URL = "https://payments.test/v1"


def _response(status_code: int, payload: dict | None = None) -> httpx.Response:
    request = httpx.Request("POST", f"{GATEWAY_URL}/authorizations")
    return httpx.Response(status_code, json=payload or {}, request=request)


def _status_error(status_code: int, payload: dict | None = None) -> httpx.HTTPStatusError:
    resp = _response(status_code, payload)
    return httpx.HTTPStatusError("gateway error", request=resp.request, response=resp)


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(settings, "payment_gateway_url", GATEWAY_URL)
    monkeypatch.setattr(settings, "payment_gateway_api_key", "sk_test")


async def _authorize(gateway: PaymentGateway) -> str:
    return await gateway.authorize(
        payer_id="user-payer",
        amount=Decimal("4.19"),
        currency="USD",
        idempotency_key="escrow-tx-1",
    )


class TestSandbox:
    async def test_unconfigured_gateway_approves_in_sandbox(self):
        auth_id = await _authorize(PaymentGateway())
        assert auth_id.startswith("sandbox-")

    async def test_unconfigured_gateway_without_sandbox(self, monkeypatch):
        monkeypatch.setattr(settings, "payment_sandbox", False)
        with pytest.raises(PaymentGatewayUnavailable):
            await _authorize(PaymentGateway())


class TestAuthorize:
    async def test_approved(self, configured):
        gateway = PaymentGateway()
        with patch.object(
            PaymentGateway,
            "_request",
            new_callable=AsyncMock,
            return_value=_response(201, {"id": "auth_123", "status": "approved"}),
        ) as mock_request:
            assert await _authorize(gateway) == "auth_123"

        method, url = mock_request.await_args.args
        assert (method, url) == ("POST", f"{GATEWAY_URL}/authorizations")
        kwargs = mock_request.await_args.kwargs
        assert kwargs["json"]["amount"] == "4.19"
        assert kwargs["headers"]["Idempotency-Key"] == "escrow-tx-1"
        assert kwargs["headers"]["Authorization"] == "Bearer sk_test"

    async def test_declined_in_body(self, configured):
        with patch.object(
            PaymentGateway,
            "_request",
            new_callable=AsyncMock,
            return_value=_response(
                200, {"id": "auth_124", "status": "declined", "decline_reason": "card_expired"}
            ),
        ):
            with pytest.raises(PaymentAuthorizationFailed, match="card_expired"):
                await _authorize(PaymentGateway())

    @pytest.mark.parametrize("status_code", [402, 422])
    async def test_declined_status(self, configured, status_code):
        with patch.object(
            PaymentGateway,
            "_request",
            new_callable=AsyncMock,
            side_effect=_status_error(status_code, {"decline_reason": "insufficient_funds"}),
        ):
            with pytest.raises(PaymentAuthorizationFailed, match="insufficient_funds"):
                await _authorize(PaymentGateway())

    async def test_server_error_is_unavailable(self, configured):
        with patch.object(
            PaymentGateway,
            "_request",
            new_callable=AsyncMock,
            side_effect=_status_error(503),
        ):
            with pytest.raises(PaymentGatewayUnavailable):
                await _authorize(PaymentGateway())

    async def test_unreachable(self, configured):
        with patch.object(
            PaymentGateway,
            "_request",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectError("connection refused"),
        ):
            with pytest.raises(PaymentGatewayUnavailable):
                await _authorize(PaymentGateway())


class TestTransientClassification:
    def test_connect_and_timeout_are_retried(self):
        assert _is_transient(httpx.ConnectError("refused"))
        assert _is_transient(httpx.ReadTimeout("slow"))

    def test_server_errors_are_retried(self):
        assert _is_transient(_status_error(502))

    def test_declines_are_not_retried(self):
        assert not _is_transient(_status_error(402))
        assert not _is_transient(ValueError("bad json"))
