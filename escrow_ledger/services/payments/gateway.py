"""Async HTTP client for the external payment-authorization gateway."""

import logging
import uuid
from decimal import Decimal

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from escrow_ledger.core.config import settings
from escrow_ledger.services.errors import PaymentAuthorizationFailed, PaymentGatewayUnavailable

logger = logging.getLogger(__name__)

# Gateway answers these when the funding source itself refused the charge
_DECLINE_STATUS_CODES = (402, 422)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class PaymentGateway:
    """Thin async wrapper around the gateway's authorization API."""

    def __init__(self) -> None:
        self.base_url = settings.payment_gateway_url.rstrip("/")
        self.api_key = settings.payment_gateway_api_key

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        h: dict[str, str] = {"Accept": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            h["Idempotency-Key"] = idempotency_key
        return h

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.5, min=1, max=10),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute HTTP request with tenacity retry on transient failures."""
        req_timeout = kwargs.pop("timeout", 15)
        async with httpx.AsyncClient(timeout=req_timeout) as client:
            resp = await client.request(method, url, **kwargs)
        resp.raise_for_status()
        return resp

    async def authorize(
        self,
        *,
        payer_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str | None = None,
        description: str | None = None,
    ) -> str:
        """Authorize a charge on the payer's funding source.

        Returns the gateway authorization id. Raises PaymentAuthorizationFailed
        when the charge is declined and PaymentGatewayUnavailable when the
        gateway cannot be reached after retries.
        """
        if not settings.payment_gateway_configured:
            if settings.payment_sandbox:
                logger.warning(
                    "Payment gateway not configured, sandbox-approving %s %s for payer %s",
                    amount, currency, payer_id,
                )
                return f"sandbox-{uuid.uuid4().hex}"
            raise PaymentGatewayUnavailable("Payment gateway is not configured")

        try:
            resp = await self._request(
                "POST",
                f"{self.base_url}/authorizations",
                json={
                    "payer_id": payer_id,
                    "amount": str(amount),
                    "currency": currency,
                    "description": description,
                },
                headers=self._headers(idempotency_key),
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in _DECLINE_STATUS_CODES:
                reason = _decline_reason(exc.response)
                logger.info("Payment declined for payer %s: %s", payer_id, reason)
                raise PaymentAuthorizationFailed(reason) from exc
            logger.exception("Payment gateway error for payer %s", payer_id)
            raise PaymentGatewayUnavailable("Payment gateway returned an error") from exc
        except httpx.HTTPError as exc:
            logger.exception("Payment gateway unreachable for payer %s", payer_id)
            raise PaymentGatewayUnavailable("Payment gateway is unreachable") from exc

        data = resp.json()
        if data.get("status") != "approved":
            reason = data.get("decline_reason") or "declined"
            logger.info("Payment declined for payer %s: %s", payer_id, reason)
            raise PaymentAuthorizationFailed(reason)
        return data["id"]


def _decline_reason(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return "declined"
    return data.get("decline_reason") or data.get("detail") or "declined"
