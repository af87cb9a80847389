"""Integration tests for escrow transaction endpoints."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

from escrow_ledger.db.base import utcnow
from escrow_ledger.services.errors import PaymentAuthorizationFailed, PaymentGatewayUnavailable

from tests.factories import OUTSIDER, PAYER, RECEIVER, RESOLVER, auth_headers


def _create_body(**overrides) -> dict:
    body = {
        "subscription_id": "sub-netflix-1",
        "payer_id": PAYER,
        "receiver_id": RECEIVER,
        "amount": "3.99",
        "release_date": (utcnow() + timedelta(days=30)).isoformat(),
    }
    body.update(overrides)
    return body


async def _create(client: AsyncClient, **overrides) -> dict:
    resp = await client.post(
        "/api/escrow/transactions", json=_create_body(**overrides), headers=auth_headers(PAYER)
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestCreateTransaction:
    async def test_unauthenticated(self, client: AsyncClient):
        resp = await client.post("/api/escrow/transactions", json=_create_body())
        assert resp.status_code in (401, 403)

    async def test_invalid_token(self, client: AsyncClient):
        resp = await client.post(
            "/api/escrow/transactions",
            json=_create_body(),
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401

    async def test_creates_held_transaction(self, client: AsyncClient):
        data = await _create(client)

        assert data["status"] == "held"
        assert data["amount"] == "3.99"
        assert data["escrow_fee"] == "0.20"
        assert data["currency"] == "USD"
        assert data["payment_authorization_id"].startswith("sandbox-")

    async def test_only_payer_can_create(self, client: AsyncClient):
        resp = await client.post(
            "/api/escrow/transactions", json=_create_body(), headers=auth_headers(RECEIVER)
        )
        assert resp.status_code == 403

    async def test_declined_payment(self, client: AsyncClient):
        with patch(
            "escrow_ledger.services.escrow.PaymentGateway.authorize",
            new_callable=AsyncMock,
            side_effect=PaymentAuthorizationFailed("insufficient_funds"),
        ):
            resp = await client.post(
                "/api/escrow/transactions", json=_create_body(), headers=auth_headers(PAYER)
            )

        assert resp.status_code == 402
        assert resp.json()["error"] == "payment_authorization_failed"

        listing = await client.get("/api/escrow/transactions", headers=auth_headers(PAYER))
        assert listing.json() == []

    async def test_gateway_down(self, client: AsyncClient):
        with patch(
            "escrow_ledger.services.escrow.PaymentGateway.authorize",
            new_callable=AsyncMock,
            side_effect=PaymentGatewayUnavailable("Payment gateway is unreachable"),
        ):
            resp = await client.post(
                "/api/escrow/transactions", json=_create_body(), headers=auth_headers(PAYER)
            )
        assert resp.status_code == 503

    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": "0"},
            {"amount": "-1.00"},
            {"amount": "1.999"},
            {"release_date": "not-a-date"},
        ],
    )
    async def test_request_validation(self, client: AsyncClient, overrides):
        resp = await client.post(
            "/api/escrow/transactions",
            json=_create_body(**overrides),
            headers=auth_headers(PAYER),
        )
        assert resp.status_code == 422

    async def test_release_date_in_the_past(self, client: AsyncClient):
        resp = await client.post(
            "/api/escrow/transactions",
            json=_create_body(release_date=(utcnow() - timedelta(days=1)).isoformat()),
            headers=auth_headers(PAYER),
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_failed"

    async def test_idempotency_key_replay(self, client: AsyncClient):
        headers = {**auth_headers(PAYER), "Idempotency-Key": "checkout-9"}
        first = await client.post("/api/escrow/transactions", json=_create_body(), headers=headers)
        second = await client.post("/api/escrow/transactions", json=_create_body(), headers=headers)

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["id"] == first.json()["id"]


class TestTransactionReads:
    async def test_detail_for_payer(self, client: AsyncClient):
        tx = await _create(client)

        resp = await client.get(f"/api/escrow/transactions/{tx['id']}", headers=auth_headers(PAYER))

        assert resp.status_code == 200
        data = resp.json()
        assert data["transaction"]["id"] == tx["id"]
        assert data["disputes"] == []
        assert set(data["available_actions"]) == {"release", "flag_disputed"}

    async def test_detail_forbidden_for_outsider(self, client: AsyncClient):
        tx = await _create(client)
        resp = await client.get(
            f"/api/escrow/transactions/{tx['id']}", headers=auth_headers(OUTSIDER)
        )
        assert resp.status_code == 403

    async def test_detail_not_found(self, client: AsyncClient):
        resp = await client.get("/api/escrow/transactions/999", headers=auth_headers(PAYER))
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_list_filters(self, client: AsyncClient):
        await _create(client)
        await _create(client, subscription_id="sub-spotify-2")

        mine = await client.get("/api/escrow/transactions", headers=auth_headers(PAYER))
        assert len(mine.json()) == 2

        as_payer = await client.get(
            "/api/escrow/transactions", params={"role": "payer"}, headers=auth_headers(RECEIVER)
        )
        assert as_payer.json() == []

        released = await client.get(
            "/api/escrow/transactions", params={"status": "released"}, headers=auth_headers(PAYER)
        )
        assert released.json() == []

        bad = await client.get(
            "/api/escrow/transactions", params={"status": "frozen"}, headers=auth_headers(PAYER)
        )
        assert bad.status_code == 422


class TestReleaseAndRefund:
    async def test_payer_releases(self, client: AsyncClient):
        tx = await _create(client)

        resp = await client.post(
            f"/api/escrow/transactions/{tx['id']}/release", headers=auth_headers(PAYER)
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "released"

    async def test_receiver_cannot_release(self, client: AsyncClient):
        tx = await _create(client)

        resp = await client.post(
            f"/api/escrow/transactions/{tx['id']}/release", headers=auth_headers(RECEIVER)
        )

        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_state_transition"

    async def test_receiver_refunds(self, client: AsyncClient):
        tx = await _create(client)

        resp = await client.post(
            f"/api/escrow/transactions/{tx['id']}/refund", headers=auth_headers(RECEIVER)
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "refunded"

    async def test_outsider_cannot_refund(self, client: AsyncClient):
        tx = await _create(client)
        resp = await client.post(
            f"/api/escrow/transactions/{tx['id']}/refund", headers=auth_headers(OUTSIDER)
        )
        assert resp.status_code == 403

    async def test_second_settlement_conflicts(self, client: AsyncClient):
        tx = await _create(client)
        await client.post(f"/api/escrow/transactions/{tx['id']}/release", headers=auth_headers(PAYER))

        resp = await client.post(
            f"/api/escrow/transactions/{tx['id']}/refund", headers=auth_headers(RESOLVER)
        )

        assert resp.status_code == 409


class TestAggregates:
    async def test_summary(self, client: AsyncClient):
        await _create(client)
        await _create(client, amount="12.50")

        resp = await client.get("/api/escrow/summary", headers=auth_headers(RESOLVER))

        assert resp.status_code == 200
        data = resp.json()
        assert data["by_status"]["held"] == {"count": 2, "amount": "16.49", "fee": "0.83"}
        assert data["total_count"] == 2
        assert data["total_amount"] == "16.49"

    async def test_subscription_summary(self, client: AsyncClient):
        await _create(client)
        await _create(client, subscription_id="sub-spotify-2", amount="5.00")

        resp = await client.get(
            "/api/escrow/subscriptions/sub-spotify-2/summary", headers=auth_headers(PAYER)
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["subscription_id"] == "sub-spotify-2"
        assert data["total_amount"] == "5.00"

    async def test_analytics(self, client: AsyncClient):
        tx = await _create(client)
        await client.post(f"/api/escrow/transactions/{tx['id']}/release", headers=auth_headers(PAYER))

        resp = await client.get("/api/escrow/analytics", headers=auth_headers(PAYER))

        assert resp.status_code == 200
        data = resp.json()
        assert data["settled_transactions"] == 1
        assert data["success_rate"] == 1.0
        assert data["held_amount"] == "0.00"
