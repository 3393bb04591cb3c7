"""Unit tests for the auto-payment flow.

The pricing self-call and the facilitator are served by an
``httpx.MockTransport`` so no network is touched.
"""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from gateway.services.auto_payment import AutoPayer
from gateway.services.debt_ledger import USERS_COLLECTION
from gateway.services.payment_signature import (
    PaymentRequirements,
    TransferAuthorization,
    decode_payment_header,
    encode_payment_required,
    recover_authorization_signer,
)
from gateway.services.pricing import build_requirements
from gateway.services.settlement import FacilitatorClient

from test_auth_service import WALLET, authorize_request

FACILITATOR_URL = "http://facilitator.test"


class FakeUpstream:
    """Serves ``GET /v1/debt`` and ``POST /settle``."""

    def __init__(self, requirements: PaymentRequirements, settle_status: int = 200, settle_body=None):
        self.requirements = requirements
        self.settle_status = settle_status
        self.settle_body = settle_body if settle_body is not None else {
            "success": True,
            "transaction": "0xsettled",
            "network": requirements.network,
        }
        self.debt_status = 402
        self.debt_requests: list[httpx.Request] = []
        self.settle_requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/debt":
            self.debt_requests.append(request)
            header = encode_payment_required([self.requirements.to_wire()], str(request.url), "Payment required")
            return httpx.Response(self.debt_status, headers={"payment-required": header}, json={})
        if request.url.path == "/settle":
            self.settle_requests.append(json.loads(request.content))
            return httpx.Response(self.settle_status, json=self.settle_body)
        return httpx.Response(404)


def make_payer(auth_service, ledger, upstream) -> AutoPayer:
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    facilitator = FacilitatorClient(FACILITATOR_URL, timeout=5, http_client=http)
    return AutoPayer(auth_service, ledger, facilitator, base_url="http://test", timeout=5, http_client=http)


@pytest.fixture
async def user_id(auth_service, mock_db):
    """A user owing 12.00 with a delegated session key."""
    _, record = await auth_service.authorize(WALLET, authorize_request())
    await mock_db[USERS_COLLECTION].update_one(
        {"walletAddress": WALLET.lower()},
        {"$set": {"currentDebt": "12.00", "paymentThreshold": "10.00"}},
    )
    return record.userId


@pytest.fixture
def requirements(settings):
    return build_requirements(settings, Decimal("12.00"))


class TestAutoPay:
    async def test_settles_and_clears_debt(self, auth_service, ledger, user_id, requirements):
        upstream = FakeUpstream(requirements)
        payer = make_payer(auth_service, ledger, upstream)

        result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert result.success
        assert result.settlement_reference == "0xsettled"
        status = await ledger.get_debt(WALLET)
        assert format(status.current_debt, "f") == "0.00"
        assert len(upstream.settle_requests) == 1

    async def test_self_call_names_the_wallet(self, auth_service, ledger, user_id, requirements):
        upstream = FakeUpstream(requirements)
        payer = make_payer(auth_service, ledger, upstream)

        await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        probe = decode_payment_header(upstream.debt_requests[0].headers["payment-signature"])
        assert probe.claimed_payer == WALLET.lower()

    async def test_authorization_signed_by_session_key(
        self, auth_service, ledger, user_id, requirements, session_account
    ):
        upstream = FakeUpstream(requirements)
        payer = make_payer(auth_service, ledger, upstream)

        await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        body = upstream.settle_requests[0]
        assert body["x402Version"] == 2
        assert body["paymentRequirements"]["amount"] == "12000000"

        payload = body["paymentPayload"]["payload"]
        authorization = TransferAuthorization.model_validate(payload["authorization"])
        # The smart account pays; the session key signs on its behalf
        assert authorization.from_address == "0x2222222222222222222222222222222222222222"
        assert authorization.value == "12000000"
        signer = recover_authorization_signer(authorization, payload["signature"], requirements)
        assert signer == session_account.address

    async def test_zero_amount_short_circuits(self, auth_service, ledger, user_id, settings):
        upstream = FakeUpstream(build_requirements(settings, Decimal(0)))
        payer = make_payer(auth_service, ledger, upstream)

        result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert result.success
        assert result.settlement_reference is None
        assert upstream.settle_requests == []

    async def test_no_session_key(self, auth_service, ledger, requirements):
        upstream = FakeUpstream(requirements)
        payer = make_payer(auth_service, ledger, upstream)

        result = await payer.auto_pay("unknown-user", WALLET.lower(), Decimal("12.00"))

        assert not result.success
        assert result.reason == "no delegated signer"
        assert upstream.settle_requests == []

    async def test_pricing_call_not_402(self, auth_service, ledger, user_id, requirements):
        upstream = FakeUpstream(requirements)
        upstream.debt_status = 200
        payer = make_payer(auth_service, ledger, upstream)

        result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert not result.success
        assert result.reason == "Failed to fetch payment requirements"

    @pytest.mark.parametrize(
        "status_code,body",
        [
            (200, {"success": False, "errorReason": "insufficient_funds"}),
            (500, {"error": "boom"}),
            (200, {"unexpected": "shape"}),
        ],
    )
    async def test_settlement_failure_leaves_debt(
        self, auth_service, ledger, user_id, requirements, status_code, body
    ):
        upstream = FakeUpstream(requirements, settle_status=status_code, settle_body=body)
        payer = make_payer(auth_service, ledger, upstream)

        result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert not result.success
        assert result.reason
        status = await ledger.get_debt(WALLET)
        assert status.current_debt == Decimal("12.00")

    async def test_non_integer_amount_fails(self, auth_service, ledger, user_id, requirements):
        upstream = FakeUpstream(requirements.model_copy(update={"amount": "12.5"}))
        payer = make_payer(auth_service, ledger, upstream)

        result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert not result.success
        assert result.reason == "Invalid payment amount"
        assert upstream.settle_requests == []

    async def test_settlement_timeout(self, auth_service, ledger, user_id, requirements):
        upstream = FakeUpstream(requirements)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/settle":
                raise httpx.ReadTimeout("slow facilitator", request=request)
            return upstream(request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        payer = AutoPayer(
            auth_service,
            ledger,
            FacilitatorClient(FACILITATOR_URL, timeout=1, http_client=http),
            base_url="http://test",
            http_client=http,
        )

        result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert not result.success
        assert "timed out" in result.reason

    async def test_ledger_failure_after_settlement_still_succeeds(
        self, auth_service, ledger, user_id, requirements
    ):
        upstream = FakeUpstream(requirements)
        payer = make_payer(auth_service, ledger, upstream)

        with patch.object(ledger, "record_payment", AsyncMock(side_effect=RuntimeError("db down"))):
            result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert result.success
        assert result.settlement_reference == "0xsettled"


class RecordingFacilitator(FacilitatorClient):
    """Facilitator client that remembers the timeout of each settle call."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.timeouts: list[float | None] = []

    async def settle(self, payment_payload, requirements, timeout=None):
        self.timeouts.append(timeout)
        return await super().settle(payment_payload, requirements, timeout=timeout)


class TestSharedDeadline:
    def make_slow_payer(self, auth_service, ledger, upstream, delay: float, budget: float):
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/debt":
                await asyncio.sleep(delay)
            return upstream(request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        facilitator = RecordingFacilitator(FACILITATOR_URL, timeout=budget, http_client=http)
        payer = AutoPayer(auth_service, ledger, facilitator, base_url="http://test", timeout=budget, http_client=http)
        return payer, facilitator

    async def test_settlement_gets_what_pricing_left(self, auth_service, ledger, user_id, requirements):
        upstream = FakeUpstream(requirements)
        payer, facilitator = self.make_slow_payer(auth_service, ledger, upstream, delay=0.3, budget=2.0)

        result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert result.success
        (timeout,) = facilitator.timeouts
        assert 0 < timeout <= 1.7

    async def test_budget_spent_before_settlement(self, auth_service, ledger, user_id, requirements):
        upstream = FakeUpstream(requirements)
        payer, facilitator = self.make_slow_payer(auth_service, ledger, upstream, delay=0.3, budget=0.2)

        result = await payer.auto_pay(user_id, WALLET.lower(), Decimal("12.00"))

        assert not result.success
        assert "timed out" in result.reason
        assert facilitator.timeouts == []
        assert upstream.settle_requests == []
        status = await ledger.get_debt(WALLET)
        assert status.current_debt == Decimal("12.00")
