"""Automatic debt settlement with a delegated session key.

When a session-token caller reaches their payment threshold, the access gate
asks this service to pay the outstanding debt on their behalf:

1. Fetch the priced requirement from the gateway's own ``/v1/debt`` route
   (an HTTP 402 carrying a ``payment-required`` header).
2. Load the caller's session key.
3. Sign an EIP-3009 transfer authorization from the smart account.
4. Settle it through the facilitator.
5. Commit the payment to the debt ledger.

The pricing self-call and the settlement share one time budget. Each call
makes at most one settlement attempt and never raises; failures come back as ``AutoPaymentResult(success=False, reason=...)``.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal

import httpx

from gateway.api.exceptions import InvalidSignatureError, SettlementError
from gateway.services.auth_service import AuthService
from gateway.services.debt_ledger import DebtLedger
from gateway.services.payment_signature import (
    PaymentPayload,
    PaymentRequirements,
    build_transfer_authorization,
    decode_payment_required,
    encode_payment_header,
    sign_transfer_authorization,
)
from gateway.services.pricing import DEBT_ROUTE
from gateway.services.settlement import FacilitatorClient

logger = logging.getLogger(__name__)

PAYMENT_SIGNATURE_HEADER = "payment-signature"
PAYMENT_REQUIRED_HEADER = "payment-required"


@dataclass(frozen=True)
class AutoPaymentResult:
    success: bool
    settlement_reference: str | None = None
    reason: str | None = None


class AutoPayer:
    """Pays a caller's debt using their delegated signer.

    Args:
        auth: Source of session key records.
        ledger: Debt ledger the payment is committed to.
        facilitator: Settlement endpoint client.
        base_url: Base URL of this gateway, for the pricing self-call.
        timeout: Budget for the pricing self-call and the settlement
            together, in seconds.
        http_client: Shared client for the self-call (tests inject one
            bound to the ASGI app).
    """

    def __init__(
        self,
        auth: AuthService,
        ledger: DebtLedger,
        facilitator: FacilitatorClient,
        base_url: str,
        timeout: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._auth = auth
        self._ledger = ledger
        self._facilitator = facilitator
        self._pricing_url = f"{base_url.rstrip('/')}{DEBT_ROUTE}"
        self._timeout = timeout
        self._http = http_client

    async def auto_pay(
        self,
        user_id: str,
        wallet_address: str,
        owed_amount: Decimal,
    ) -> AutoPaymentResult:
        """Settle ``owed_amount`` for ``wallet_address``."""
        wallet_tag = wallet_address[:10]
        logger.info(f"Starting auto-payment for {wallet_tag}", extra={"user_id": user_id, "owed": str(owed_amount)})

        deadline = time.monotonic() + self._timeout
        requirements = await self._fetch_requirements(wallet_address)
        if requirements is None:
            return AutoPaymentResult(success=False, reason="Failed to fetch payment requirements")

        try:
            amount = int(requirements.amount)
        except ValueError:
            logger.error(f"Pricing route quoted a non-integer amount: {requirements.amount!r}")
            return AutoPaymentResult(success=False, reason="Invalid payment amount")
        if amount == 0:
            logger.info(f"Payment amount is zero for {wallet_tag}, nothing to settle")
            return AutoPaymentResult(success=True)

        session_key = await self._auth.get_session_key(user_id)
        if session_key is None:
            logger.warning(f"No session key on record for {wallet_tag}", extra={"user_id": user_id})
            return AutoPaymentResult(success=False, reason="no delegated signer")

        try:
            authorization = build_transfer_authorization(session_key.smartAccountAddress, requirements)
            signature = sign_transfer_authorization(session_key.privateKey, authorization, requirements)
        except (ValueError, InvalidSignatureError) as e:
            logger.error(f"Could not sign payment authorization for {wallet_tag}: {e}")
            return AutoPaymentResult(success=False, reason="Failed to sign payment authorization")

        payment = PaymentPayload(
            accepted=requirements.to_wire(),
            payload={"authorization": authorization.to_wire(), "signature": signature},
        )

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(f"Auto-payment for {wallet_tag} ran out of time before settlement")
            return AutoPaymentResult(success=False, reason="Auto-payment timed out before settlement")

        try:
            settlement = await self._facilitator.settle(payment.to_wire(), requirements, timeout=remaining)
        except SettlementError as e:
            logger.warning(f"Auto-payment settlement failed for {wallet_tag}: {e.reason}")
            return AutoPaymentResult(success=False, reason=e.reason)

        try:
            await self._ledger.record_payment(wallet_address, owed_amount, settlement.transaction)
        except Exception:
            # Funds already moved; reconcile the ledger out of band
            logger.exception(
                f"Settled payment for {wallet_tag} but failed to commit it to the ledger",
                extra={"transaction": settlement.transaction, "amount": str(owed_amount)},
            )

        logger.info(f"Auto-payment settled for {wallet_tag}", extra={"transaction": settlement.transaction})
        return AutoPaymentResult(success=True, settlement_reference=settlement.transaction)

    async def _fetch_requirements(self, wallet_address: str) -> PaymentRequirements | None:
        """Ask the pricing route what paying off ``wallet_address`` costs.

        The unsigned header only names the wallet so the route can price
        it; it never passes verification, so the route answers 402.
        """
        probe = PaymentPayload(payload={"authorization": {"from": wallet_address}})
        headers = {PAYMENT_SIGNATURE_HEADER: encode_payment_header(probe)}

        try:
            if self._http is not None:
                response = await self._http.get(self._pricing_url, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self._pricing_url, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Pricing self-call failed: {e}")
            return None

        header = response.headers.get(PAYMENT_REQUIRED_HEADER)
        if response.status_code != 402 or not header:
            logger.warning(f"Unexpected pricing response: HTTP {response.status_code}")
            return None

        try:
            accepts = decode_payment_required(header)
        except InvalidSignatureError as e:
            logger.error(f"Failed to parse payment-required header: {e}")
            return None

        if not accepts:
            logger.warning("Pricing response listed no accepted payment options")
            return None
        return accepts[0]
