"""Per-request admission decision for metered routes.

A request is admitted when its credential resolves to a wallet whose debt
is below the payment threshold. Session-token callers over the threshold get
one auto-payment attempt; everyone else is quoted a price.

The gate never raises for credential problems: a token or payment header
that fails to verify is treated as absent.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal

from gateway.api.exceptions import InvalidSignatureError
from gateway.config import Settings
from gateway.services.auth_service import AuthService
from gateway.services.auto_payment import AutoPayer
from gateway.services.debt_ledger import DebtLedger, DebtStatus
from gateway.services.payment_signature import (
    PaymentRequirements,
    decode_payment_header,
    verify_payment_payload,
)
from gateway.services.pricing import DEBT_ROUTE, build_requirements, route_price

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Credential material found on an inbound request."""

    route: str
    bearer_token: str | None = None
    payment_header: str | None = None


@dataclass(frozen=True)
class Grant:
    wallet_address: str
    via: Literal["session", "payment"]
    user_id: str | None = None
    session_key_id: str | None = None
    # Account the delegated session key spends from, when one is on file
    smart_account_address: str | None = None


@dataclass(frozen=True)
class Deny:
    reason: str
    requirements: PaymentRequirements
    route: str


AccessDecision = Grant | Deny


@dataclass(frozen=True)
class _Identity:
    wallet_address: str
    via: Literal["session", "payment"]
    user_id: str | None = None
    session_key_id: str | None = None


class AccessGate:
    """Grants, auto-pays or prices each metered request.

    Args:
        auth: Session token verifier.
        ledger: Debt store consulted for every resolved identity.
        auto_payer: Settles debt for session-token callers.
        settings: Source of the payment network, asset and payee.
    """

    def __init__(
        self,
        auth: AuthService,
        ledger: DebtLedger,
        auto_payer: AutoPayer,
        settings: Settings,
    ):
        self._auth = auth
        self._ledger = ledger
        self._auto_payer = auto_payer
        self._settings = settings

    async def evaluate(self, context: RequestContext) -> AccessDecision:
        identity = self._resolve(context)
        if identity is None:
            return await self._deny_unresolved(context)

        wallet_tag = identity.wallet_address[:10]

        # Read-then-pay must not interleave with another request for the
        # same wallet, or both would see the stale debt and both pay.
        async with self._ledger.lock(identity.wallet_address):
            status = await self._ledger.get_debt(identity.wallet_address)
            if status.below_threshold:
                return await self._grant(identity, status)

            if identity.via == "payment":
                logger.info(
                    f"Debt at threshold for {wallet_tag}, payment required",
                    extra={"debt": str(status.current_debt), "threshold": str(status.payment_threshold)},
                )
                return self._deny(context.route, "Payment required: debt threshold reached", status.current_debt)

            logger.info(
                f"Debt at threshold for {wallet_tag}, attempting auto-payment",
                extra={"debt": str(status.current_debt), "threshold": str(status.payment_threshold)},
            )
            result = await self._auto_payer.auto_pay(
                identity.user_id or status.user_id,
                identity.wallet_address,
                status.current_debt,
            )

        if result.success:
            return await self._grant(identity, status)

        logger.warning(f"Auto-payment failed for {wallet_tag}: {result.reason}")
        return self._deny(
            context.route,
            f"Payment required: auto-payment failed ({result.reason})",
            status.current_debt,
        )

    def _resolve(self, context: RequestContext) -> _Identity | None:
        if context.bearer_token:
            claims = self._auth.verify_token(context.bearer_token)
            if claims is not None:
                return _Identity(
                    wallet_address=claims.walletAddress.lower(),
                    via="session",
                    user_id=claims.userId,
                    session_key_id=claims.sessionKeyId,
                )

        if context.payment_header:
            try:
                payer = verify_payment_payload(decode_payment_header(context.payment_header))
            except InvalidSignatureError as e:
                logger.debug(f"Payment header rejected: {e.message}")
                return None
            return _Identity(wallet_address=payer, via="payment")

        return None

    async def _deny_unresolved(self, context: RequestContext) -> Deny:
        """Quote the route price to a caller with no usable credential.

        The debt route is priced at the debt of the wallet the header claims,
        which is how clients (and the auto-payer) learn what they owe.
        """
        debt = None
        if context.route == DEBT_ROUTE and context.payment_header:
            try:
                claimed = decode_payment_header(context.payment_header).claimed_payer
            except InvalidSignatureError:
                claimed = None
            if claimed:
                debt = (await self._ledger.get_debt(claimed)).current_debt

        return self._deny(context.route, "Payment required", debt)

    def _deny(self, route: str, reason: str, debt: Decimal | None) -> Deny:
        price = route_price(route, debt)
        return Deny(reason=reason, requirements=build_requirements(self._settings, price), route=route)

    async def _grant(self, identity: _Identity, status: DebtStatus) -> Grant:
        user_id = identity.user_id or status.user_id
        smart_account = None
        if identity.via == "session":
            session_key = await self._auth.get_session_key(user_id)
            if session_key is not None:
                smart_account = session_key.smartAccountAddress
        return Grant(
            wallet_address=identity.wallet_address,
            via=identity.via,
            user_id=user_id,
            session_key_id=identity.session_key_id,
            smart_account_address=smart_account,
        )
