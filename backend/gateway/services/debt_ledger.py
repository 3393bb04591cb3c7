"""Debt ledger backed by MongoDB.

Tracks per-wallet accrued cost, lifetime spend and payment threshold, plus
the usage and payment records behind them. Monetary values are Decimal
dollars stored as fixed-point strings.

Updates to a user's balances are compare-and-set against the values that
were read, so concurrent writers retry instead of losing an increment.
The per-wallet ``lock()`` lets callers hold a read-then-pay sequence
exclusive within the process.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pymongo import ReturnDocument

from gateway.db.mongo import get_database
from gateway.services.pricing import CostBreakdown

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
USAGE_COLLECTION = "usage_records"
PAYMENTS_COLLECTION = "payments"

DEFAULT_PAYMENT_THRESHOLD = Decimal("0.5")
MAX_UPDATE_ATTEMPTS = 5


class LedgerConflictError(Exception):
    """Raised when a balance update keeps losing to concurrent writers."""

    def __init__(self, wallet_address: str):
        self.wallet_address = wallet_address
        super().__init__(f"Could not update balances for {wallet_address[:10]} after {MAX_UPDATE_ATTEMPTS} attempts")


@dataclass(frozen=True)
class DebtStatus:
    """Snapshot of one user's balances."""

    user_id: str
    wallet_address: str
    current_debt: Decimal
    total_spent: Decimal
    payment_threshold: Decimal

    @property
    def below_threshold(self) -> bool:
        return self.current_debt < self.payment_threshold


@dataclass
class _WalletLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


def _fmt(value: Decimal) -> str:
    return format(value, "f")


def _to_status(doc: dict) -> DebtStatus:
    """Convert MongoDB document to DebtStatus."""
    return DebtStatus(
        user_id=str(doc["_id"]),
        wallet_address=doc["walletAddress"],
        current_debt=Decimal(doc["currentDebt"]),
        total_spent=Decimal(doc["totalSpent"]),
        payment_threshold=Decimal(doc["paymentThreshold"]),
    )


class DebtLedger:
    """Accessor for the debt store.

    Args:
        default_threshold: Threshold assigned to newly created users.
    """

    def __init__(self, default_threshold: Decimal = DEFAULT_PAYMENT_THRESHOLD):
        self._default_threshold = default_threshold
        self._locks: dict[str, _WalletLock] = {}

    @asynccontextmanager
    async def lock(self, wallet_address: str) -> AsyncIterator[None]:
        """Process-local lock serializing debt decisions for one wallet.

        The entry is dropped once no task holds or waits on it.
        """
        key = wallet_address.lower()
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _WalletLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    async def get_or_create_user(self, wallet_address: str) -> dict[str, Any]:
        """Fetch the user document, creating it with zero balances if needed."""
        db = await get_database()
        wallet = wallet_address.lower()
        now = datetime.now(UTC)

        doc = await db[USERS_COLLECTION].find_one_and_update(
            {"walletAddress": wallet},
            {
                "$setOnInsert": {
                    "walletAddress": wallet,
                    "currentDebt": "0",
                    "totalSpent": "0",
                    "paymentThreshold": _fmt(self._default_threshold),
                    "createdAt": now,
                    "updatedAt": now,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc

    async def get_debt(self, wallet_address: str) -> DebtStatus:
        """Current debt and threshold for ``wallet_address``."""
        doc = await self.get_or_create_user(wallet_address)
        status = _to_status(doc)
        logger.debug(
            f"Debt check for {status.wallet_address[:10]}: "
            f"debt={status.current_debt} threshold={status.payment_threshold}"
        )
        return status

    async def _update_balances(
        self,
        wallet_address: str,
        debt_delta: Decimal | Callable[[DebtStatus], Decimal],
        spent_delta: Decimal,
    ) -> tuple[DebtStatus, DebtStatus]:
        """Apply balance deltas with compare-and-set.

        ``debt_delta`` may be a callable computing the delta from the
        freshly read status. Returns the (before, after) statuses.
        """
        db = await get_database()
        users = db[USERS_COLLECTION]

        for _ in range(MAX_UPDATE_ATTEMPTS):
            doc = await self.get_or_create_user(wallet_address)
            before = _to_status(doc)
            delta = debt_delta(before) if callable(debt_delta) else debt_delta
            new_debt = max(before.current_debt + delta, Decimal(0))
            new_spent = before.total_spent + spent_delta

            result = await users.update_one(
                {
                    "_id": doc["_id"],
                    "currentDebt": doc["currentDebt"],
                    "totalSpent": doc["totalSpent"],
                },
                {
                    "$set": {
                        "currentDebt": _fmt(new_debt),
                        "totalSpent": _fmt(new_spent),
                        "updatedAt": datetime.now(UTC),
                    }
                },
            )
            if result.matched_count == 1:
                after = DebtStatus(
                    user_id=before.user_id,
                    wallet_address=before.wallet_address,
                    current_debt=new_debt,
                    total_spent=new_spent,
                    payment_threshold=before.payment_threshold,
                )
                return before, after

            logger.debug(f"Balance update raced for {wallet_address[:10]}, retrying")

        raise LedgerConflictError(wallet_address)

    async def record_usage(
        self,
        wallet_address: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        cost: CostBreakdown,
    ) -> DebtStatus:
        """Insert an unpaid usage record and add its cost to the debt."""
        db = await get_database()
        _, after = await self._update_balances(wallet_address, cost.total_cost, cost.total_cost)

        await db[USAGE_COLLECTION].insert_one({
            "userId": after.user_id,
            "walletAddress": after.wallet_address,
            "model": model,
            "promptTokens": prompt_tokens,
            "completionTokens": completion_tokens,
            "baseCost": _fmt(cost.base_cost),
            "commission": _fmt(cost.commission),
            "totalCost": _fmt(cost.total_cost),
            "isPaid": False,
            "paymentId": None,
            "createdAt": datetime.now(UTC),
        })

        logger.info(
            f"Usage recorded for {after.wallet_address[:10]}",
            extra={
                "model": model,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_cost": _fmt(cost.total_cost),
            },
        )
        return after

    async def record_payment(
        self,
        wallet_address: str,
        amount: Decimal | str,
        settlement_reference: str | None = None,
    ) -> DebtStatus:
        """Commit a settled payment.

        Debt is reduced by the smaller of ``amount`` and the current debt,
        and every unpaid usage record is linked to the payment.
        """
        db = await get_database()
        payment_amount = Decimal(str(amount).replace("$", ""))

        before, after = await self._update_balances(
            wallet_address,
            lambda status: -min(payment_amount, status.current_debt),
            Decimal(0),
        )

        result = await db[PAYMENTS_COLLECTION].insert_one({
            "userId": after.user_id,
            "walletAddress": after.wallet_address,
            "amount": _fmt(payment_amount),
            "settlementReference": settlement_reference,
            "status": "SETTLED",
            "settledAt": datetime.now(UTC),
        })

        marked = await db[USAGE_COLLECTION].update_many(
            {"userId": after.user_id, "isPaid": False},
            {"$set": {"isPaid": True, "paymentId": result.inserted_id}},
        )

        logger.info(
            f"Payment processed for {after.wallet_address[:10]}",
            extra={
                "amount": _fmt(payment_amount),
                "settlement_reference": settlement_reference,
                "records_marked_paid": marked.modified_count,
                "debt_reduced": _fmt(before.current_debt - after.current_debt),
            },
        )
        return after
