"""Session-key authorization and gateway session tokens.

A wallet owner delegates a session key bound to their smart account. The
gateway stores the key (used later to sign auto-payments) and issues an
HS256 JWT naming the wallet, the user and the session key.
"""

import logging
from datetime import UTC, datetime, timedelta

import jwt
from pymongo import ReturnDocument

from gateway.db.mongo import get_database
from gateway.models.auth import AuthorizeRequest, SessionClaims, SessionKeyRecord
from gateway.services.debt_ledger import DebtLedger

logger = logging.getLogger(__name__)

SESSION_KEYS_COLLECTION = "session_keys"
TOKEN_ALGORITHM = "HS256"
TOKEN_LIFETIME = timedelta(days=365)


def _to_session_key(doc: dict) -> SessionKeyRecord:
    """Convert MongoDB document to SessionKeyRecord."""
    return SessionKeyRecord(
        id=str(doc["_id"]),
        userId=doc["userId"],
        smartAccountAddress=doc["smartAccountAddress"],
        privateKey=doc["privateKey"],
        serializedSessionKey=doc["serializedSessionKey"],
        eoaAddress=doc.get("eoaAddress"),
        chainId=doc["chainId"],
        createdAt=doc.get("createdAt"),
    )


class AuthService:
    """Issues and verifies session tokens; stores delegated signers."""

    def __init__(self, ledger: DebtLedger, jwt_secret: str):
        self._ledger = ledger
        self._jwt_secret = jwt_secret

    def issue_token(self, claims: SessionClaims) -> str:
        now = datetime.now(UTC)
        payload = {
            **claims.model_dump(),
            "iat": now,
            "exp": now + TOKEN_LIFETIME,
        }
        return jwt.encode(payload, self._jwt_secret, algorithm=TOKEN_ALGORITHM)

    def verify_token(self, token: str) -> SessionClaims | None:
        """Decode ``token``; None when the signature, expiry or claims are bad."""
        try:
            payload = jwt.decode(
                token,
                self._jwt_secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"require": ["exp"]},
            )
            return SessionClaims.model_validate(payload)
        except jwt.PyJWTError as e:
            logger.debug(f"Token verification failed: {e}")
            return None
        except ValueError as e:
            logger.debug(f"Token claims malformed: {e}")
            return None

    async def authorize(self, wallet_address: str, request: AuthorizeRequest) -> tuple[str, SessionKeyRecord]:
        """Store the session key for ``wallet_address`` and issue a token.

        One session key per user; re-authorizing replaces it.

        Returns:
            The session token and the stored record.
        """
        db = await get_database()
        user = await self._ledger.get_or_create_user(wallet_address)
        user_id = str(user["_id"])
        now = datetime.now(UTC)

        doc = await db[SESSION_KEYS_COLLECTION].find_one_and_update(
            {"userId": user_id},
            {
                "$set": {
                    "smartAccountAddress": request.smartAccountAddress.lower(),
                    "privateKey": request.privateKey,
                    "serializedSessionKey": request.serializedSessionKey,
                    "eoaAddress": request.eoaAddress.lower(),
                    "chainId": request.chainId,
                    "updatedAt": now,
                },
                "$setOnInsert": {"userId": user_id, "createdAt": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        record = _to_session_key(doc)

        token = self.issue_token(SessionClaims(
            userId=user_id,
            sessionKeyId=record.id,
            walletAddress=wallet_address.lower(),
            chainId=request.chainId,
        ))

        logger.info(
            f"Session key authorized for {wallet_address[:10]}",
            extra={"user_id": user_id, "session_key_id": record.id, "chain_id": request.chainId},
        )
        return token, record

    async def get_session_key(self, user_id: str) -> SessionKeyRecord | None:
        db = await get_database()
        doc = await db[SESSION_KEYS_COLLECTION].find_one({"userId": user_id})
        return _to_session_key(doc) if doc is not None else None
