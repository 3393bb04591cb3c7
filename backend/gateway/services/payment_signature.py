"""x402 payment header codec and EIP-712 authorization helpers.

Payment headers are base64-encoded JSON. The signed authorization is either
an EIP-3009 ``TransferWithAuthorization`` over the USDC contract domain or a
Permit2 ``PermitWitnessTransferFrom`` over the canonical Permit2 contract.
All amounts and timestamps are carried as decimal strings.
"""

import base64
import binascii
import json
import logging
import secrets
import time
from typing import Any

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from gateway.api.exceptions import InvalidSignatureError

logger = logging.getLogger(__name__)

X402_VERSION = 2

# Accept authorizations backdated this far to absorb clock skew
VALID_AFTER_SKEW_SECONDS = 600

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}

# Canonical Permit2 deployment, same address on every EVM chain
PERMIT2_ADDRESS = "0x000000000022D473030F116dDEE9F6B43aC78BA3"

PERMIT_WITNESS_TRANSFER_FROM_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "PermitWitnessTransferFrom": [
        {"name": "permitted", "type": "TokenPermissions"},
        {"name": "spender", "type": "address"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
        {"name": "witness", "type": "Witness"},
    ],
    "TokenPermissions": [
        {"name": "token", "type": "address"},
        {"name": "amount", "type": "uint256"},
    ],
    "Witness": [
        {"name": "payTo", "type": "address"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


class PaymentRequirements(BaseModel):
    """One accepted way to pay for a resource."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    scheme: str = "exact"
    network: str
    amount: str
    asset: str
    pay_to: str = Field(alias="payTo")
    max_timeout_seconds: int = Field(default=300, alias="maxTimeoutSeconds")
    extra: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TransferAuthorization(BaseModel):
    """EIP-3009 authorization fields."""

    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(alias="from")
    to: str
    value: str
    valid_after: str = Field(alias="validAfter")
    valid_before: str = Field(alias="validBefore")
    nonce: str

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


class TokenPermissions(BaseModel):
    token: str
    amount: str


class Permit2Witness(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pay_to: str = Field(alias="payTo")
    nonce: str


class Permit2Authorization(BaseModel):
    """Permit2 witness transfer fields, plus the signing owner."""

    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(alias="from")
    permitted: TokenPermissions
    spender: str
    nonce: str
    deadline: str
    witness: Permit2Witness

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class PaymentPayload(BaseModel):
    """Decoded ``payment-signature`` header."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    accepted: dict[str, Any] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @property
    def claimed_payer(self) -> str | None:
        """Payer named in the authorization, lowercased, without verification."""
        for key in ("authorization", "permit2Authorization"):
            authorization = self.payload.get(key)
            if isinstance(authorization, dict) and isinstance(authorization.get("from"), str):
                return authorization["from"].lower()
        return None


def _b64encode_json(data: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(data, separators=(",", ":")).encode()).decode()


def _b64decode_json(value: str) -> dict[str, Any]:
    try:
        decoded = json.loads(base64.b64decode(value, validate=True))
    except (binascii.Error, ValueError) as e:
        raise InvalidSignatureError(f"Header is not base64-encoded JSON: {e}") from e
    if not isinstance(decoded, dict):
        raise InvalidSignatureError("Header JSON must be an object")
    return decoded


def encode_payment_header(payload: PaymentPayload) -> str:
    return _b64encode_json(payload.to_wire())


def decode_payment_header(header: str) -> PaymentPayload:
    """Decode a ``payment-signature`` header.

    Raises:
        InvalidSignatureError: Header is not base64 JSON of the expected shape.
    """
    try:
        return PaymentPayload.model_validate(_b64decode_json(header))
    except PydanticValidationError as e:
        raise InvalidSignatureError(f"Malformed payment payload: {e}") from e


def encode_payment_required(
    accepts: list[dict[str, Any]],
    resource: str,
    error: str,
) -> str:
    """Build the base64 ``payment-required`` header value."""
    return _b64encode_json({
        "x402Version": X402_VERSION,
        "error": error,
        "resource": {"url": resource, "mimeType": "application/json"},
        "accepts": accepts,
    })


def decode_payment_required(header: str) -> list[PaymentRequirements]:
    """Parse the ``accepts`` list out of a ``payment-required`` header."""
    data = _b64decode_json(header)
    try:
        return [PaymentRequirements.model_validate(item) for item in data.get("accepts") or []]
    except PydanticValidationError as e:
        raise InvalidSignatureError(f"Malformed payment requirements: {e}") from e


def chain_id_from_network(network: str) -> int:
    """``eip155:84532`` → ``84532``."""
    namespace, _, reference = network.partition(":")
    if namespace != "eip155" or not reference.isdigit():
        raise InvalidSignatureError(f"Unsupported network: {network}")
    return int(reference)


def build_transfer_authorization(
    payer: str,
    requirements: PaymentRequirements,
    now: int | None = None,
) -> TransferAuthorization:
    """Fresh single-use authorization for ``requirements``."""
    now = int(time.time()) if now is None else now
    return TransferAuthorization(
        from_address=payer,
        to=requirements.pay_to,
        value=requirements.amount,
        valid_after=str(now - VALID_AFTER_SKEW_SECONDS),
        valid_before=str(now + requirements.max_timeout_seconds),
        nonce="0x" + secrets.token_hex(32),
    )


def _bytes32(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def transfer_typed_data(
    authorization: TransferAuthorization,
    requirements: PaymentRequirements,
) -> dict[str, Any]:
    """Full EIP-712 message for ``authorization`` under the asset's domain."""
    return {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": requirements.extra.get("name", "USDC"),
            "version": requirements.extra.get("version", "2"),
            "chainId": chain_id_from_network(requirements.network),
            "verifyingContract": requirements.asset,
        },
        "message": {
            "from": authorization.from_address,
            "to": authorization.to,
            "value": int(authorization.value),
            "validAfter": int(authorization.valid_after),
            "validBefore": int(authorization.valid_before),
            "nonce": _bytes32(authorization.nonce),
        },
    }


def sign_transfer_authorization(
    private_key: str,
    authorization: TransferAuthorization,
    requirements: PaymentRequirements,
) -> str:
    """Sign ``authorization`` and return the 0x-prefixed signature."""
    signable = encode_typed_data(full_message=transfer_typed_data(authorization, requirements))
    signed = Account.sign_message(signable, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_authorization_signer(
    authorization: TransferAuthorization,
    signature: str,
    requirements: PaymentRequirements,
) -> str:
    """Address that produced ``signature`` over ``authorization``.

    Raises:
        InvalidSignatureError: Fields or signature cannot be decoded.
    """
    try:
        signable = encode_typed_data(full_message=transfer_typed_data(authorization, requirements))
        return Account.recover_message(signable, signature=signature)
    except InvalidSignatureError:
        raise
    except Exception as e:
        raise InvalidSignatureError(f"Cannot recover authorization signer: {e}") from e


def permit2_typed_data(
    authorization: Permit2Authorization,
    requirements: PaymentRequirements,
) -> dict[str, Any]:
    """Full EIP-712 message for a Permit2 witness transfer."""
    return {
        "types": PERMIT_WITNESS_TRANSFER_FROM_TYPES,
        "primaryType": "PermitWitnessTransferFrom",
        "domain": {
            "name": "Permit2",
            "chainId": chain_id_from_network(requirements.network),
            "verifyingContract": PERMIT2_ADDRESS,
        },
        "message": {
            "permitted": {
                "token": authorization.permitted.token,
                "amount": int(authorization.permitted.amount),
            },
            "spender": authorization.spender,
            "nonce": int(authorization.nonce),
            "deadline": int(authorization.deadline),
            "witness": {
                "payTo": authorization.witness.pay_to,
                "nonce": _bytes32(authorization.witness.nonce),
            },
        },
    }


def recover_permit2_signer(
    authorization: Permit2Authorization,
    signature: str,
    requirements: PaymentRequirements,
) -> str:
    """Address that produced ``signature`` over a Permit2 authorization.

    Raises:
        InvalidSignatureError: Fields or signature cannot be decoded.
    """
    try:
        signable = encode_typed_data(full_message=permit2_typed_data(authorization, requirements))
        return Account.recover_message(signable, signature=signature)
    except InvalidSignatureError:
        raise
    except Exception as e:
        raise InvalidSignatureError(f"Cannot recover Permit2 signer: {e}") from e


def verify_payment_payload(payment: PaymentPayload) -> str:
    """Verify a decoded payment payload and return the lowercased payer.

    The signature must recover to the ``from`` address of the authorization.
    EIP-3009 authorizations are checked under the domain of the requirement
    the payer accepted, Permit2 ones under the Permit2 contract domain on
    the accepted network.

    Raises:
        InvalidSignatureError: Missing fields or signer mismatch.
    """
    signature = payment.payload.get("signature")
    eip3009_data = payment.payload.get("authorization")
    permit2_data = payment.payload.get("permit2Authorization")
    if not isinstance(signature, str) or not (isinstance(eip3009_data, dict) or isinstance(permit2_data, dict)):
        raise InvalidSignatureError("Payment payload lacks authorization or signature")
    if not payment.accepted:
        raise InvalidSignatureError("Payment payload lacks accepted requirements")

    try:
        requirements = PaymentRequirements.model_validate(payment.accepted)
        if isinstance(eip3009_data, dict):
            authorization = TransferAuthorization.model_validate(eip3009_data)
            signer = recover_authorization_signer(authorization, signature, requirements)
        else:
            authorization = Permit2Authorization.model_validate(permit2_data)
            signer = recover_permit2_signer(authorization, signature, requirements)
    except PydanticValidationError as e:
        raise InvalidSignatureError(f"Malformed authorization: {e}") from e

    if signer.lower() != authorization.from_address.lower():
        raise InvalidSignatureError("Authorization signature does not match payer")
    return signer.lower()


def recover_message_signer(message: str, signature: str) -> str:
    """Recover the EIP-191 ``personal_sign`` signer of ``message``.

    Raises:
        InvalidSignatureError: Signature is malformed.
    """
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        raise InvalidSignatureError(f"Cannot recover message signer: {e}") from e
