"""Session key authorization endpoint.

- POST /v1/authorize: delegate a session key and receive a session token

The wallet owner signs the raw JSON body (EIP-191 ``personal_sign``) and
sends the signature in ``x-authorization-signature``. The recovered signer
is the wallet the session is bound to.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from gateway.api.dependencies import get_auth_service
from gateway.api.exceptions import InvalidSignatureError
from gateway.api.response import envelope_error, success_response
from gateway.models.auth import AuthorizeRequest, AuthorizeResponse
from gateway.services.auth_service import AuthService
from gateway.services.payment_signature import recover_message_signer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Auth"])

SIGNATURE_HEADER = "x-authorization-signature"


@router.post("/authorize", status_code=201)
async def authorize(
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        return JSONResponse(status_code=400, content=envelope_error(f"Missing {SIGNATURE_HEADER} header"))

    raw = await request.body()
    try:
        wallet_address = recover_message_signer(raw.decode("utf-8"), signature)
    except (InvalidSignatureError, UnicodeDecodeError) as e:
        logger.warning(f"Invalid authorization signature: {e}")
        return JSONResponse(status_code=401, content=envelope_error("Invalid signature"))

    try:
        body = AuthorizeRequest.model_validate_json(raw)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        logger.warning(f"Authorize validation failed: {details}")
        return JSONResponse(status_code=400, content=envelope_error(f"Validation failed: {details}"))

    token, record = await auth_service.authorize(wallet_address, body)
    return success_response(AuthorizeResponse(token=token, sessionKeyId=record.id).model_dump())
