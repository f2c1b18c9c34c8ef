"""
Request authentication for state-changing endpoints.

Every mutating request names its `sender` and carries an EIP-191 personal-sign
signature of the request line and exact JSON body in the `X-Signature`
header. The recovered signer must equal `sender`, `issued_at` must be recent,
and a signature is accepted only once.
"""
import time
from typing import Dict

from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi import HTTPException, Request

from vault.config import settings
from vault.logging import log

SIGNATURE_HEADER = "X-Signature"

# Accepted signatures -> issued_at, pruned once they fall out of the age window
used_signatures: Dict[str, int] = {}


def signing_message(method: str, path: str, body: bytes) -> str:
    """Text a client signs for a request."""
    return f"{method.upper()} {path}\n{body.decode('utf-8')}"


def _prune(oldest: float) -> None:
    for signature in [sig for sig, issued_at in used_signatures.items() if issued_at < oldest]:
        del used_signatures[signature]


def _reject(request: Request, detail: str) -> HTTPException:
    log.warning(f"{request.method} {request.url.path} unauthenticated: {detail}")
    return HTTPException(status_code=403, detail=detail)


async def verify_sender(request: Request, sender: str, issued_at: int) -> str:
    """Return `sender` once the request signature proves it; raise 403 otherwise."""
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise _reject(request, f"Missing {SIGNATURE_HEADER} header")

    now = time.time()
    max_age = settings.signature_max_age_seconds
    if abs(now - issued_at) > max_age:
        raise _reject(request, "Request signature expired")
    _prune(now - max_age)

    key = signature.lower().removeprefix("0x")
    if key in used_signatures:
        raise _reject(request, "Request signature already used")

    body = await request.body()
    message = encode_defunct(text=signing_message(request.method, request.url.path, body))
    try:
        signer = Account.recover_message(message, signature=signature)
    except Exception as e:
        raise _reject(request, f"Malformed request signature: {e}")

    if signer != sender:
        raise _reject(request, f"Signature does not match sender {sender}")

    used_signatures[key] = issued_at
    return signer
