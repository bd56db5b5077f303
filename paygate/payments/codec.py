"""
Encoding and decoding of x402 header values
"""

import json
import base64
import binascii
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError

from paygate.payments.errors import ProofMalformed
from paygate.payments.models import PaymentProof, PaymentRequired
from paygate.payments.networks import SCHEME_STRIPE, SCHEME_TOKEN


class ProofSource(str, Enum):
    """Where a proof was found on the request, in precedence order"""
    PAYMENT_SIGNATURE = "payment-signature"
    X_PAYMENT = "x-payment"
    AUTHORIZATION = "authorization"
    TOKEN_HEADER = "x-payment-token"
    QUERY = "query"
    CARD_INTENT = "x-stripe-payment-intent"


# Sources that may legitimately carry opaque tokens
TOKEN_SOURCES = {ProofSource.AUTHORIZATION, ProofSource.TOKEN_HEADER, ProofSource.QUERY}


def encode_header(data: Dict[str, Any]) -> str:
    """Base64 encode a JSON document for an HTTP header"""
    return base64.b64encode(
        json.dumps(data, separators=(",", ":")).encode("utf-8")
    ).decode("ascii")


def encode_payment_required(payment_required: PaymentRequired) -> str:
    """Encode the 402 body for the PAYMENT-REQUIRED header"""
    return encode_header(payment_required.to_wire())


def encode_proof(proof: PaymentProof) -> str:
    """Encode a proof the way a paying client would send it"""
    return encode_header(proof.to_wire())


def _decode_json(raw: str) -> Optional[Any]:
    """
    Decode a header value trying standard base64, URL-safe base64, then
    raw JSON. Returns None when none of them yields JSON.
    """
    candidates = []
    for decoder in (
        lambda v: base64.b64decode(v, validate=True),
        lambda v: base64.urlsafe_b64decode(v + "=" * (-len(v) % 4)),
    ):
        try:
            candidates.append(decoder(raw))
        except (binascii.Error, ValueError):
            continue
    candidates.append(raw.encode("utf-8"))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except (UnicodeDecodeError, ValueError):
            continue
    return None


def parse_proof(raw: str, source: ProofSource) -> PaymentProof:
    """
    Turn a raw header/query value into a PaymentProof.

    Structured payloads need a non-empty "scheme". Values from token-carrying
    sources that are not structured become opaque token proofs; anything else
    that does not decode is malformed.

    Raises:
        ProofMalformed: the value cannot be interpreted as a proof
    """
    raw = raw.strip()
    if not raw:
        raise ProofMalformed("empty payment proof")

    if source == ProofSource.CARD_INTENT:
        return PaymentProof(scheme=SCHEME_STRIPE, payment_intent_id=raw, payload=raw)

    decoded = _decode_json(raw)
    if isinstance(decoded, dict) and decoded.get("scheme"):
        try:
            return PaymentProof.model_validate(decoded)
        except ValidationError as e:
            if source in TOKEN_SOURCES:
                return PaymentProof(scheme=SCHEME_TOKEN, payload=raw)
            raise ProofMalformed(f"invalid payment payload: {e.error_count()} errors")

    if source in TOKEN_SOURCES:
        return PaymentProof(scheme=SCHEME_TOKEN, payload=raw)
    raise ProofMalformed("payment proof is not valid base64 or JSON")
