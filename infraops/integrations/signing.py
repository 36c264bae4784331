"""AWS Signature Version 4 request signing.

Every function here is pure: the same credentials, request and timestamp always
produce the same signature.  The signer never validates credentials; a bad
key only shows up as a 403 from the remote API.
"""

import hashlib
import hmac
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict

ALGORITHM = "AWS4-HMAC-SHA256"
SCOPE_TERMINATOR = "aws4_request"
SIGNED_HEADER_NAMES = ("content-type", "host", "x-amz-date", "x-amz-target")


def amz_date(timestamp: datetime) -> str:
    """Format a timestamp as ``YYYYMMDDTHHMMSSZ`` (UTC)."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(UTC)
    return timestamp.strftime("%Y%m%dT%H%M%SZ")


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def canonical_headers(headers: dict[str, str]) -> tuple[str, str]:
    """Return (canonical header block, signed header list) for the signed header set.

    Header names are lower-cased and sorted; values are trimmed.  Only the
    headers in SIGNED_HEADER_NAMES take part in the signature.
    """
    lowered = {k.lower(): v.strip() for k, v in headers.items()}
    names = sorted(n for n in lowered if n in SIGNED_HEADER_NAMES)
    block = "".join(f"{n}:{lowered[n]}\n" for n in names)
    return block, ";".join(names)


def canonical_request(method: str, path: str, headers: dict[str, str], payload_hash: str) -> str:
    header_block, signed_headers = canonical_headers(headers)
    # The query string is always empty for JSON-protocol APIs.
    return "\n".join([method.upper(), path, "", header_block, signed_headers, payload_hash])


def credential_scope(date_stamp: str, region: str, service: str) -> str:
    return f"{date_stamp}/{region}/{service}/{SCOPE_TERMINATOR}"


def string_to_sign(request_date: str, scope: str, canonical: str) -> str:
    return "\n".join([ALGORITHM, request_date, scope, sha256_hex(canonical)])


def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """Four-stage HMAC chain: secret -> date -> region -> service -> aws4_request."""
    k_date = _hmac(f"AWS4{secret_key}".encode(), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, SCOPE_TERMINATOR)


class SignedRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    amz_date: str
    payload_hash: str
    signature: str
    authorization: str


class RequestSigner:
    """Signs requests for one (credentials, region, service) combination."""

    def __init__(self, access_key: str, secret_key: str, region: str, service: str) -> None:
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.service = service

    def sign(
        self,
        *,
        method: str,
        path: str,
        headers: dict[str, str],
        payload: str,
        timestamp: datetime,
    ) -> SignedRequest:
        """Compute the signature and Authorization header for a request.

        ``headers`` must contain content-type, host and x-amz-target; the
        x-amz-date header is derived from ``timestamp`` and overrides any value
        passed in.
        """
        request_date = amz_date(timestamp)
        date_stamp = request_date[:8]
        payload_hash = sha256_hex(payload)

        all_headers = {k.lower(): v for k, v in headers.items()}
        all_headers["x-amz-date"] = request_date

        canonical = canonical_request(method, path, all_headers, payload_hash)
        scope = credential_scope(date_stamp, self.region, self.service)
        to_sign = string_to_sign(request_date, scope, canonical)
        key = derive_signing_key(self.secret_key, date_stamp, self.region, self.service)
        signature = hmac.new(key, to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        _, signed_headers = canonical_headers(all_headers)
        authorization = (
            f"{ALGORITHM} Credential={self.access_key}/{scope}, SignedHeaders={signed_headers}, Signature={signature}"
        )
        return SignedRequest(
            amz_date=request_date,
            payload_hash=payload_hash,
            signature=signature,
            authorization=authorization,
        )
