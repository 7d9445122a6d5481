"""
Request signing primitives.

RequestSigner implements AWS Signature Version 4 as required by the
Selling Partner API: canonical request -> string to sign -> derived key
chain (date -> region -> service -> "aws4_request") -> signature. It is
pure; the caller passes the timestamp so output is reproducible.

Also provides the HMAC-SHA256 primitive used to sign and verify
marketplace webhook payloads.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import quote

from sellerlink.types import OutboundRequest, SignedRequest

ALGORITHM = "AWS4-HMAC-SHA256"
TERMINATOR = "aws4_request"


@dataclass(frozen=True)
class AwsCredentials:
    """IAM credentials used to derive SigV4 signing keys."""

    access_key_id: str
    secret_access_key: str
    session_token: str | None = None

    def __repr__(self) -> str:
        return f"AwsCredentials(access_key_id={self.access_key_id!r}, secret_access_key='***')"


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def _uri_encode(value: str, safe: str = "-_.~") -> str:
    return quote(value, safe=safe)


def canonical_query_string(params: list[tuple[str, str]]) -> str:
    """Encode and sort query parameters by name, then value."""
    encoded = sorted((_uri_encode(k), _uri_encode(v)) for k, v in params)
    return "&".join(f"{k}={v}" for k, v in encoded)


class RequestSigner:
    """AWS SigV4 signer for one region and service."""

    def __init__(self, region: str, service: str = "execute-api") -> None:
        self.region = region
        self.service = service

    def credential_scope(self, date_stamp: str) -> str:
        return f"{date_stamp}/{self.region}/{self.service}/{TERMINATOR}"

    def signing_key(self, secret_access_key: str, date_stamp: str) -> bytes:
        """Derive the signing key through the date/region/service chain."""
        k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
        k_region = _hmac(k_date, self.region)
        k_service = _hmac(k_region, self.service)
        return _hmac(k_service, TERMINATOR)

    @staticmethod
    def canonical_headers(headers: dict[str, str]) -> tuple[str, str]:
        """Return (canonical header block, signed header list)."""
        normalized: dict[str, str] = {}
        for name, value in headers.items():
            normalized[name.strip().lower()] = " ".join(str(value).split())
        names = sorted(normalized)
        block = "".join(f"{name}:{normalized[name]}\n" for name in names)
        return block, ";".join(names)

    def canonical_request(
        self,
        request: OutboundRequest,
        headers: dict[str, str],
        payload_hash: str,
    ) -> tuple[str, str]:
        """Build the canonical request; returns (canonical request, signed headers)."""
        header_block, signed_headers = self.canonical_headers(headers)
        canonical = "\n".join(
            [
                request.method.upper(),
                _uri_encode(request.path, safe="/-_.~"),
                canonical_query_string(request.params),
                header_block,
                signed_headers,
                payload_hash,
            ]
        )
        return canonical, signed_headers

    def sign(
        self,
        request: OutboundRequest,
        credentials: AwsCredentials,
        timestamp: datetime,
    ) -> SignedRequest:
        """Sign a request.

        Args:
            request: The resolved request. Its headers are all signed.
            credentials: IAM credentials.
            timestamp: Signing time; naive datetimes are taken as UTC.

        Returns:
            SignedRequest with Authorization, x-amz-date and
            x-amz-content-sha256 headers and the canonical query in the URL.
        """
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        timestamp = timestamp.astimezone(timezone.utc)
        amz_date = timestamp.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = amz_date[:8]

        headers = {k: v for k, v in request.headers.items() if k.lower() != "authorization"}
        headers["host"] = request.host
        headers["x-amz-date"] = amz_date
        if credentials.session_token:
            headers["x-amz-security-token"] = credentials.session_token

        payload_hash = _sha256_hex(request.body)
        canonical, signed_headers = self.canonical_request(request, headers, payload_hash)
        scope = self.credential_scope(date_stamp)
        string_to_sign = "\n".join(
            [ALGORITHM, amz_date, scope, _sha256_hex(canonical.encode("utf-8"))]
        )
        signature = hmac.new(
            self.signing_key(credentials.secret_access_key, date_stamp),
            string_to_sign.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        headers["Authorization"] = (
            f"{ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        headers["x-amz-content-sha256"] = payload_hash

        query = canonical_query_string(request.params)
        url = f"{request.url}?{query}" if query else request.url
        return SignedRequest(
            method=request.method.upper(),
            url=url,
            headers=headers,
            body=request.body,
            signature=signature,
        )


def compute_webhook_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of a webhook payload."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(secret: str, payload: bytes, signature: str) -> bool:
    """Constant-time check of a webhook signature (optional "sha256=" prefix)."""
    candidate = signature.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    expected = compute_webhook_signature(secret, payload)
    return hmac.compare_digest(expected, candidate.lower())
