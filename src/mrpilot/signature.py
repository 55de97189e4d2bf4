from __future__ import annotations

import hashlib
import hmac


SIGNATURE_PREFIX = "sha256="


class AuthenticationError(RuntimeError):
    """Inbound request failed webhook token or signature verification."""


def expected_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(raw_body: bytes, header: str | None, secret: str) -> bool:
    """Check a webhook token header against the shared secret.

    The header may carry the secret itself (GitLab's ``X-Gitlab-Token``) or
    ``sha256=<hex>`` computed over the exact request bytes. The body must not
    be re-serialized before this call.
    """
    if not header or not secret:
        return False

    if header.startswith(SIGNATURE_PREFIX):
        provided = header[len(SIGNATURE_PREFIX) :].strip().lower().encode("utf-8")
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        expected_bytes = expected.encode("ascii")
        # compare_digest only hides timing for equal-length inputs.
        if len(provided) != len(expected_bytes):
            return False
        return hmac.compare_digest(provided, expected_bytes)

    return hmac.compare_digest(header.encode("utf-8"), secret.encode("utf-8"))


def require_valid_signature(raw_body: bytes, header: str | None, secret: str) -> None:
    if not verify_signature(raw_body, header, secret):
        raise AuthenticationError("Webhook token or signature did not verify")
