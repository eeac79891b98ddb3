from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.errors import ApiError


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value.strip().isdigit():
            return int(value.strip())
    return None


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


@dataclass
class AuthContext:
    user_id: str
    email: str | None
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    email_claim: str
    ops_token: str

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        issuer = os.environ.get("JWT_ISSUER", "").strip()
        audience = os.environ.get("JWT_AUDIENCE", "").strip()
        shared_secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(os.environ.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            email_claim=os.environ.get("JWT_EMAIL_CLAIM", "email").strip() or "email",
            ops_token=os.environ.get("OPS_API_TOKEN", "").strip(),
        )


def _parse_token_parts(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    parts = token.split(".")
    if len(parts) != 3:
        raise _unauthorized("invalid token format")
    header_raw, payload_raw, signature_raw = parts
    try:
        header_obj = json.loads(_b64url_decode(header_raw))
        payload_obj = json.loads(_b64url_decode(payload_raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(header_obj, dict) or not isinstance(payload_obj, dict):
        raise _unauthorized("invalid token payload")
    return header_obj, payload_obj, f"{header_raw}.{payload_raw}", signature_raw


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise _unauthorized("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise _unauthorized("empty bearer token")
    header_obj, payload_obj, signing_input, signature_raw = _parse_token_parts(token)
    if str(header_obj.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    expected = _b64url_encode(
        hmac.new(
            cfg.shared_secret.encode("utf-8"),
            signing_input.encode("ascii"),
            hashlib.sha256,
        ).digest()
    )
    if not hmac.compare_digest(expected, signature_raw):
        raise _unauthorized("invalid token signature")

    now_ts = int(datetime.now(UTC).timestamp())
    exp = _as_int(payload_obj.get("exp"))
    if exp is None or exp <= now_ts:
        raise _unauthorized("token expired")
    nbf = _as_int(payload_obj.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise _unauthorized("token not yet valid")

    if cfg.issuer and str(payload_obj.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = payload_obj.get("aud")
        if isinstance(aud, list):
            aud_ok = cfg.audience in {str(x) for x in aud}
        else:
            aud_ok = str(aud or "") == cfg.audience
        if not aud_ok:
            raise _unauthorized("jwt audience mismatch")

    for claim in cfg.required_claims:
        if claim not in payload_obj:
            raise _unauthorized(f"missing required claim: {claim}")

    user_id = str(payload_obj.get("sub") or "").strip()
    if not user_id:
        raise _unauthorized("missing subject claim")
    email = str(payload_obj.get(cfg.email_claim) or "").strip() or None
    return AuthContext(user_id=user_id, email=email, claims=payload_obj)


def require_ops_token(*, provided: str | None, cfg: JwtSecurityConfig) -> None:
    """Operational endpoints accept only the shared ``OPS_API_TOKEN``."""
    if not cfg.ops_token or not provided or not hmac.compare_digest(cfg.ops_token, provided.strip()):
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="operational endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
