from datetime import datetime, timedelta, timezone
from uuid import uuid4

from jose import JWTError, jwt

from backoffice.core.config import settings

ALGORITHM = "HS256"


class TokenValidationError(ValueError):
    pass


def create_token(
    subject: str,
    expires_delta: timedelta,
    token_type: str,
    jti: str | None = None,
    extra_claims: dict[str, str] | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **(extra_claims or {}),
        "sub": subject,
        "type": token_type,
        "jti": jti or str(uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str, *, expected_type: str | None = None) -> dict:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise TokenValidationError("Invalid token") from exc

    subject = payload.get("sub")
    if not subject:
        raise TokenValidationError("Invalid token subject")

    token_type = payload.get("type")
    if expected_type and token_type != expected_type:
        raise TokenValidationError("Invalid token type")

    if not payload.get("jti"):
        raise TokenValidationError("Invalid token id")

    return payload


def create_access_token(email: str, *, full_name: str | None = None) -> str:
    return create_token(
        subject=email,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        token_type="access",
        extra_claims={"name": full_name} if full_name else None,
    )


def is_allowed_email(email: str) -> bool:
    normalized = (email or "").strip().lower()
    if not normalized or "@" not in normalized:
        return False
    for domain in settings.allowed_email_domains:
        suffix = domain if domain.startswith("@") else f"@{domain}"
        if normalized.endswith(suffix):
            return True
    return False
