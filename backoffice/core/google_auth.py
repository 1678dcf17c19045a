from dataclasses import dataclass
from typing import Any

from backoffice.core.config import settings
from backoffice.core.security import is_allowed_email


class AdminDomainError(PermissionError):
    pass


@dataclass(frozen=True)
class GoogleIdentity:
    sub: str
    email: str
    full_name: str | None
    hosted_domain: str | None = None


def _fetch_token_info(raw_id_token: str) -> dict[str, Any]:
    if not settings.google_client_id:
        raise ValueError("GOOGLE_CLIENT_ID is not configured")

    try:
        from google.auth.transport import requests as google_requests
        from google.oauth2 import id_token as google_id_token
    except ImportError as exc:
        raise ValueError("google-auth dependency is not installed") from exc

    try:
        return google_id_token.verify_oauth2_token(
            raw_id_token,
            google_requests.Request(),
            settings.google_client_id,
        )
    except Exception as exc:
        raise ValueError("Invalid Google ID token") from exc


def verify_google_identity_token(raw_id_token: str) -> GoogleIdentity:
    token_info = _fetch_token_info(raw_id_token)
    if not token_info.get("sub"):
        raise ValueError("Google token missing subject")
    if not token_info.get("email"):
        raise ValueError("Google token missing email")
    if token_info.get("email_verified") is not True:
        raise ValueError("Google email is not verified")

    full_name = token_info.get("name")
    return GoogleIdentity(
        sub=str(token_info["sub"]),
        email=str(token_info["email"]).lower(),
        full_name=str(full_name) if full_name else None,
        hosted_domain=token_info.get("hd"),
    )


def authenticate_admin(raw_id_token: str) -> GoogleIdentity:
    """Verify the Google token and require an email on the admin domain allow-list."""
    identity = verify_google_identity_token(raw_id_token)
    if not is_allowed_email(identity.email):
        raise AdminDomainError(f"Email domain not allowed for {identity.email}")
    return identity
