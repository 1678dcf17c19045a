from dataclasses import dataclass

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer

from backoffice.core.security import TokenValidationError, decode_token, is_allowed_email

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/google")


@dataclass(frozen=True)
class AdminIdentity:
    email: str
    full_name: str | None = None


def get_current_admin(token: str = Depends(oauth2_scheme)) -> AdminIdentity:
    try:
        payload = decode_token(token, expected_type="access")
    except TokenValidationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    email = str(payload["sub"])
    # Domains can be revoked after a token was issued.
    if not is_allowed_email(email):
        raise HTTPException(status_code=403, detail="Email domain not allowed")
    return AdminIdentity(email=email, full_name=payload.get("name"))
