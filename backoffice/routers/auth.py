import json
import logging

from fastapi import APIRouter, Depends, HTTPException

from backoffice.core import google_auth
from backoffice.core.api_docs import error_responses
from backoffice.core.config import settings
from backoffice.core.security import create_access_token
from backoffice.core.security_current import AdminIdentity, get_current_admin
from backoffice.schemas.auth import AdminOut, GoogleAuthIn, TokenOut

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("backoffice.api")


@router.post(
    "/google",
    response_model=TokenOut,
    summary="Sign in with Google",
    description="Verifies a Google ID token, checks the admin domain allow-list, and returns an access token.",
    responses=error_responses(400, 403, 422, 500),
)
def google_sign_in(payload: GoogleAuthIn):
    try:
        identity = google_auth.authenticate_admin(payload.id_token)
    except google_auth.AdminDomainError as exc:
        logger.warning(json.dumps({"event": "auth.domain_rejected", "error": str(exc)}))
        raise HTTPException(status_code=403, detail="Email domain not allowed") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info(json.dumps({"event": "auth.signed_in", "email": identity.email}))
    return TokenOut(
        access_token=create_access_token(identity.email, full_name=identity.full_name),
        expires_in=settings.access_token_expire_minutes * 60,
    )


@router.get(
    "/me",
    response_model=AdminOut,
    summary="Current admin",
    responses=error_responses(401, 403, 500),
)
def me(admin: AdminIdentity = Depends(get_current_admin)):
    return AdminOut(email=admin.email, full_name=admin.full_name)
