from contextlib import asynccontextmanager

from sqlalchemy import text

from backoffice.core.errors import CampaignError
from backoffice.core.observability import (
    campaign_error_handler,
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from backoffice.core.config import settings
from backoffice.db.session import admin_engine, core_engine
from backoffice.routers import auth, campaigns
from backoffice.services.notification_provider import close_notification_providers


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    close_notification_providers()


app = FastAPI(
    lifespan=lifespan,
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Admin API for the story platform's email marketing campaigns.\n\n"
        "Swagger quick test flow:\n"
        "1. Call `POST /auth/google` with a Google ID token from an allowed domain.\n"
        "2. Click **Authorize** and paste the returned access token.\n"
        "3. Create a campaign, add assets, check `/campaigns/{id}/audience-count`, then activate and send."
    ),
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "auth", "description": "Google sign-in restricted to the admin email domains."},
        {
            "name": "campaigns",
            "description": "Campaign lifecycle, audience estimation, batch sends, and AI asset generation.",
        },
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(CampaignError, campaign_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Local admin UI runs on dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(campaigns.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    checks: dict[str, bool] = {}
    for name, engine in (("core", core_engine), ("admin", admin_engine)):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            checks[name] = False
            continue
        checks[name] = True
    return {"ok": all(checks.values()), "databases": checks}
