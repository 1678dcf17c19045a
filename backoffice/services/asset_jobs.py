"""Client for the AI email-asset generation workflow.

Generation runs in the external workflow service. This side submits a job,
polls its status, and upserts the generated per-locale assets once the job
has completed.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.errors import AssetJobError, ValidationError
from backoffice.core.observability import log_event
from backoffice.schemas.campaign import SUPPORTED_LOCALES, CampaignAssetIn
from backoffice.services.campaign_service import upsert_asset

logger = logging.getLogger("backoffice.asset_jobs")

ASSET_TEMPLATE_NAMES: tuple[str, ...] = ("default", "story-launch", "enchanted-scroll", "minimal-ink", "aurora-split")
JOB_STATUSES: tuple[str, ...] = ("queued", "running", "completed", "failed")
TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


@dataclass(frozen=True)
class AssetGenerationRequest:
    source_locale: str
    subject: str
    body_description: str
    template_name: str = "default"
    target_locales: list[str] | None = None


@dataclass(frozen=True)
class AssetJobHandle:
    job_id: str


@dataclass(frozen=True)
class GeneratedAsset:
    subject: str
    html_body: str
    text_body: str


@dataclass(frozen=True)
class AssetJobStatus:
    job_id: str
    status: Literal["queued", "running", "completed", "failed"]
    progress: int
    assets: dict[str, GeneratedAsset] = field(default_factory=dict)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


def _validate_request(request: AssetGenerationRequest) -> None:
    if request.template_name not in ASSET_TEMPLATE_NAMES:
        raise ValidationError(f"Unknown template: {request.template_name}", field="template_name")
    if request.source_locale not in SUPPORTED_LOCALES:
        raise ValidationError(f"Unsupported locale: {request.source_locale}", field="source_locale")
    for locale in request.target_locales or []:
        if locale not in SUPPORTED_LOCALES:
            raise ValidationError(f"Unsupported locale: {locale}", field="target_locales")
    if not request.subject.strip() or not request.body_description.strip():
        raise ValidationError("subject and body_description are required", field="subject")


def _parse_status(job_id: str, data: Any) -> AssetJobStatus:
    if not isinstance(data, dict):
        raise AssetJobError("Malformed job status payload")
    status = str(data.get("status") or "").lower()
    if status not in JOB_STATUSES:
        raise AssetJobError(f"Unknown job status '{status}'")
    try:
        progress = int(data.get("progress") or (100 if status == "completed" else 0))
    except (TypeError, ValueError):
        raise AssetJobError("Malformed job progress value") from None
    progress = max(0, min(100, progress))

    assets: dict[str, GeneratedAsset] = {}
    raw_assets = (data.get("result") or {}).get("assets") or {}
    if not isinstance(raw_assets, dict):
        raise AssetJobError("Malformed job result assets")
    for locale, item in raw_assets.items():
        if not isinstance(item, dict):
            continue
        assets[str(locale)] = GeneratedAsset(
            subject=str(item.get("subject") or ""),
            html_body=str(item.get("htmlBody") or item.get("html_body") or ""),
            text_body=str(item.get("textBody") or item.get("text_body") or ""),
        )

    error = data.get("error")
    return AssetJobStatus(
        job_id=str(data.get("jobId") or data.get("id") or job_id),
        status=status,  # type: ignore[arg-type]
        progress=progress,
        assets=assets,
        error=str(error) if error else None,
    )


class AssetJobClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.asset_workflow_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.asset_workflow_api_key
        self.timeout = timeout or settings.asset_job_timeout_seconds
        self.transport = transport

    def _request(self, method: str, path: str, *, json_body: dict[str, Any] | None = None) -> Any:
        if not self.base_url:
            raise AssetJobError("ASSET_WORKFLOW_URL is not configured")
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json_body,
                    headers={"x-api-key": self.api_key or ""},
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            message = _upstream_message(exc.response) or "Asset generation request failed"
            raise AssetJobError(message, upstream_status=exc.response.status_code) from exc
        except httpx.TimeoutException as exc:
            raise AssetJobError(f"Asset generation service timed out after {self.timeout:g}s") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise AssetJobError(f"Asset generation service unavailable: {exc}") from exc

    def submit(self, campaign_id: str, request: AssetGenerationRequest) -> AssetJobHandle:
        _validate_request(request)
        body: dict[str, Any] = {
            "campaignId": campaign_id,
            "sourceLocale": request.source_locale,
            "subject": request.subject,
            "bodyDescription": request.body_description,
            "templateName": request.template_name,
        }
        if request.target_locales:
            body["targetLocales"] = request.target_locales
        data = self._request("POST", "/api/jobs/generate-email-assets", json_body=body)
        job_id = data.get("jobId") if isinstance(data, dict) else None
        if not job_id:
            raise AssetJobError("Asset generation service did not return a job id")
        log_event(
            logger,
            "asset_job.submitted",
            campaign_id=campaign_id,
            job_id=job_id,
            template_name=request.template_name,
        )
        return AssetJobHandle(job_id=str(job_id))

    def poll_status(self, campaign_id: str, job_id: str) -> AssetJobStatus:
        if not job_id or not job_id.strip():
            raise ValidationError("job_id is required", field="job_id")
        status = _parse_status(job_id, self._request("GET", f"/api/jobs/{job_id.strip()}"))
        log_event(
            logger,
            "asset_job.polled",
            campaign_id=campaign_id,
            job_id=job_id,
            status=status.status,
            progress=status.progress,
        )
        return status


def _upstream_message(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])[:255]
    return None


def wait_for_job(
    client: AssetJobClient,
    campaign_id: str,
    job_id: str,
    *,
    interval: float | None = None,
    timeout: float = 600.0,
    sleep: Callable[[float], None] = time.sleep,
) -> AssetJobStatus:
    """Poll on a fixed interval until the job completes or fails."""
    step = interval if interval is not None else settings.asset_job_poll_interval_seconds
    waited = 0.0
    while True:
        status = client.poll_status(campaign_id, job_id)
        if status.is_terminal:
            return status
        if waited >= timeout:
            raise AssetJobError(f"Asset job '{job_id}' did not finish within {timeout:g}s")
        sleep(step)
        waited += step


def apply_generated_assets(db: Session, campaign_id: str, status: AssetJobStatus, *, actor: str) -> list[str]:
    """Upsert a completed job's assets. Returns the languages written."""
    if status.status != "completed":
        raise ValidationError(f"Job '{status.job_id}' is {status.status}; only completed jobs can be applied", field="job_id")
    applied: list[str] = []
    for locale in sorted(status.assets):
        generated = status.assets[locale]
        try:
            asset = CampaignAssetIn(
                channel="email",
                language=locale,
                subject=generated.subject,
                html_body=generated.html_body,
                text_body=generated.text_body,
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Generated asset for '{locale}' is incomplete", field=f"assets.{locale}") from exc
        upsert_asset(db, campaign_id, asset, actor=actor)
        applied.append(locale)
    log_event(logger, "asset_job.applied", campaign_id=campaign_id, job_id=status.job_id, languages=applied)
    return applied


def get_asset_job_client() -> AssetJobClient:
    return AssetJobClient()
