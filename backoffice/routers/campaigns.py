from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from backoffice.core.api_docs import error_responses
from backoffice.core.config import settings
from backoffice.core.deps import get_admin_db, get_core_db
from backoffice.core.security_current import AdminIdentity, get_current_admin
from backoffice.models.campaign import MarketingCampaign, MarketingCampaignAsset, MarketingCampaignBatch
from backoffice.schemas.campaign import (
    AssetJobHandleOut,
    AssetJobResultOut,
    AssetJobStatusOut,
    AudienceCountIn,
    AudienceCountOut,
    BatchRunOut,
    BatchStatsOut,
    CampaignAssetOut,
    CampaignBatchListOut,
    CampaignBatchOut,
    CampaignCreateIn,
    CampaignDetailOut,
    CampaignListOut,
    CampaignOut,
    CampaignProgressOut,
    CampaignStatus,
    CampaignUpdateIn,
    GenerateAssetsIn,
    GeneratedAssetOut,
    SampleSendIn,
    ScheduledRunListOut,
    ScheduledRunOut,
    SendBatchIn,
)
from backoffice.schemas.common import build_pagination
from backoffice.services import campaign_service
from backoffice.services.asset_jobs import (
    AssetGenerationRequest,
    AssetJobClient,
    AssetJobStatus,
    apply_generated_assets,
    get_asset_job_client,
)
from backoffice.services.campaign_audience import estimate_audience
from backoffice.services.campaign_batches import run_campaign_batch, run_scheduled_batches, send_sample
from backoffice.services.campaign_filters import describe_filter
from backoffice.services.campaign_state import get_campaign_or_404, transition_campaign
from backoffice.services.notification_provider import NotificationProvider, get_notification_provider

router = APIRouter(prefix="/campaigns", tags=["campaigns"])

DETAIL_BATCH_HISTORY_LIMIT = 10


def get_dispatch_provider() -> NotificationProvider:
    return get_notification_provider(settings.notification_provider_default)


def _campaign_out(campaign: MarketingCampaign) -> CampaignOut:
    return CampaignOut(
        id=campaign.id,
        title=campaign.title,
        description=campaign.description,
        status=campaign.status,
        audience_source=campaign.audience_source,
        user_notification_preferences=campaign.user_notification_preferences,
        filter_tree=campaign.filter_tree,
        filter_summary=describe_filter(campaign.filter_tree),
        daily_send_limit=campaign.daily_send_limit,
        start_at=campaign.start_at,
        end_at=campaign.end_at,
        created_by=campaign.created_by,
        updated_by=campaign.updated_by,
        created_at=campaign.created_at,
        updated_at=campaign.updated_at,
    )


def _asset_out(asset: MarketingCampaignAsset) -> CampaignAssetOut:
    return CampaignAssetOut(
        id=asset.id,
        campaign_id=asset.campaign_id,
        channel=asset.channel,
        language=asset.language,
        subject=asset.subject,
        html_body=asset.html_body,
        text_body=asset.text_body,
        created_at=asset.created_at,
        updated_at=asset.updated_at,
    )


def _batch_out(batch: MarketingCampaignBatch) -> CampaignBatchOut:
    return CampaignBatchOut(
        id=batch.id,
        campaign_id=batch.campaign_id,
        status=batch.status,
        requested_by=batch.requested_by,
        requested_at=batch.requested_at,
        started_at=batch.started_at,
        completed_at=batch.completed_at,
        stats=BatchStatsOut(**(batch.stats_json or {})),
        asset_snapshot_hash=batch.asset_snapshot_hash,
        sample_send=batch.sample_send,
        error_message=batch.error_message,
    )


def _batch_history_out(db: Session, campaign_id: str, *, page: int, limit: int, include_samples: bool) -> CampaignBatchListOut:
    rows, total = campaign_service.get_batch_history(
        db,
        campaign_id,
        page=page,
        limit=limit,
        include_samples=include_samples,
    )
    items = [_batch_out(row) for row in rows]
    return CampaignBatchListOut(
        items=items,
        pagination=build_pagination(total=total, page=page, limit=limit, count=len(items)),
    )


def _job_status_out(status: AssetJobStatus, *, applied: list[str] | None = None) -> AssetJobStatusOut:
    result = None
    if status.assets:
        result = AssetJobResultOut(
            assets={
                locale: GeneratedAssetOut(
                    subject=item.subject,
                    html_body=item.html_body,
                    text_body=item.text_body,
                )
                for locale, item in status.assets.items()
            }
        )
    return AssetJobStatusOut(
        job_id=status.job_id,
        status=status.status,
        progress=status.progress,
        result=result,
        error=status.error,
        applied_languages=applied,
    )


@router.post(
    "",
    response_model=CampaignOut,
    status_code=201,
    summary="Create campaign",
    responses=error_responses(400, 401, 403, 422, 500),
)
def create_campaign(
    payload: CampaignCreateIn,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    campaign = campaign_service.create_campaign(db, payload, actor=admin.email)
    db.commit()
    db.refresh(campaign)
    return _campaign_out(campaign)


@router.get(
    "",
    response_model=CampaignListOut,
    summary="List campaigns",
    responses=error_responses(401, 403, 422, 500),
)
def list_campaigns(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: CampaignStatus | None = Query(default=None),
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    rows, total = campaign_service.list_campaigns(db, page=page, limit=limit, status=status)
    items = [_campaign_out(row) for row in rows]
    return CampaignListOut(
        items=items,
        pagination=build_pagination(total=total, page=page, limit=limit, count=len(items)),
        status=status,
    )


@router.post(
    "/run-scheduled",
    response_model=ScheduledRunListOut,
    summary="Run one batch for every active campaign inside its send window",
    responses=error_responses(401, 403, 500),
)
def run_scheduled(
    core_db: Session = Depends(get_core_db),
    admin_db: Session = Depends(get_admin_db),
    provider: NotificationProvider = Depends(get_dispatch_provider),
    admin: AdminIdentity = Depends(get_current_admin),
):
    runs = run_scheduled_batches(core_db, admin_db, provider=provider)
    return ScheduledRunListOut(
        items=[
            ScheduledRunOut(campaign_id=run.campaign_id, batch_id=run.batch_id, status=run.status, error=run.error)
            for run in runs
        ]
    )


@router.get(
    "/{campaign_id}",
    response_model=CampaignDetailOut,
    summary="Campaign detail with assets, progress, and recent batches",
    responses=error_responses(401, 403, 404, 500),
)
def get_campaign(
    campaign_id: str,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    campaign = get_campaign_or_404(db, campaign_id)
    return CampaignDetailOut(
        campaign=_campaign_out(campaign),
        assets=[_asset_out(asset) for asset in campaign_service.list_assets(db, campaign.id)],
        progress=CampaignProgressOut(**campaign_service.get_campaign_progress(db, campaign.id)),
        batch_history=_batch_history_out(
            db,
            campaign.id,
            page=1,
            limit=DETAIL_BATCH_HISTORY_LIMIT,
            include_samples=False,
        ),
    )


@router.patch(
    "/{campaign_id}",
    response_model=CampaignDetailOut,
    summary="Update campaign metadata, filter, or assets",
    responses=error_responses(400, 401, 403, 404, 409, 422, 500),
)
def update_campaign(
    campaign_id: str,
    payload: CampaignUpdateIn,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    campaign = campaign_service.update_campaign(db, campaign_id, payload, actor=admin.email)
    db.commit()
    return get_campaign(campaign.id, db=db, admin=admin)


@router.delete(
    "/{campaign_id}",
    status_code=204,
    summary="Delete a draft or cancelled campaign",
    responses=error_responses(401, 403, 404, 409, 500),
)
def delete_campaign(
    campaign_id: str,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    campaign_service.delete_campaign(db, campaign_id, actor=admin.email)
    db.commit()
    return Response(status_code=204)


def _transition(db: Session, campaign_id: str, target: str, admin: AdminIdentity) -> CampaignOut:
    campaign = transition_campaign(db, campaign_id, target, admin.email)
    db.commit()
    db.refresh(campaign)
    return _campaign_out(campaign)


@router.post(
    "/{campaign_id}/activate",
    response_model=CampaignOut,
    summary="Activate campaign",
    responses=error_responses(401, 403, 404, 409, 500),
)
def activate_campaign(
    campaign_id: str,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    return _transition(db, campaign_id, "active", admin)


@router.post(
    "/{campaign_id}/pause",
    response_model=CampaignOut,
    summary="Pause campaign",
    responses=error_responses(401, 403, 404, 409, 500),
)
def pause_campaign(
    campaign_id: str,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    return _transition(db, campaign_id, "paused", admin)


@router.post(
    "/{campaign_id}/cancel",
    response_model=CampaignOut,
    summary="Cancel campaign",
    responses=error_responses(401, 403, 404, 409, 500),
)
def cancel_campaign(
    campaign_id: str,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    return _transition(db, campaign_id, "cancelled", admin)


@router.post(
    "/{campaign_id}/duplicate",
    response_model=CampaignOut,
    status_code=201,
    summary="Duplicate campaign as a new draft",
    responses=error_responses(401, 403, 404, 500),
)
def duplicate_campaign(
    campaign_id: str,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    campaign = campaign_service.duplicate_campaign(db, campaign_id, actor=admin.email)
    db.commit()
    db.refresh(campaign)
    return _campaign_out(campaign)


@router.post(
    "/{campaign_id}/send-batch",
    response_model=BatchRunOut,
    summary="Send the next batch now",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def send_batch(
    campaign_id: str,
    payload: SendBatchIn | None = None,
    core_db: Session = Depends(get_core_db),
    admin_db: Session = Depends(get_admin_db),
    provider: NotificationProvider = Depends(get_dispatch_provider),
    admin: AdminIdentity = Depends(get_current_admin),
):
    result = run_campaign_batch(
        core_db,
        admin_db,
        campaign_id=campaign_id,
        requested_by=admin.email,
        provider=provider,
        batch_size=payload.batch_size if payload else None,
    )
    return BatchRunOut(batch=_batch_out(result.batch), campaign_status=result.campaign_status)


@router.post(
    "/{campaign_id}/send-sample",
    response_model=CampaignBatchOut,
    summary="Send a sample email for one locale",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def send_sample_email(
    campaign_id: str,
    payload: SampleSendIn,
    db: Session = Depends(get_admin_db),
    provider: NotificationProvider = Depends(get_dispatch_provider),
    admin: AdminIdentity = Depends(get_current_admin),
):
    batch = send_sample(
        db,
        campaign_id=campaign_id,
        locale=payload.locale,
        emails=[str(email) for email in payload.emails],
        variables=payload.variables,
        requested_by=admin.email,
        provider=provider,
    )
    return _batch_out(batch)


@router.get(
    "/{campaign_id}/progress",
    response_model=CampaignProgressOut,
    summary="Recipient progress counts",
    responses=error_responses(401, 403, 404, 500),
)
def campaign_progress(
    campaign_id: str,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    get_campaign_or_404(db, campaign_id)
    return CampaignProgressOut(**campaign_service.get_campaign_progress(db, campaign_id))


@router.get(
    "/{campaign_id}/batches",
    response_model=CampaignBatchListOut,
    summary="Batch history",
    responses=error_responses(401, 403, 404, 422, 500),
)
def campaign_batches(
    campaign_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    include_samples: bool = Query(default=False),
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    get_campaign_or_404(db, campaign_id)
    return _batch_history_out(db, campaign_id, page=page, limit=limit, include_samples=include_samples)


@router.get(
    "/{campaign_id}/audience-count",
    response_model=AudienceCountOut,
    summary="Estimate the remaining audience",
    responses=error_responses(400, 401, 403, 404, 500),
)
def audience_count(
    campaign_id: str,
    core_db: Session = Depends(get_core_db),
    admin_db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    campaign = get_campaign_or_404(admin_db, campaign_id)
    count = estimate_audience(
        core_db,
        admin_db,
        campaign_id=campaign.id,
        audience_source=campaign.audience_source,
        filter_tree=campaign.filter_tree,
        user_preferences=campaign.user_notification_preferences,
    )
    return AudienceCountOut(users=count.users, leads=count.leads, total=count.total)


@router.post(
    "/{campaign_id}/audience-count",
    response_model=AudienceCountOut,
    summary="Estimate the audience with unsaved filter changes",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def audience_count_preview(
    campaign_id: str,
    payload: AudienceCountIn,
    core_db: Session = Depends(get_core_db),
    admin_db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    campaign = get_campaign_or_404(admin_db, campaign_id)
    overrides = payload.model_fields_set
    count = estimate_audience(
        core_db,
        admin_db,
        campaign_id=campaign.id,
        audience_source=payload.audience_source if "audience_source" in overrides and payload.audience_source else campaign.audience_source,
        filter_tree=payload.filter_tree if "filter_tree" in overrides else campaign.filter_tree,
        user_preferences=(
            payload.user_notification_preferences
            if "user_notification_preferences" in overrides
            else campaign.user_notification_preferences
        ),
    )
    return AudienceCountOut(users=count.users, leads=count.leads, total=count.total)


@router.delete(
    "/{campaign_id}/assets/{asset_id}",
    status_code=204,
    summary="Delete a campaign asset",
    responses=error_responses(401, 403, 404, 409, 500),
)
def delete_campaign_asset(
    campaign_id: str,
    asset_id: str,
    db: Session = Depends(get_admin_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    campaign_service.delete_asset(db, campaign_id, asset_id, actor=admin.email)
    db.commit()
    return Response(status_code=204)


@router.post(
    "/{campaign_id}/generate-assets",
    response_model=AssetJobHandleOut,
    status_code=202,
    summary="Start AI asset generation",
    responses=error_responses(400, 401, 403, 404, 422, 500, 502),
)
def generate_assets(
    campaign_id: str,
    payload: GenerateAssetsIn,
    db: Session = Depends(get_admin_db),
    client: AssetJobClient = Depends(get_asset_job_client),
    admin: AdminIdentity = Depends(get_current_admin),
):
    get_campaign_or_404(db, campaign_id)
    handle = client.submit(
        campaign_id,
        AssetGenerationRequest(
            source_locale=payload.source_locale,
            subject=payload.subject,
            body_description=payload.body_description,
            template_name=payload.template_name,
            target_locales=payload.target_locales,
        ),
    )
    return AssetJobHandleOut(job_id=handle.job_id)


@router.get(
    "/{campaign_id}/generate-assets/{job_id}",
    response_model=AssetJobStatusOut,
    summary="Poll AI asset generation",
    description="Set `apply=true` to upsert the generated assets once the job has completed.",
    responses=error_responses(400, 401, 403, 404, 409, 500, 502),
)
def poll_generate_assets(
    campaign_id: str,
    job_id: str,
    apply: bool = Query(default=False),
    db: Session = Depends(get_admin_db),
    client: AssetJobClient = Depends(get_asset_job_client),
    admin: AdminIdentity = Depends(get_current_admin),
):
    get_campaign_or_404(db, campaign_id)
    status = client.poll_status(campaign_id, job_id)
    applied = None
    if apply and status.status == "completed":
        applied = apply_generated_assets(db, campaign_id, status, actor=admin.email)
        db.commit()
    return _job_status_out(status, applied=applied)
