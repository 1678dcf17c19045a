import json

import httpx
import pytest
from sqlalchemy import select

from backoffice.core.errors import AssetJobError, InvalidStateError, ValidationError
from backoffice.models.campaign import MarketingCampaignAsset
from backoffice.services.asset_jobs import (
    AssetGenerationRequest,
    AssetJobClient,
    AssetJobStatus,
    GeneratedAsset,
    apply_generated_assets,
    wait_for_job,
)

from conftest import ADMIN_EMAIL, add_campaign


def _client(handler) -> AssetJobClient:
    return AssetJobClient(
        base_url="http://workflow.test/",
        api_key="workflow-key",
        timeout=2.0,
        transport=httpx.MockTransport(handler),
    )


def _request(**overrides) -> AssetGenerationRequest:
    values = {
        "source_locale": "en-US",
        "subject": "New illustrated templates",
        "body_description": "Announce the spring collection of story templates.",
        "template_name": "story-launch",
        "target_locales": ["pt-PT", "es-ES"],
    }
    values.update(overrides)
    return AssetGenerationRequest(**values)


def test_submit_posts_job_and_returns_handle():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers.get("x-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"jobId": "job-123"})

    handle = _client(handler).submit("campaign-1", _request())

    assert handle.job_id == "job-123"
    assert seen["method"] == "POST"
    assert seen["url"] == "http://workflow.test/api/jobs/generate-email-assets"
    assert seen["api_key"] == "workflow-key"
    assert seen["body"] == {
        "campaignId": "campaign-1",
        "sourceLocale": "en-US",
        "subject": "New illustrated templates",
        "bodyDescription": "Announce the spring collection of story templates.",
        "templateName": "story-launch",
        "targetLocales": ["pt-PT", "es-ES"],
    }


def test_submit_rejects_unknown_template_and_locale_before_calling_upstream():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("upstream must not be called")

    client = _client(handler)
    with pytest.raises(ValidationError):
        client.submit("campaign-1", _request(template_name="comic-sans"))
    with pytest.raises(ValidationError):
        client.submit("campaign-1", _request(target_locales=["it-IT"]))


def test_upstream_errors_map_to_asset_job_error():
    def not_found(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "Job not found"})

    with pytest.raises(AssetJobError) as exc_info:
        _client(not_found).poll_status("campaign-1", "job-404")
    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "Job not found"

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream down")

    with pytest.raises(AssetJobError) as exc_info:
        _client(broken).poll_status("campaign-1", "job-503")
    assert exc_info.value.status_code == 502

    def bad_key(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "Invalid API key"})

    with pytest.raises(AssetJobError) as exc_info:
        _client(bad_key).poll_status("campaign-1", "job-1")
    assert exc_info.value.status_code == 502
    assert exc_info.value.upstream_status == 401
    assert exc_info.value.details == [{"field": "upstream_status", "message": "Invalid API key", "type": "401"}]

    def missing_job_id(request: httpx.Request) -> httpx.Response:
        return httpx.Response(202, json={"status": "queued"})

    with pytest.raises(AssetJobError):
        _client(missing_job_id).submit("campaign-1", _request())


def test_poll_status_parses_result_and_rejects_unknown_status():
    def completed(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/jobs/job-1"
        return httpx.Response(
            200,
            json={
                "jobId": "job-1",
                "status": "completed",
                "progress": 140,
                "result": {
                    "assets": {
                        "en-US": {"subject": "Hello", "htmlBody": "<p>Hi</p>", "textBody": "Hi"},
                    }
                },
            },
        )

    status = _client(completed).poll_status("campaign-1", "job-1")
    assert status.status == "completed"
    assert status.progress == 100
    assert status.is_terminal
    assert status.assets["en-US"] == GeneratedAsset(subject="Hello", html_body="<p>Hi</p>", text_body="Hi")

    def unknown(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"jobId": "job-1", "status": "paused", "progress": 10})

    with pytest.raises(AssetJobError):
        _client(unknown).poll_status("campaign-1", "job-1")


def test_wait_for_job_polls_until_terminal():
    states = iter(["queued", "running", "running", "failed"])

    def handler(request: httpx.Request) -> httpx.Response:
        state = next(states)
        body = {"jobId": "job-9", "status": state, "progress": 50}
        if state == "failed":
            body["error"] = "Model quota exceeded"
        return httpx.Response(200, json=body)

    sleeps: list[float] = []
    status = wait_for_job(_client(handler), "campaign-1", "job-9", interval=0.5, sleep=sleeps.append)

    assert status.status == "failed"
    assert status.error == "Model quota exceeded"
    assert sleeps == [0.5, 0.5, 0.5]


def test_wait_for_job_gives_up_after_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"jobId": "job-9", "status": "running", "progress": 10})

    with pytest.raises(AssetJobError):
        wait_for_job(_client(handler), "campaign-1", "job-9", interval=1.0, timeout=2.0, sleep=lambda _: None)


def test_apply_generated_assets_upserts_each_locale(dbs):
    _, admin_db = dbs
    campaign = add_campaign(admin_db, status="draft", languages=("en-US",))
    status = AssetJobStatus(
        job_id="job-1",
        status="completed",
        progress=100,
        assets={
            "en-US": GeneratedAsset(subject="Fresh subject", html_body="<p>Fresh</p>", text_body="Fresh"),
            "pt-PT": GeneratedAsset(subject="Olá", html_body="<p>Olá</p>", text_body="Olá"),
        },
    )

    applied = apply_generated_assets(admin_db, campaign.id, status, actor=ADMIN_EMAIL)
    admin_db.commit()

    assert applied == ["en-US", "pt-PT"]
    rows = {
        row.language: row
        for row in admin_db.execute(
            select(MarketingCampaignAsset).where(MarketingCampaignAsset.campaign_id == campaign.id)
        ).scalars()
    }
    assert set(rows) == {"en-US", "pt-PT"}
    assert rows["en-US"].subject == "Fresh subject"


def test_apply_generated_assets_requires_completed_job_and_editable_campaign(dbs):
    _, admin_db = dbs
    draft = add_campaign(admin_db, status="draft")
    running = AssetJobStatus(job_id="job-2", status="running", progress=40)
    with pytest.raises(ValidationError):
        apply_generated_assets(admin_db, draft.id, running, actor=ADMIN_EMAIL)

    paused = add_campaign(admin_db, status="paused")
    completed = AssetJobStatus(
        job_id="job-3",
        status="completed",
        progress=100,
        assets={"en-US": GeneratedAsset(subject="S", html_body="<p>B</p>", text_body="B")},
    )
    with pytest.raises(InvalidStateError):
        apply_generated_assets(admin_db, paused.id, completed, actor=ADMIN_EMAIL)

    incomplete = AssetJobStatus(
        job_id="job-4",
        status="completed",
        progress=100,
        assets={"en-US": GeneratedAsset(subject="", html_body="<p>B</p>", text_body="B")},
    )
    with pytest.raises(ValidationError):
        apply_generated_assets(admin_db, draft.id, incomplete, actor=ADMIN_EMAIL)
