"""Webhook completion tests: async jobs finalized by provider callbacks."""

import asyncio

import httpx
import pytest
from conftest import PNG_BYTES, FakeAsyncProvider

from atelier.models.job import JobStatus
from atelier.services.job_service import create_generation_job, get_job
from atelier.services.webhook_completion import (
    CallbackParseError,
    CompletionResult,
    WebhookCompletionHandler,
    parse_callback,
)
from atelier.workers.job_processor import GenerationJobProcessor

RESULT_URL = "https://cdn.nanobanana.test/result.png"


@pytest.fixture
def artifact_route(http_routes):
    http_routes[("GET", RESULT_URL)] = httpx.Response(
        200, content=PNG_BYTES, headers={"content-type": "image/png"}
    )
    return http_routes


@pytest.fixture
def submitted_job(context, input_images, user_id):
    """A generate job handed to the asynchronous provider (task id "task-1")."""

    async def _submit():
        assets = await input_images(user_id)
        job = await create_generation_job(
            context, user_id, input_image_ids=[asset.id for asset in assets]
        )
        await GenerationJobProcessor(context, FakeAsyncProvider()).process(job.id)
        return job

    return _submit


def success_body(task_id="task-1"):
    return {
        "taskId": task_id,
        "code": 200,
        "data": {"successFlag": 1, "info": {"resultImageUrl": RESULT_URL}},
    }


async def output_assets(context, job_id):
    async with await context.uow_factory() as uow:
        return await uow.images.get_outputs_for_job(job_id)


# parse_callback


def test_parse_success_callback():
    outcome = parse_callback(success_body())

    assert outcome.task_id == "task-1"
    assert outcome.success
    assert outcome.output_url == RESULT_URL


def test_parse_accepts_task_id_under_data():
    outcome = parse_callback(
        {"code": "completed", "data": {"taskId": "t-9", "resultUrls": ["https://x/y.png"]}}
    )

    assert outcome.task_id == "t-9"
    assert outcome.success
    assert outcome.output_url == "https://x/y.png"


def test_parse_failure_callback():
    outcome = parse_callback({"taskId": "t", "code": 400, "error": {"message": "bad prompt"}})

    assert not outcome.success
    assert outcome.error == "bad prompt"
    assert not outcome.retryable


def test_parse_server_failure_is_retryable():
    outcome = parse_callback({"taskId": "t", "code": 501, "msg": "internal error"})

    assert not outcome.success
    assert outcome.error == "internal error"
    assert outcome.retryable


@pytest.mark.parametrize("body", [[], "task", {"code": 200}, {"data": {"info": {}}}])
def test_parse_rejects_bodies_without_task_id(body):
    with pytest.raises(CallbackParseError):
        parse_callback(body)


# on_callback


@pytest.mark.asyncio
async def test_success_callback_completes_job(context, submitted_job, artifact_route):
    job = await submitted_job()

    result = await WebhookCompletionHandler(context).on_callback(
        "task-1", parse_callback(success_body())
    )

    assert result == CompletionResult.SUCCEEDED
    stored = await get_job(context, job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.processing_time >= 0
    outputs = await output_assets(context, job.id)
    assert len(outputs) == 1
    assert outputs[0].provider_task_id == "task-1"
    assert outputs[0].size_bytes == len(PNG_BYTES)
    async with await context.uow_factory() as uow:
        assert len(await uow.images.get_thumbnails(outputs[0].id)) == 2


@pytest.mark.asyncio
async def test_repeated_callback_is_duplicate(context, submitted_job, artifact_route):
    job = await submitted_job()
    handler = WebhookCompletionHandler(context)
    await handler.on_callback("task-1", parse_callback(success_body()))

    result = await handler.on_callback("task-1", parse_callback(success_body()))

    assert result == CompletionResult.DUPLICATE
    assert len(await output_assets(context, job.id)) == 1


@pytest.mark.asyncio
async def test_unknown_task_is_ignored(context):
    result = await WebhookCompletionHandler(context).on_callback(
        "never-submitted", parse_callback(success_body("never-submitted"))
    )

    assert result == CompletionResult.IGNORED


@pytest.mark.asyncio
async def test_provider_failure_marks_job_failed(context, submitted_job):
    job = await submitted_job()

    result = await WebhookCompletionHandler(context).on_callback(
        "task-1", parse_callback({"taskId": "task-1", "code": 500, "msg": "internal error"})
    )

    assert result == CompletionResult.FAILED
    stored = await get_job(context, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "internal error"
    assert stored.retry_at is not None


@pytest.mark.asyncio
async def test_provider_rejection_is_not_retried(context, submitted_job):
    job = await submitted_job()

    await WebhookCompletionHandler(context).on_callback(
        "task-1", parse_callback({"taskId": "task-1", "code": 400, "msg": "content rejected"})
    )

    stored = await get_job(context, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.retry_at is None


@pytest.mark.asyncio
async def test_success_without_url_is_malformed(context, submitted_job):
    job = await submitted_job()

    result = await WebhookCompletionHandler(context).on_callback(
        "task-1", parse_callback({"taskId": "task-1", "code": 200, "data": {}})
    )

    assert result == CompletionResult.FAILED
    stored = await get_job(context, job.id)
    assert stored.error_details["category"] == "malformed_response"
    assert stored.retry_at is not None


@pytest.mark.asyncio
async def test_artifact_download_failure_marks_job_failed(context, submitted_job, http_routes):
    http_routes[("GET", RESULT_URL)] = httpx.Response(503)
    job = await submitted_job()

    result = await WebhookCompletionHandler(context).on_callback(
        "task-1", parse_callback(success_body())
    )

    assert result == CompletionResult.FAILED
    stored = await get_job(context, job.id)
    assert stored.error.startswith("Failed to process generated image")
    assert await output_assets(context, job.id) == []


@pytest.mark.asyncio
async def test_concurrent_duplicate_callbacks_store_one_output(
    context, submitted_job, artifact_route
):
    job = await submitted_job()
    handler = WebhookCompletionHandler(context)

    results = await asyncio.gather(
        handler.on_callback("task-1", parse_callback(success_body())),
        handler.on_callback("task-1", parse_callback(success_body())),
    )

    assert sorted(r.value for r in results) == ["duplicate", "succeeded"]
    assert len(await output_assets(context, job.id)) == 1


@pytest.mark.asyncio
async def test_success_and_failure_race_yields_one_terminal_state(
    context, submitted_job, artifact_route
):
    job = await submitted_job()
    handler = WebhookCompletionHandler(context)

    results = await asyncio.gather(
        handler.on_callback("task-1", parse_callback(success_body())),
        handler.on_callback(
            "task-1", parse_callback({"taskId": "task-1", "code": 500, "msg": "lost"})
        ),
    )

    assert CompletionResult.DUPLICATE in results
    stored = await get_job(context, job.id)
    winner = next(r for r in results if r != CompletionResult.DUPLICATE)
    assert stored.status.value == winner.value
    assert len(await output_assets(context, job.id)) == (
        1 if stored.status == JobStatus.SUCCEEDED else 0
    )


@pytest.mark.asyncio
async def test_callback_for_superseded_attempt_is_ignored(
    context, submitted_job, artifact_route
):
    job = await submitted_job()
    processor = GenerationJobProcessor(context, FakeAsyncProvider())
    async with await context.uow_factory() as uow:
        locked = await uow.jobs.get_by_id_for_update(job.id)
        locked.mark_failed("timed out waiting for completion")
    await processor.process(job.id)

    # A fresh provider numbers tasks from 1 again; give the new attempt its own id
    async with await context.uow_factory() as uow:
        locked = await uow.jobs.get_by_id_for_update(job.id)
        locked.provider_task_id = "task-2"

    result = await WebhookCompletionHandler(context).on_callback(
        "task-1", parse_callback(success_body())
    )

    assert result == CompletionResult.IGNORED
    assert (await get_job(context, job.id)).status == JobStatus.PROCESSING
