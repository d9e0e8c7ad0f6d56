"""API routes for submitting and tracking generation tasks."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...auth import get_current_account_id
from ..exceptions import CreditsError
from ..generation import GenerationKind, GenerationRequest, ProviderError
from ..schemas.generation import (
    GenerationResponse,
    ImageGenerationRequest,
    TaskStatusResponse,
    VideoGenerationRequest,
)
from ..services.credits import get_credit_accountant
from ..services.generation import get_task_orchestrator

router = APIRouter(prefix="/api/generate", tags=["generation"])


def _provider_unavailable(exc: ProviderError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"error": "provider_unavailable", "message": str(exc)},
    )


@router.post("/image", response_model=GenerationResponse)
async def generate_image(
    payload: ImageGenerationRequest,
    *,
    account_id: str = Depends(get_current_account_id),
) -> GenerationResponse:
    orchestrator = get_task_orchestrator()
    try:
        await get_credit_accountant().ensure_account(account_id)
        image_urls = await orchestrator.stage_inputs(
            [payload.person_image.as_source(), *[garment.as_source() for garment in payload.garments]]
        )
        request = GenerationRequest(
            kind=GenerationKind.IMAGE,
            prompt=payload.full_prompt(),
            image_urls=image_urls,
            aspect_ratio=payload.aspect_ratio,
            resolution=payload.resolution,
        )
        tasks = await orchestrator.submit_batch(account_id, request, payload.num_generations)
    except CreditsError as exc:
        raise exc.to_http_exception() from exc
    except ProviderError as exc:
        raise _provider_unavailable(exc) from exc
    return GenerationResponse.from_tasks(tasks)


@router.post("/video", response_model=GenerationResponse)
async def generate_video(
    payload: VideoGenerationRequest,
    *,
    account_id: str = Depends(get_current_account_id),
) -> GenerationResponse:
    orchestrator = get_task_orchestrator()
    request = GenerationRequest(
        kind=GenerationKind.VIDEO,
        prompt=payload.prompt,
        image_urls=[payload.image_input] if payload.image_input else [],
        aspect_ratio=payload.aspect_ratio,
        duration_seconds=payload.duration,
        sound=payload.sound,
    )
    try:
        await get_credit_accountant().ensure_account(account_id)
        task = await orchestrator.submit(account_id, request)
    except CreditsError as exc:
        raise exc.to_http_exception() from exc
    return GenerationResponse.from_tasks([task])


@router.get("/status", response_model=TaskStatusResponse)
async def get_task_status(
    task_id: str = Query(alias="taskId", min_length=1),
    *,
    account_id: str = Depends(get_current_account_id),
) -> TaskStatusResponse:
    try:
        task = await get_task_orchestrator().get_task(task_id, account_id=account_id)
    except CreditsError as exc:
        raise exc.to_http_exception() from exc
    return TaskStatusResponse.from_task(task)


@router.post("/{task_id}/cancel", response_model=TaskStatusResponse)
async def cancel_task(
    task_id: str,
    *,
    account_id: str = Depends(get_current_account_id),
) -> TaskStatusResponse:
    try:
        task = await get_task_orchestrator().cancel(task_id, account_id=account_id)
    except CreditsError as exc:
        raise exc.to_http_exception() from exc
    except ProviderError as exc:
        raise _provider_unavailable(exc) from exc
    return TaskStatusResponse.from_task(task)
