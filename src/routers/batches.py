import json

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse

from src.core.auth import verify_api_key
from src.core.url_utils import validate_and_deduplicate_urls
from src.dtos.batch_dto import (
    BatchCreate,
    BatchDuplicate,
    BatchJobRead,
    BatchStatistics,
    CombinedRow,
    UrlResultRead,
    UrlValidationRequest,
    ValidatedUrls,
)
from src.entities.batch_job import BatchStatus
from src.services.batch_scrape_service import BatchScrapeService

router = APIRouter(
    prefix="/batches", tags=["batches"], dependencies=[Depends(verify_api_key)]
)


def get_batch_service(request: Request) -> BatchScrapeService:
    """The app-wide service created in the lifespan handler."""
    return request.app.state.batch_service


def _require(job: BatchJobRead | None, batch_id: str) -> BatchJobRead:
    if job is None:
        raise HTTPException(status_code=404, detail=f"Batch job {batch_id} not found")
    return job


@router.post("", status_code=201, response_model=BatchJobRead)
async def create_batch(
    body: BatchCreate, service: BatchScrapeService = Depends(get_batch_service)
):
    return await service.create_batch(
        body.config, body.urls, name=body.name, settings=body.settings
    )


@router.get("", response_model=list[BatchJobRead])
async def list_batches(
    status: BatchStatus | None = None,
    q: str | None = None,
    limit: int | None = None,
    service: BatchScrapeService = Depends(get_batch_service),
):
    return service.list_jobs(status=status, query=q, limit=limit)


@router.post("/validate-urls", response_model=ValidatedUrls)
async def validate_urls(body: UrlValidationRequest):
    return validate_and_deduplicate_urls(body.text)


@router.get("/{batch_id}", response_model=BatchJobRead)
async def get_batch(batch_id: str, service: BatchScrapeService = Depends(get_batch_service)):
    return _require(service.get_job(batch_id), batch_id)


@router.delete("/{batch_id}", status_code=204)
async def delete_batch(
    batch_id: str, service: BatchScrapeService = Depends(get_batch_service)
):
    await service.delete_batch(batch_id)
    return Response(status_code=204)


@router.post("/{batch_id}/start", response_model=BatchJobRead)
async def start_batch(batch_id: str, service: BatchScrapeService = Depends(get_batch_service)):
    return await service.start(batch_id)


@router.post("/{batch_id}/pause", response_model=BatchJobRead)
async def pause_batch(batch_id: str, service: BatchScrapeService = Depends(get_batch_service)):
    return await service.pause(batch_id)


@router.post("/{batch_id}/resume", response_model=BatchJobRead)
async def resume_batch(
    batch_id: str, service: BatchScrapeService = Depends(get_batch_service)
):
    return await service.resume(batch_id)


@router.post("/{batch_id}/cancel", response_model=BatchJobRead)
async def cancel_batch(
    batch_id: str, service: BatchScrapeService = Depends(get_batch_service)
):
    return await service.cancel(batch_id)


@router.post("/{batch_id}/duplicate", status_code=201, response_model=BatchJobRead)
async def duplicate_batch(
    batch_id: str,
    body: BatchDuplicate | None = None,
    service: BatchScrapeService = Depends(get_batch_service),
):
    return await service.duplicate_batch(batch_id, name=body.name if body else None)


@router.post("/{batch_id}/retry-failed")
async def retry_failed(
    batch_id: str, service: BatchScrapeService = Depends(get_batch_service)
):
    return {"batch_id": batch_id, "reset": await service.retry_failed_urls(batch_id)}


@router.get("/{batch_id}/urls", response_model=list[UrlResultRead])
async def list_url_results(
    batch_id: str, service: BatchScrapeService = Depends(get_batch_service)
):
    return service.get_url_results(batch_id)


@router.post("/{batch_id}/urls/{url_result_id}/retry", response_model=UrlResultRead)
async def retry_url(
    batch_id: str,
    url_result_id: str,
    service: BatchScrapeService = Depends(get_batch_service),
):
    return await service.retry_url(batch_id, url_result_id)


@router.get("/{batch_id}/statistics", response_model=BatchStatistics)
async def get_statistics(
    batch_id: str, service: BatchScrapeService = Depends(get_batch_service)
):
    return service.get_statistics(batch_id)


@router.get("/{batch_id}/results", response_model=list[CombinedRow])
async def get_combined_results(
    batch_id: str, service: BatchScrapeService = Depends(get_batch_service)
):
    return service.get_combined_results(batch_id)


@router.get("/{batch_id}/events")
async def stream_events(
    batch_id: str, service: BatchScrapeService = Depends(get_batch_service)
):
    """Server-sent events with every change to the batch and its URLs."""
    events = service.stream(batch_id)

    async def event_source():
        async for event in events:
            yield f"event: {event.type}\ndata: {json.dumps(event.to_dict())}\n\n"

    return StreamingResponse(event_source(), media_type="text/event-stream")
