"""Import API endpoints.

POST /imports (multipart upload), POST /imports/url, GET /imports,
GET /imports/queue, GET /imports/{job_id}, batch listing and detail, errors,
and the operator actions: cancel, restart, select-files, reprocess,
verify, delete.

Pipeline exceptions raised by the services are translated to HTTP status
codes by the handlers registered in ``election_importer.main``.
"""

import math
import uuid
from pathlib import PurePosixPath
from typing import Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from election_importer.core.config import Settings, get_settings
from election_importer.core.dependencies import get_async_session, get_scheduler
from election_importer.core.scheduler import ImportScheduler
from election_importer.lib.exporter import render_csv
from election_importer.lib.importer.progress import compute_progress
from election_importer.models.import_job import ImportJob
from election_importer.schemas.common import PaginationMeta, PaginationParams
from election_importer.schemas.imports import (
    BatchRowSummaryResponse,
    BatchStatsResponse,
    ImportBatchDetailResponse,
    ImportBatchListResponse,
    ImportBatchResponse,
    ImportErrorResponse,
    ImportJobResponse,
    IntegrityResponse,
    PaginatedImportErrorResponse,
    PaginatedImportJobResponse,
    ProgressResponse,
    QueueEntryResponse,
    QueueStatusResponse,
    SelectFilesRequest,
    SelectFilesResponse,
    UrlImportRequest,
    VerifyRequest,
)
from election_importer.services import batch_service, import_service, integrity_service
from election_importer.services.file_service import uploads_directory

router = APIRouter(prefix="/imports", tags=["imports"])

_UPLOAD_CHUNK = 1024 * 1024
_NOT_FOUND_DETAIL = "Import job not found"

SessionDep = Annotated[AsyncSession, Depends(get_async_session)]
SchedulerDep = Annotated[ImportScheduler, Depends(get_scheduler)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def _job_response(job: ImportJob, scheduler: ImportScheduler) -> ImportJobResponse:
    response = ImportJobResponse.model_validate(job)
    snapshot = compute_progress(job)
    response.progress = ProgressResponse(
        percent=snapshot.percent,
        is_indeterminate=snapshot.is_indeterminate,
        rows_done=snapshot.rows_done,
        rows_per_second=snapshot.rows_per_second,
        eta_seconds=snapshot.eta_seconds,
        elapsed_seconds=snapshot.elapsed_seconds,
        outcome=snapshot.outcome.value if snapshot.outcome else None,
    )
    position = scheduler.position(job.id)
    response.queue_position = position if position >= 0 else None
    return response


def _pagination(total: int, params: PaginationParams) -> PaginationMeta:
    return PaginationMeta(
        total=total,
        page=params.page,
        page_size=params.page_size,
        total_pages=max(1, math.ceil(total / params.page_size)),
    )


@router.post("", response_model=ImportJobResponse, status_code=202)
async def submit_upload(
    file: UploadFile,
    session: SessionDep,
    settings: SettingsDep,
    scheduler: SchedulerDep,
    election_year: Annotated[int | None, Form(ge=1900, le=2100)] = None,
    region: Annotated[str | None, Form(min_length=2, max_length=2)] = None,
    cargo_filter: Annotated[int | None, Form(ge=0)] = None,
    selected_file: Annotated[str | None, Form()] = None,
) -> ImportJobResponse:
    """Upload a TSE CSV or ZIP file and queue it for import."""
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided")

    uploads = uploads_directory(settings.import_work_path)
    uploads.mkdir(parents=True, exist_ok=True)
    tmp_path = uploads / f"{uuid.uuid4().hex}_{PurePosixPath(file.filename).name}"
    max_bytes = settings.max_upload_size_mb * 1024 * 1024
    size = 0
    try:
        with tmp_path.open("wb") as out:
            while chunk := await file.read(_UPLOAD_CHUNK):
                size += len(chunk)
                if size > max_bytes:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail=f"File exceeds maximum size of {settings.max_upload_size_mb} MB",
                    )
                out.write(chunk)
        job = await import_service.create_upload_import(
            session,
            tmp_path,
            file.filename,
            settings,
            election_year=election_year,
            region=region,
            cargo_filter=cargo_filter,
            selected_file=selected_file,
        )
    finally:
        # Moved into the job directory on success
        tmp_path.unlink(missing_ok=True)

    import_service.submit_import_job(job, scheduler)
    return _job_response(job, scheduler)


@router.post("/url", response_model=ImportJobResponse, status_code=202)
async def submit_url(
    body: UrlImportRequest,
    session: SessionDep,
    settings: SettingsDep,
    scheduler: SchedulerDep,
) -> ImportJobResponse:
    """Queue a remote TSE archive for download and import."""
    job = await import_service.create_url_import(
        session,
        body.url,
        settings,
        election_year=body.election_year,
        region=body.region,
        cargo_filter=body.cargo_filter,
        selected_file=body.selected_file,
    )
    import_service.submit_import_job(job, scheduler)
    return _job_response(job, scheduler)


@router.get("", response_model=PaginatedImportJobResponse)
async def list_imports(
    session: SessionDep,
    scheduler: SchedulerDep,
    pagination: Annotated[PaginationParams, Depends()],
    import_status: str | None = None,
) -> PaginatedImportJobResponse:
    """List import jobs, newest first, optionally filtered by status."""
    jobs, total = await import_service.list_import_jobs(
        session, status=import_status, page=pagination.page, page_size=pagination.page_size
    )
    return PaginatedImportJobResponse(
        items=[_job_response(j, scheduler) for j in jobs],
        pagination=_pagination(total, pagination),
    )


@router.get("/queue", response_model=QueueStatusResponse)
async def get_queue_status(scheduler: SchedulerDep) -> QueueStatusResponse:
    """Point-in-time snapshot of the import queue."""
    snapshot = scheduler.status()
    return QueueStatusResponse(
        is_processing=snapshot.is_processing,
        queue_length=snapshot.queue_length,
        current_job_id=snapshot.current_job_id,
        active_job_ids=snapshot.active_job_ids,
        queue=[QueueEntryResponse.model_validate(p) for p in snapshot.queue],
    )


@router.get("/{job_id}", response_model=ImportJobResponse)
async def get_import(job_id: int, session: SessionDep, scheduler: SchedulerDep) -> ImportJobResponse:
    """Get an import job with live, derived progress."""
    job = await import_service.get_import_job(session, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NOT_FOUND_DETAIL)
    return _job_response(job, scheduler)


@router.get("/{job_id}/batches", response_model=ImportBatchListResponse)
async def list_import_batches(job_id: int, session: SessionDep) -> ImportBatchListResponse:
    """List a job's batches in index order with per-status counts."""
    if await import_service.get_import_job(session, job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NOT_FOUND_DETAIL)
    batches = await batch_service.list_batches(session, job_id)
    stats = await batch_service.batch_stats(session, job_id)
    return ImportBatchListResponse(
        items=[ImportBatchResponse.model_validate(b) for b in batches],
        stats=BatchStatsResponse(**stats),
    )


@router.get("/{job_id}/batches/{batch_id}", response_model=ImportBatchDetailResponse)
async def get_import_batch(job_id: int, batch_id: int, session: SessionDep) -> ImportBatchDetailResponse:
    """Show one batch with its row outcome summary and rejected rows."""
    batch = await batch_service.get_batch(session, job_id, batch_id)
    errors = await batch_service.list_batch_errors(session, batch)
    return ImportBatchDetailResponse(
        batch=ImportBatchResponse.model_validate(batch),
        summary=BatchRowSummaryResponse(
            total=batch.total_rows,
            inserted=batch.inserted_rows,
            skipped=batch.skipped_rows,
            failed=batch.error_count,
            pending=max(batch.total_rows - batch.processed_rows, 0),
        ),
        failed_rows=[ImportErrorResponse.model_validate(e) for e in errors],
    )


@router.get("/{job_id}/errors", response_model=PaginatedImportErrorResponse)
async def list_import_errors(
    job_id: int,
    session: SessionDep,
    pagination: Annotated[PaginationParams, Depends()],
    error_type: str | None = None,
) -> PaginatedImportErrorResponse:
    """List a job's rejected rows ordered by row number."""
    if await import_service.get_import_job(session, job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NOT_FOUND_DETAIL)
    errors, total = await import_service.list_import_errors(
        session, job_id, error_type=error_type, page=pagination.page, page_size=pagination.page_size
    )
    return PaginatedImportErrorResponse(
        items=[ImportErrorResponse.model_validate(e) for e in errors],
        pagination=_pagination(total, pagination),
    )


@router.get("/{job_id}/errors.csv")
async def export_import_errors(job_id: int, session: SessionDep) -> Response:
    """Download a job's rejected rows as CSV."""
    if await import_service.get_import_job(session, job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NOT_FOUND_DETAIL)
    records = await import_service.export_error_records(session, job_id)
    return Response(
        content=render_csv(records),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="import-{job_id}-errors.csv"'},
    )


@router.post("/{job_id}/cancel", response_model=ImportJobResponse)
async def cancel_import(job_id: int, session: SessionDep, scheduler: SchedulerDep) -> ImportJobResponse:
    """Cancel a queued or running import; rows already stored are kept."""
    job = await import_service.cancel_import_job(session, job_id, scheduler=scheduler)
    return _job_response(job, scheduler)


@router.post("/{job_id}/restart", response_model=ImportJobResponse)
async def restart_import(job_id: int, session: SessionDep, scheduler: SchedulerDep) -> ImportJobResponse:
    """Restart a failed or cancelled URL import from a fresh download."""
    job = await import_service.restart_import_job(session, job_id, scheduler=scheduler)
    return _job_response(job, scheduler)


@router.post("/{job_id}/select-files", response_model=SelectFilesResponse)
async def select_files(
    job_id: int,
    body: SelectFilesRequest,
    session: SessionDep,
    scheduler: SchedulerDep,
) -> SelectFilesResponse:
    """Choose the archive member to import, or fan out to one job per member."""
    job, children = await import_service.select_import_files(
        session, job_id, file_name=body.file_name, import_all=body.import_all, scheduler=scheduler
    )
    return SelectFilesResponse(
        job=_job_response(job, scheduler),
        children=[_job_response(c, scheduler) for c in children],
    )


@router.post("/{job_id}/batches/reprocess-failed", response_model=list[ImportBatchResponse])
async def reprocess_failed_batches(
    job_id: int,
    session: SessionDep,
    scheduler: SchedulerDep,
) -> list[ImportBatchResponse]:
    """Reprocess every failed batch of an idle job in index order."""
    batches = await batch_service.reprocess_failed_batches(session, job_id, scheduler=scheduler)
    return [ImportBatchResponse.model_validate(b) for b in batches]


@router.post("/{job_id}/batches/{batch_id}/reprocess", response_model=ImportBatchResponse)
async def reprocess_batch(
    job_id: int,
    batch_id: int,
    session: SessionDep,
    scheduler: SchedulerDep,
) -> ImportBatchResponse:
    """Reprocess one failed batch without touching its siblings."""
    batch = await batch_service.reprocess_batch(session, job_id, batch_id, scheduler=scheduler)
    return ImportBatchResponse.model_validate(batch)


@router.post("/{job_id}/verify", response_model=IntegrityResponse)
async def verify_import(
    job_id: int,
    session: SessionDep,
    body: VerifyRequest | None = None,
) -> IntegrityResponse:
    """Reconcile a completed job's stored, recorded and expected row counts."""
    result = await integrity_service.verify_import(
        session, job_id, expected_rows=body.expected_rows if body else None
    )
    return IntegrityResponse.model_validate(result)


@router.delete("/{job_id}", status_code=204)
async def delete_import(job_id: int, session: SessionDep, scheduler: SchedulerDep) -> Response:
    """Delete a job with its batches, error records and imported rows."""
    await import_service.delete_import_job(session, job_id, scheduler=scheduler)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
