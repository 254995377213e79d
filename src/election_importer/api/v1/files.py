"""Temporary file endpoints: GET /files, DELETE /files/{target}."""

from typing import Annotated

from fastapi import APIRouter, Depends

from election_importer.core.config import Settings, get_settings
from election_importer.core.dependencies import get_scheduler
from election_importer.core.scheduler import ImportScheduler
from election_importer.schemas.files import FileGroupListResponse, FileGroupResponse, FileInfoResponse
from election_importer.services import file_service

router = APIRouter(prefix="/files", tags=["files"])


def _group_response(group: file_service.FileGroup) -> FileGroupResponse:
    return FileGroupResponse(
        job_id=group.job_id,
        bucket=group.bucket,
        directory=str(group.directory),
        files=[FileInfoResponse.model_validate(f) for f in group.files],
        total_size=group.total_size,
    )


@router.get("", response_model=FileGroupListResponse)
async def list_files(settings: Annotated[Settings, Depends(get_settings)]) -> FileGroupListResponse:
    """List temporary import files grouped by job, plus the uploads bucket."""
    groups = file_service.list_file_groups(settings.import_work_path)
    return FileGroupListResponse(
        items=[_group_response(g) for g in groups],
        total_size=sum(g.total_size for g in groups),
    )


@router.delete("/{target}", response_model=FileGroupResponse)
async def delete_files(
    target: str,
    settings: Annotated[Settings, Depends(get_settings)],
    scheduler: Annotated[ImportScheduler, Depends(get_scheduler)],
) -> FileGroupResponse:
    """Delete a job's temporary files (by job id) or empty the uploads bucket."""
    group = file_service.delete_file_group(
        settings.import_work_path, target, scheduler=scheduler, keep_newer_than=settings.upload_grace_seconds
    )
    return _group_response(group)
