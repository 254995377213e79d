"""Temporary file group Pydantic v2 response schemas."""

from datetime import datetime

from pydantic import BaseModel


class FileInfoResponse(BaseModel):
    name: str
    size: int
    modified_at: datetime

    model_config = {"from_attributes": True}


class FileGroupResponse(BaseModel):
    """Temporary files owned by one job or by the uploads bucket."""

    job_id: int | None = None
    bucket: str | None = None
    directory: str
    files: list[FileInfoResponse]
    total_size: int


class FileGroupListResponse(BaseModel):
    items: list[FileGroupResponse]
    total_size: int
