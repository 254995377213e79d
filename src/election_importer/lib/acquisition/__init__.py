"""Acquisition library: remote archive download and ZIP extraction."""

from election_importer.lib.acquisition.archive import ArchiveError, choose_member, extract_member, list_csv_members
from election_importer.lib.acquisition.downloader import (
    DownloadError,
    DownloadResult,
    file_name_from_url,
    stream_download,
    validate_source_url,
)

__all__ = [
    "ArchiveError",
    "DownloadError",
    "DownloadResult",
    "choose_member",
    "extract_member",
    "file_name_from_url",
    "list_csv_members",
    "stream_download",
    "validate_source_url",
]
