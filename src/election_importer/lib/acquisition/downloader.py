"""Streaming download of remote source archives.

Downloads use a ``.part`` temporary file that is renamed on success, so no
partial file is ever mistaken for a complete archive. Downloads are never
resumed; a retry starts again from byte zero.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

import httpx
from loguru import logger
from tqdm import tqdm

from election_importer.lib.importer.errors import ImportCancelledError, ImportPipelineError, InvalidSourceError

ProgressCallback = Callable[[int, int], Awaitable[None]]
CancelCheck = Callable[[], bool]


class DownloadError(ImportPipelineError):
    """Raised when a source archive cannot be downloaded."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class DownloadResult:
    """Outcome of a completed download.

    Attributes:
        url: Source URL.
        local_path: Final path of the downloaded file.
        downloaded_bytes: Bytes written.
        total_bytes: ``Content-Length`` of the response, 0 when absent.
    """

    url: str
    local_path: Path
    downloaded_bytes: int
    total_bytes: int


def validate_source_url(url: str, allowed_domains: list[str]) -> None:
    """Validate that a URL points at a ZIP archive on an allowed host.

    Args:
        url: The URL to validate.
        allowed_domains: Lowercase host names accepted as sources.

    Raises:
        InvalidSourceError: If the scheme is not HTTPS, the host is not
            allowed, or the path does not end in ``.zip``.
    """
    parsed = urlparse(url)
    if parsed.scheme != "https":
        msg = f"Unsupported URL scheme '{parsed.scheme}': only https is accepted"
        raise InvalidSourceError(msg)
    if not allowed_domains:
        msg = "No source domains are configured"
        raise InvalidSourceError(msg)
    hostname = (parsed.hostname or "").lower()
    if hostname not in allowed_domains:
        msg = f"Domain '{hostname}' is not an allowed source ({', '.join(allowed_domains)})"
        raise InvalidSourceError(msg)
    if not parsed.path.lower().endswith(".zip"):
        msg = "Source URL must point to a .zip archive"
        raise InvalidSourceError(msg)


def file_name_from_url(url: str) -> str:
    """Return the decoded last path segment of a URL."""
    return PurePosixPath(unquote(urlparse(url).path)).name or "download.zip"


async def stream_download(
    url: str,
    dest: Path,
    *,
    on_progress: ProgressCallback | None = None,
    should_cancel: CancelCheck | None = None,
    timeout: float = 300.0,
    chunk_size: int = 65536,
    client: httpx.AsyncClient | None = None,
    show_progress: bool = False,
) -> DownloadResult:
    """Stream ``url`` to ``dest``.

    Args:
        url: Source URL.
        dest: Final local path.
        on_progress: Awaited after every chunk with
            ``(downloaded_bytes, total_bytes)``. Throttling is the caller's
            concern.
        should_cancel: Checked before every chunk is written.
        timeout: Request timeout in seconds.
        chunk_size: Bytes per streamed chunk.
        client: Optional shared client; one is created when omitted.
        show_progress: Draw a tqdm bar (CLI use).

    Returns:
        DownloadResult for the completed file.

    Raises:
        DownloadError: On non-2xx status, network failure or timeout.
        ImportCancelledError: When ``should_cancel()`` turns true.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    part_path = dest.with_suffix(dest.suffix + ".part")
    downloaded = 0
    total = 0

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    try:
        async with http.stream("GET", url) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length") or 0)
            logger.info(f"Downloading {url} ({total or 'unknown'} bytes) to {dest}")
            with (
                part_path.open("wb") as f,
                tqdm(
                    total=total or None,
                    unit="B",
                    unit_scale=True,
                    desc=dest.name,
                    disable=not show_progress,
                ) as pbar,
            ):
                async for chunk in response.aiter_bytes(chunk_size=chunk_size):
                    if should_cancel is not None and should_cancel():
                        msg = f"Download of {url} cancelled after {downloaded} bytes"
                        raise ImportCancelledError(msg)
                    f.write(chunk)
                    downloaded += len(chunk)
                    pbar.update(len(chunk))
                    if on_progress is not None:
                        await on_progress(downloaded, total)
        part_path.rename(dest)
    except httpx.HTTPStatusError as exc:
        part_path.unlink(missing_ok=True)
        msg = f"Download failed for {url}: HTTP {exc.response.status_code}"
        raise DownloadError(msg, status_code=exc.response.status_code) from exc
    except httpx.TimeoutException as exc:
        part_path.unlink(missing_ok=True)
        msg = f"Download timed out for {url}"
        raise DownloadError(msg) from exc
    except httpx.HTTPError as exc:
        part_path.unlink(missing_ok=True)
        msg = f"Download failed for {url}: {exc}"
        raise DownloadError(msg) from exc
    except OSError as exc:
        part_path.unlink(missing_ok=True)
        msg = f"File write error for {dest.name}: {exc}"
        raise DownloadError(msg) from exc
    except ImportCancelledError:
        part_path.unlink(missing_ok=True)
        raise
    finally:
        if owns_client:
            await http.aclose()

    logger.info(f"Downloaded {dest.name} ({downloaded} bytes)")
    return DownloadResult(url=url, local_path=dest, downloaded_bytes=downloaded, total_bytes=total)
