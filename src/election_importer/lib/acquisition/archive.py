"""ZIP archive inspection and member extraction.

TSE archives ship one CSV per state, often alongside a consolidated
``_BRASIL`` file and a PDF readme.
"""

import zipfile
import zlib
from collections.abc import Callable
from pathlib import Path, PurePosixPath

from loguru import logger

from election_importer.lib.importer.errors import ImportCancelledError, ImportPipelineError

DATA_SUFFIXES = (".csv", ".txt")

CONSOLIDATED_MARKER = "_BRASIL"

EXTRACT_CHUNK_SIZE = 1024 * 1024


class ArchiveError(ImportPipelineError):
    """Raised when an archive is corrupt or lacks the requested member."""


def is_zip_path(path: Path | str) -> bool:
    return str(path).lower().endswith(".zip")


def list_csv_members(zip_path: Path) -> list[str]:
    """List data file members of an archive.

    macOS resource-fork entries and directories are skipped.

    Raises:
        ArchiveError: If the file is not a valid ZIP archive.
    """
    try:
        with zipfile.ZipFile(zip_path, "r") as zf:
            names = zf.namelist()
    except (zipfile.BadZipFile, OSError) as exc:
        msg = f"Corrupt or unreadable archive {zip_path.name}: {exc}"
        raise ArchiveError(msg) from exc
    return sorted(
        name
        for name in names
        if not name.endswith("/")
        and "__MACOSX" not in name
        and not PurePosixPath(name).name.startswith("._")
        and name.lower().endswith(DATA_SUFFIXES)
    )


def choose_member(members: list[str], selected: str | None = None) -> str | None:
    """Pick the member to import.

    Preference order: the operator's explicit selection, the consolidated
    ``_BRASIL`` file, the only member. ``None`` means the operator has to
    choose.

    Raises:
        ArchiveError: If the archive has no data members or the selection
            is not among them.
    """
    if not members:
        msg = "Archive contains no CSV or TXT files"
        raise ArchiveError(msg)
    if selected:
        for name in members:
            if name == selected or PurePosixPath(name).name == selected:
                return name
        msg = f"File '{selected}' not found in archive"
        raise ArchiveError(msg)
    consolidated = [m for m in members if CONSOLIDATED_MARKER in PurePosixPath(m).name.upper()]
    if consolidated:
        return consolidated[0]
    if len(members) == 1:
        return members[0]
    return None


def extract_member(
    zip_path: Path,
    member: str,
    dest_dir: Path,
    *,
    should_cancel: Callable[[], bool] | None = None,
) -> Path:
    """Extract a single member into ``dest_dir`` under its base name.

    The member is copied in 1 MiB chunks, checking ``should_cancel``
    before each one. A cancelled or failed extraction leaves no file behind.

    Returns:
        Path of the extracted file.

    Raises:
        ArchiveError: If the archive is corrupt or the member is missing.
        ImportCancelledError: If ``should_cancel`` returns True mid-copy.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    target = dest_dir / PurePosixPath(member).name
    logger.debug(f"Extracting {member} from {zip_path.name} to {target}")
    try:
        with zipfile.ZipFile(zip_path, "r") as zf, zf.open(member) as src, target.open("wb") as out:
            while True:
                if should_cancel is not None and should_cancel():
                    msg = f"Extraction of {member} cancelled"
                    raise ImportCancelledError(msg)
                chunk = src.read(EXTRACT_CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
    except ImportCancelledError:
        target.unlink(missing_ok=True)
        raise
    except KeyError as exc:
        msg = f"File '{member}' not found in archive {zip_path.name}"
        raise ArchiveError(msg) from exc
    except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as exc:
        target.unlink(missing_ok=True)
        msg = f"Failed to extract {member} from {zip_path.name}: {exc}"
        raise ArchiveError(msg) from exc
    return target
