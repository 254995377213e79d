"""Import CLI commands for TSE election result files.

Jobs created here run in-process: the command configures the import
scheduler, submits the job and waits for the queue to drain before
printing a summary.
"""

import asyncio
import shutil
import uuid
from functools import partial
from pathlib import Path

import typer

import_app = typer.Typer()


def _echo_summary(job) -> None:  # type: ignore[no-untyped-def]
    """Print the outcome of an import job."""
    from election_importer.lib.importer.progress import completion_outcome

    typer.echo(f"\nImport job {job.id} {job.status}:")
    typer.echo(f"  File:        {job.file_name}")
    typer.echo(f"  Total rows:  {job.total_rows if job.total_rows is not None else '-'}")
    typer.echo(f"  Processed:   {job.processed_rows}")
    typer.echo(f"  Skipped:     {job.skipped_rows}")
    typer.echo(f"  Errors:      {job.error_count}")
    if job.status == "completed":
        outcome = completion_outcome(job.processed_rows, job.skipped_rows, job.total_rows)
        typer.echo(f"  Outcome:     {outcome}")
    if job.status_message:
        typer.echo(f"  Note:        {job.status_message}")
    if job.error_message:
        typer.echo(f"  Message:     {job.error_message}")
    if job.status == "awaiting_selection":
        typer.echo("  The archive holds several files; choose one with 'import select':")
        for member in job.available_files or []:
            typer.echo(f"    {member}")


async def _run_until_idle(job_ids: list[int]) -> None:
    """Queue jobs on the in-process scheduler and wait for all of them.

    Downloads draw a tqdm bar, as the command runs in a terminal.
    """
    from election_importer.core.config import get_settings
    from election_importer.core.scheduler import scheduler
    from election_importer.services.pipeline_service import run_import_job

    settings = get_settings().model_copy(update={"download_progress_bar": True})
    scheduler.configure(partial(run_import_job, settings=settings), max_active=settings.max_active_jobs)
    for job_id in job_ids:
        scheduler.submit(job_id)
    await scheduler.wait_idle()


async def _reload_and_summarize(job_ids: list[int]) -> None:
    from election_importer.core.database import get_session_factory
    from election_importer.models.import_job import ImportJob

    async with get_session_factory()() as session:
        for job_id in job_ids:
            job = await session.get(ImportJob, job_id)
            if job is not None:
                _echo_summary(job)


@import_app.command("file")
def import_file(
    file: Path = typer.Argument(..., help="Path to a TSE CSV/TXT file or ZIP archive", exists=True),  # noqa: B008
    election_year: int | None = typer.Option(None, "--year", help="Election year of the file"),
    region: str | None = typer.Option(None, "--region", help="UF (state) code"),
    cargo_filter: int | None = typer.Option(None, "--cargo", help="Only import rows with this CD_CARGO"),
    selected_file: str | None = typer.Option(None, "--member", help="Archive member to import"),
) -> None:
    """Import a local TSE file."""
    asyncio.run(_import_file(file, election_year, region, cargo_filter, selected_file))


async def _import_file(
    file_path: Path,
    election_year: int | None,
    region: str | None,
    cargo_filter: int | None,
    selected_file: str | None,
) -> None:
    """Async implementation of local file import."""
    from election_importer.core.config import get_settings
    from election_importer.core.database import dispose_engine, get_session_factory, init_engine
    from election_importer.lib.importer.errors import ImportPipelineError
    from election_importer.services.file_service import uploads_directory
    from election_importer.services.import_service import create_upload_import

    settings = get_settings()
    init_engine(settings.database_url)

    uploads = uploads_directory(settings.import_work_path)
    uploads.mkdir(parents=True, exist_ok=True)
    staged = uploads / f"{uuid.uuid4().hex}_{file_path.name}"
    shutil.copy2(file_path, staged)

    try:
        async with get_session_factory()() as session:
            try:
                job = await create_upload_import(
                    session,
                    staged,
                    file_path.name,
                    settings,
                    election_year=election_year,
                    region=region.upper() if region else None,
                    cargo_filter=cargo_filter,
                    selected_file=selected_file,
                )
            except (ImportPipelineError, ValueError) as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(code=1) from e
            typer.echo(f"Import job created: {job.id}")

        typer.echo(f"Processing {file_path}...")
        await _run_until_idle([job.id])
        await _reload_and_summarize([job.id])
    finally:
        staged.unlink(missing_ok=True)
        await dispose_engine()


@import_app.command("url")
def import_url(
    url: str = typer.Argument(..., help="HTTPS URL of a TSE .zip archive"),
    election_year: int | None = typer.Option(None, "--year", help="Election year of the file"),
    region: str | None = typer.Option(None, "--region", help="UF (state) code"),
    cargo_filter: int | None = typer.Option(None, "--cargo", help="Only import rows with this CD_CARGO"),
    selected_file: str | None = typer.Option(None, "--member", help="Archive member to import"),
) -> None:
    """Download and import a TSE archive."""
    asyncio.run(_import_url(url, election_year, region, cargo_filter, selected_file))


async def _import_url(
    url: str,
    election_year: int | None,
    region: str | None,
    cargo_filter: int | None,
    selected_file: str | None,
) -> None:
    """Async implementation of URL import."""
    from election_importer.core.config import get_settings
    from election_importer.core.database import dispose_engine, get_session_factory, init_engine
    from election_importer.lib.importer.errors import ImportPipelineError
    from election_importer.services.import_service import create_url_import

    settings = get_settings()
    init_engine(settings.database_url)

    try:
        async with get_session_factory()() as session:
            try:
                job = await create_url_import(
                    session,
                    url,
                    settings,
                    election_year=election_year,
                    region=region.upper() if region else None,
                    cargo_filter=cargo_filter,
                    selected_file=selected_file,
                )
            except (ImportPipelineError, ValueError) as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(code=1) from e
            typer.echo(f"Import job created: {job.id}")

        typer.echo(f"Downloading {url}...")
        await _run_until_idle([job.id])
        await _reload_and_summarize([job.id])
    finally:
        await dispose_engine()


@import_app.command("select")
def select_member(
    job_id: int = typer.Argument(..., help="Import job awaiting file selection"),
    file_name: str | None = typer.Option(None, "--file", help="Archive member to import"),
    import_all: bool = typer.Option(False, "--all", help="Import every member as its own job"),
) -> None:
    """Choose the archive member for a job awaiting selection and run it."""
    if bool(file_name) == import_all:
        typer.echo("Error: pass exactly one of --file or --all", err=True)
        raise typer.Exit(code=1)
    asyncio.run(_select_member(job_id, file_name, import_all))


async def _select_member(job_id: int, file_name: str | None, import_all: bool) -> None:
    from election_importer.core.config import get_settings
    from election_importer.core.database import dispose_engine, get_session_factory, init_engine
    from election_importer.core.scheduler import scheduler
    from election_importer.lib.importer.errors import ImportPipelineError
    from election_importer.services.import_service import select_import_files
    from election_importer.services.pipeline_service import run_import_job

    settings = get_settings().model_copy(update={"download_progress_bar": True})
    init_engine(settings.database_url)
    scheduler.configure(partial(run_import_job, settings=settings), max_active=settings.max_active_jobs)

    try:
        async with get_session_factory()() as session:
            try:
                job, children = await select_import_files(
                    session, job_id, file_name=file_name, import_all=import_all, scheduler=scheduler
                )
            except ImportPipelineError as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(code=1) from e
            job_ids = [c.id for c in children] or [job.id]

        await scheduler.wait_idle()
        await _reload_and_summarize(job_ids)
    finally:
        await dispose_engine()


@import_app.command("status")
def import_status(
    job_id: int = typer.Argument(..., help="Import job ID"),
) -> None:
    """Show an import job's status, progress and counters."""
    asyncio.run(_import_status(job_id))


async def _import_status(job_id: int) -> None:
    from election_importer.core.config import get_settings
    from election_importer.core.database import dispose_engine, get_session_factory, init_engine
    from election_importer.lib.importer.progress import compute_progress
    from election_importer.services.batch_service import batch_stats
    from election_importer.services.import_service import get_import_job

    settings = get_settings()
    init_engine(settings.database_url)

    try:
        async with get_session_factory()() as session:
            job = await get_import_job(session, job_id)
            if job is None:
                typer.echo(f"Import job {job_id} not found", err=True)
                raise typer.Exit(code=1)
            _echo_summary(job)
            progress = compute_progress(job)
            if progress.percent is not None:
                typer.echo(f"  Progress:    {progress.percent:.1f}%")
            if progress.eta_seconds is not None:
                typer.echo(f"  ETA:         {progress.eta_seconds:.0f}s")
            stats = await batch_stats(session, job_id)
            typer.echo(
                f"  Batches:     {stats['total']} total, {stats['completed']} completed, "
                f"{stats['failed']} failed, {stats['pending']} pending"
            )
    finally:
        await dispose_engine()


@import_app.command("reprocess")
def reprocess(
    job_id: int = typer.Argument(..., help="Import job ID"),
    batch_id: int | None = typer.Option(None, "--batch", help="Reprocess only this batch"),
) -> None:
    """Reprocess a job's failed batches."""
    asyncio.run(_reprocess(job_id, batch_id))


async def _reprocess(job_id: int, batch_id: int | None) -> None:
    from election_importer.core.config import get_settings
    from election_importer.core.database import dispose_engine, get_session_factory, init_engine
    from election_importer.lib.importer.errors import ImportPipelineError
    from election_importer.services.batch_service import reprocess_batch, reprocess_failed_batches

    settings = get_settings()
    init_engine(settings.database_url)

    try:
        async with get_session_factory()() as session:
            try:
                if batch_id is not None:
                    batches = [await reprocess_batch(session, job_id, batch_id)]
                else:
                    batches = await reprocess_failed_batches(session, job_id)
            except ImportPipelineError as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(code=1) from e
            for batch in batches:
                typer.echo(
                    f"Batch {batch.batch_index} ({batch.row_start + 1}-{batch.row_end}): {batch.status}, "
                    f"{batch.processed_rows} processed, {batch.skipped_rows} skipped, {batch.error_count} errors"
                )
            if not batches:
                typer.echo("No failed batches to reprocess")
    finally:
        await dispose_engine()


@import_app.command("batch")
def show_batch(
    job_id: int = typer.Argument(..., help="Import job ID"),
    batch_id: int = typer.Argument(..., help="Batch ID"),
) -> None:
    """Show one batch with its rejected rows."""
    asyncio.run(_show_batch(job_id, batch_id))


async def _show_batch(job_id: int, batch_id: int) -> None:
    from election_importer.core.config import get_settings
    from election_importer.core.database import dispose_engine, get_session_factory, init_engine
    from election_importer.lib.importer.errors import ImportPipelineError
    from election_importer.services.batch_service import get_batch, list_batch_errors

    settings = get_settings()
    init_engine(settings.database_url)

    try:
        async with get_session_factory()() as session:
            try:
                batch = await get_batch(session, job_id, batch_id)
            except ImportPipelineError as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(code=1) from e
            errors = await list_batch_errors(session, batch)
            typer.echo(f"Batch {batch.batch_index} of import job {job_id}: {batch.status}")
            typer.echo(f"  Rows:        {batch.row_start + 1}-{batch.row_end} ({batch.total_rows})")
            typer.echo(f"  Inserted:    {batch.inserted_rows}")
            typer.echo(f"  Skipped:     {batch.skipped_rows}")
            typer.echo(f"  Errors:      {batch.error_count}")
            typer.echo(f"  Pending:     {max(batch.total_rows - batch.processed_rows, 0)}")
            if batch.error_summary:
                typer.echo(f"  Summary:     {batch.error_summary}")
            for error in errors:
                typer.echo(f"  row {error.row_number}: {error.error_type}: {error.error_message}")
    finally:
        await dispose_engine()


@import_app.command("verify")
def verify(
    job_id: int = typer.Argument(..., help="Import job ID"),
    expected_rows: int | None = typer.Option(None, "--expected", help="Reference row count"),
) -> None:
    """Run the integrity check for a completed import."""
    asyncio.run(_verify(job_id, expected_rows))


async def _verify(job_id: int, expected_rows: int | None) -> None:
    from election_importer.core.config import get_settings
    from election_importer.core.database import dispose_engine, get_session_factory, init_engine
    from election_importer.lib.importer.errors import ImportPipelineError
    from election_importer.services.integrity_service import verify_import

    settings = get_settings()
    init_engine(settings.database_url)

    try:
        async with get_session_factory()() as session:
            try:
                result = await verify_import(session, job_id, expected_rows=expected_rows)
            except ImportPipelineError as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(code=1) from e
            typer.echo(result.validation_message)
            if not result.is_valid:
                raise typer.Exit(code=1)
    finally:
        await dispose_engine()


@import_app.command("errors")
def export_errors(
    job_id: int = typer.Argument(..., help="Import job ID"),
    output: Path = typer.Option(..., "--output", "-o", help="Destination CSV file"),  # noqa: B008
) -> None:
    """Export a job's rejected rows to CSV."""
    asyncio.run(_export_errors(job_id, output))


async def _export_errors(job_id: int, output: Path) -> None:
    from election_importer.core.config import get_settings
    from election_importer.core.database import dispose_engine, get_session_factory, init_engine
    from election_importer.lib.exporter import write_csv
    from election_importer.services.import_service import export_error_records

    settings = get_settings()
    init_engine(settings.database_url)

    try:
        async with get_session_factory()() as session:
            records = await export_error_records(session, job_id)
        count = write_csv(output, records)
        typer.echo(f"Exported {count} error record(s) to {output}")
    finally:
        await dispose_engine()
