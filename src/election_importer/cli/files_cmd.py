"""Temporary import file CLI commands."""

import typer

files_app = typer.Typer()


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = size / 1024
    for unit in ("KB", "MB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@files_app.command("list")
def list_files() -> None:
    """List temporary files grouped by import job."""
    from election_importer.core.config import get_settings
    from election_importer.services.file_service import list_file_groups

    settings = get_settings()
    groups = list_file_groups(settings.import_work_path)
    if not groups:
        typer.echo("No temporary import files.")
        return
    for group in groups:
        label = f"job {group.job_id}" if group.job_id is not None else group.bucket
        typer.echo(f"{label}: {len(group.files)} file(s), {_format_size(group.total_size)}")
        for info in group.files:
            typer.echo(f"  {info.name}  {_format_size(info.size)}")
    typer.echo(f"Total: {_format_size(sum(g.total_size for g in groups))}")


@files_app.command("delete")
def delete_files(
    target: str = typer.Argument(..., help="Job ID, or 'uploads' for the uploads bucket"),
) -> None:
    """Delete the temporary files of one job, or empty the uploads bucket.

    Jobs running in another process are not visible here, so only delete
    files of jobs that are not being processed.
    """
    from election_importer.core.config import get_settings
    from election_importer.lib.importer.errors import ImportPipelineError
    from election_importer.services.file_service import delete_file_group

    settings = get_settings()
    try:
        group = delete_file_group(settings.import_work_path, target, keep_newer_than=settings.upload_grace_seconds)
    except ImportPipelineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(f"Deleted {len(group.files)} file(s), {_format_size(group.total_size)} freed")
