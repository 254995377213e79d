"""Database migration CLI commands using Alembic programmatically."""

import asyncio

import typer
from loguru import logger

db_app = typer.Typer()


@db_app.command()
def upgrade(
    revision: str = typer.Argument("head", help="Target revision"),
) -> None:
    """Run database migrations up to the target revision."""
    from alembic import command
    from alembic.config import Config

    config = Config("alembic.ini")
    logger.info(f"Upgrading database to {revision}")
    command.upgrade(config, revision)
    logger.info("Database upgrade complete")


@db_app.command()
def downgrade(
    revision: str = typer.Argument("-1", help="Target revision"),
) -> None:
    """Rollback database migration to the target revision."""
    from alembic import command
    from alembic.config import Config

    config = Config("alembic.ini")
    logger.info(f"Downgrading database to {revision}")
    command.downgrade(config, revision)
    logger.info("Database downgrade complete")


@db_app.command("create-all")
def create_all() -> None:
    """Create tables straight from the models (SQLite development databases)."""
    asyncio.run(_create_all())


async def _create_all() -> None:
    from election_importer.core.config import get_settings
    from election_importer.core.database import create_all_tables, dispose_engine, init_engine

    settings = get_settings()
    init_engine(settings.database_url)
    try:
        await create_all_tables()
        typer.echo("Tables created")
    finally:
        await dispose_engine()
