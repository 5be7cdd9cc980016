"""Command line entry point for the registry sync.

    registry-sync run --mode full
    registry-sync run --mode incremental --workbook data/raw/registro.xlsx
    registry-sync init-db

Exit codes: 0 when the run completed (row errors included), 1 when the workbook
is missing or unreadable, 2 when the store is unreachable.
"""

from enum import Enum
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.orm import sessionmaker

from registry_sync.core.config import CLINICIAN_ALIAS_PATH, DB_URL, LOG_LEVEL, SYNC_LOG_DIR, WORKBOOK_PATH
from registry_sync.core.errors import StoreUnavailableError, WorkbookError
from registry_sync.core.logging import configure_logging
from registry_sync.db.session import make_engine, wait_for_store
from registry_sync.etl.pipeline import SyncResult, run_sync
from registry_sync.models import tables  # noqa: F401
from registry_sync.models.base import Base

EXIT_WORKBOOK_ERROR = 1
EXIT_STORE_UNAVAILABLE = 2

app = typer.Typer(
    name="registry-sync",
    help="Synchronize the transplant registry workbook into the relational store.",
    add_completion=False,
)
console = Console()


class SyncMode(str, Enum):
    full = "full"
    incremental = "incremental"


def _summary_table(result: SyncResult) -> Table:
    table = Table(title=f"Sync {result.mode} ({result.run_id})")
    table.add_column("Entity")
    for column in ("Checked", "Created", "Updated", "Skipped", "Failed"):
        table.add_column(column, justify="right")

    for entity, counters in result.stats.entities.items():
        table.add_row(
            entity,
            f"{counters.checked:,}",
            f"[green]{counters.created:,}[/green]" if counters.created else "0",
            f"[cyan]{counters.updated:,}[/cyan]" if counters.updated else "0",
            f"{counters.skipped:,}",
            f"[red]{counters.failed:,}[/red]" if counters.failed else "0",
        )
    return table


def _connect(db_url: str):
    engine = make_engine(db_url)
    try:
        wait_for_store(engine)
    except StoreUnavailableError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=EXIT_STORE_UNAVAILABLE)
    return engine


@app.command()
def run(
    mode: SyncMode = typer.Option(SyncMode.full, "--mode", "-m", case_sensitive=False, help="full or incremental"),
    workbook: Path = typer.Option(Path(WORKBOOK_PATH), "--workbook", "-w", help="Source workbook (.xlsx)"),
    aliases: Optional[Path] = typer.Option(
        Path(CLINICIAN_ALIAS_PATH), "--aliases", help="CSV mapping clinician name variants to CP codes"
    ),
    log_dir: Path = typer.Option(Path(SYNC_LOG_DIR), "--log-dir", help="Directory for the run audit log"),
    db_url: str = typer.Option(DB_URL, "--db-url", help="SQLAlchemy URL of the target store"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Run one synchronization pass over the workbook."""
    configure_logging("DEBUG" if verbose else LOG_LEVEL)

    engine = _connect(db_url)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    try:
        with Session() as db:
            result = run_sync(db, workbook, mode=mode.value, alias_path=aliases, log_dir=log_dir)
    except WorkbookError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=EXIT_WORKBOOK_ERROR)
    except StoreUnavailableError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=EXIT_STORE_UNAVAILABLE)
    finally:
        engine.dispose()

    console.print(_summary_table(result))
    errors = result.error_count
    console.print(f"Errors: [red]{errors:,}[/red]" if errors else "Errors: 0")
    for code, count in sorted(result.stats.errors_by_code().items()):
        console.print(f"  [dim]{code}[/dim] {count:,}")
    console.print(f"[dim]Audit log:[/dim] {result.audit_path}")


@app.command("init-db")
def init_db(
    db_url: str = typer.Option(DB_URL, "--db-url", help="SQLAlchemy URL of the target store"),
) -> None:
    """Create the registry tables if they do not exist."""
    configure_logging(LOG_LEVEL)
    engine = _connect(db_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()
    console.print("[green]✓[/green] DB tables created.")


if __name__ == "__main__":
    app()
