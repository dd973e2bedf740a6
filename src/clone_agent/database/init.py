"""
Database migration runner.

Applies pending SQL files from clone_agent/database/migrations/ in version
order and records each one in the schema_migrations table. Safe to run
repeatedly; applied versions are skipped.

Usage:
    from clone_agent.database import run_migrations
    applied = await run_migrations()

    # Standalone:
    python -m clone_agent.database.init
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import asyncpg
from rich.console import Console
from rich.panel import Panel

from clone_agent.database.pool import close_pool, get_connection

console = Console()

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

async def create_schema_migrations_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(255) PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

async def get_applied_migrations(conn: asyncpg.Connection) -> set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
    return {row["version"] for row in rows}

def get_pending_migrations(
    applied: set[str], migrations_dir: Path = MIGRATIONS_DIR
) -> list[tuple[str, Path]]:
    """
    Migration files not applied yet.

    The version is the numeric prefix of the file name
    ("001" for "001_message_queue.sql"); files without one are skipped.

    Returns:
        List of (version, file_path) tuples sorted by version.
    """
    if not migrations_dir.exists():
        console.print(f"[yellow]Migrations directory not found: {migrations_dir}[/yellow]")
        return []

    pending: list[tuple[str, Path]] = []
    for file_path in sorted(migrations_dir.glob("*.sql")):
        version = file_path.stem.split("_")[0]
        if not version.isdigit():
            console.print(f"[yellow]Skipping non-numeric version: {file_path.name}[/yellow]")
            continue
        if version not in applied:
            pending.append((version, file_path))

    return sorted(pending, key=lambda x: x[0])

async def apply_migration(conn: asyncpg.Connection, version: str, file_path: Path) -> None:
    """
    Apply one migration file inside a transaction and record it.

    Raises:
        RuntimeError: If the file is unreadable or empty.
    """
    console.print(f"  [cyan]Applying migration {version}: {file_path.name}[/cyan]")

    try:
        sql = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise RuntimeError(f"Failed to read migration file {file_path}: {e}")

    if not sql.strip():
        raise RuntimeError(f"Migration file is empty: {file_path}")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES ($1, NOW())",
            version,
        )

    console.print(f"  [green]✓[/green] Migration {version} applied")

async def run_migrations(migrations_dir: Optional[Path] = None) -> int:
    """
    Run all pending migrations.

    Returns:
        Number of migrations applied.
    """
    async with get_connection() as conn:
        await create_schema_migrations_table(conn)
        applied = await get_applied_migrations(conn)
        pending = get_pending_migrations(applied, migrations_dir or MIGRATIONS_DIR)

        if not pending:
            console.print("[dim]No pending migrations[/dim]")
            return 0

        console.print(f"[bold]Found {len(pending)} pending migration(s)[/bold]")
        for version, file_path in pending:
            await apply_migration(conn, version, file_path)
        return len(pending)

async def init_database() -> int:
    """Prepare the schema for the reply queue. Returns migrations applied."""
    return await run_migrations()

async def main() -> None:
    console.print(Panel("[bold blue]Clone Agent Migrations[/bold blue]", width=console.width))
    try:
        applied_count = await run_migrations()
        console.print(f"\n[bold green]Success![/bold green] Applied {applied_count} migration(s)")
    except (RuntimeError, asyncpg.PostgresError) as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        sys.exit(1)
    finally:
        await close_pool()

if __name__ == "__main__":
    asyncio.run(main())
