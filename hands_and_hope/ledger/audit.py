"""
Caregiver Activity Audit Tool — independent activity chain verification.

An account owner or platform administrator can run this tool to check
that no caregiver activity record has been altered or removed after it
was written. Each grant's chain is recomputed from its first record.

Usage:
    python -m hands_and_hope.ledger.audit
    python -m hands_and_hope.ledger.audit --database-url postgresql://...
    python -m hands_and_hope.ledger.audit --grant-id <uuid> --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from hands_and_hope.access.errors import NotFoundError
from hands_and_hope.access.grants import GrantManager
from hands_and_hope.config import settings
from hands_and_hope.ledger.database import Database
from hands_and_hope.ledger.service import ActivityLogger

console = Console()


def run_audit(
    database_url: str,
    grant_id: str | None = None,
    verbose: bool = False,
) -> bool:
    """
    Verify the activity chain of one grant, or of every grant with activity.

    Args:
        database_url: SQLAlchemy connection string.
        grant_id: Restrict the audit to this grant.
        verbose: Print every record of each audited grant.

    Returns:
        True if every audited chain is valid, False otherwise.
    """
    console.print("\n[bold blue]═══ Caregiver Activity Audit ═══[/bold blue]\n")

    db = Database(database_url)
    try:
        return _audit(GrantManager(db), ActivityLogger(db), grant_id, verbose)
    finally:
        db.dispose()


def _audit(
    grants: GrantManager,
    activity: ActivityLogger,
    grant_id: str | None,
    verbose: bool,
) -> bool:
    grant_ids = [grant_id] if grant_id else activity.grants_with_activity()
    if not grant_ids:
        console.print("[yellow]⚠ No caregiver activity recorded, nothing to verify[/yellow]")
        return True

    summary = Table(title="Activity chains")
    summary.add_column("Grant", style="cyan")
    summary.add_column("Owner", style="green")
    summary.add_column("Caregiver", style="yellow")
    summary.add_column("Status")
    summary.add_column("Records", justify="right")
    summary.add_column("Chain")

    all_valid = True
    audited = []
    start_time = time.time()
    for gid in grant_ids:
        try:
            grant = grants.get_grant(gid)
        except NotFoundError:
            all_valid = False
            summary.add_row(str(gid)[:8] + "...", "—", "—", "—", "0", "[red]✗ Grant not found[/red]")
            continue
        audited.append(gid)
        is_valid, verified, message = activity.verify_chain(gid)
        all_valid = all_valid and is_valid
        summary.add_row(
            str(grant.grant_id)[:8] + "...",
            grant.owner_account_id,
            grant.caregiver_email,
            grant.status.value,
            str(verified),
            "[green]✓ VALID[/green]" if is_valid else f"[red]✗ {message}[/red]",
        )
    elapsed = time.time() - start_time

    console.print(summary)
    console.print(f"  Grants audited: [bold]{len(audited)}[/bold]")
    console.print(f"  Verification time: {elapsed:.3f}s")

    if verbose:
        for gid in audited:
            _print_records(activity, gid)

    status = "[bold green]ALL CHAINS VALID[/bold green]" if all_valid else "[bold red]INTEGRITY FAILURE[/bold red]"
    console.print(f"\n{status}\n")
    return all_valid


def _print_records(activity: ActivityLogger, grant_id) -> None:
    table = Table(title=f"Grant {grant_id}", show_lines=True)
    table.add_column("Seq", style="cyan", width=6)
    table.add_column("Action", style="green", width=22)
    table.add_column("Caregiver", style="yellow", width=20)
    table.add_column("Resource", width=24)
    table.add_column("Hash (first 16)", style="dim", width=18)
    table.add_column("Timestamp", width=22)

    cursor = None
    while True:
        page = activity.list_for_grant(grant_id, cursor=cursor, limit=settings.activity_page_size_max)
        for record in page.records:
            table.add_row(
                str(record.sequence_number),
                record.action.value,
                record.caregiver_name,
                f"{record.resource_type}: {record.resource_name or '—'}",
                record.entry_hash[:16] + "...",
                str(record.timestamp)[:19],
            )
        if page.next_cursor is None:
            break
        cursor = page.next_cursor
    console.print(table)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Hands and Hope caregiver activity integrity auditor"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--grant-id",
        default=None,
        help="Audit a single grant",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show every activity record",
    )
    args = parser.parse_args()

    db_url = args.database_url or settings.database_url_sync
    is_valid = run_audit(db_url, grant_id=args.grant_id, verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
