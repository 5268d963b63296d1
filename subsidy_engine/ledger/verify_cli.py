"""
Audit Chain Verifier — independent integrity check of the audit trail.

Recomputes every hash in the stored audit chain and reports whether any
entry was altered, inserted or removed after the fact.

Usage:
    python -m subsidy_engine.ledger.verify_cli
    python -m subsidy_engine.ledger.verify_cli --database-url sqlite:///subsidy.db
    python -m subsidy_engine.ledger.verify_cli --verbose
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from subsidy_engine.config import settings
from subsidy_engine.ledger.audit import AuditTrail, SqlAuditStore

console = Console()


def run_verification(trail: AuditTrail, verbose: bool = False) -> bool:
    """
    Verify the chain held by ``trail`` and print the result.

    Returns:
        True if the chain is valid, False otherwise.
    """
    console.print("\n[bold blue]═══ Subsidy Audit Chain Verification ═══[/bold blue]\n")

    count = trail.store.count()
    console.print(f"  Entries in trail: [bold]{count}[/bold]")

    if count == 0:
        console.print("[yellow]⚠ Audit trail is empty — nothing to verify[/yellow]")
        return True

    console.print("  Verifying hash chain...", end=" ")
    start_time = time.time()
    is_valid, entries_verified, message = trail.verify_chain()
    elapsed = time.time() - start_time

    if is_valid:
        console.print("[bold green]✓ VALID[/bold green]")
        console.print(f"  Entries verified: [bold]{entries_verified}[/bold]")
        console.print(f"  Verification time: {elapsed:.3f}s")
    else:
        console.print("[bold red]✗ INVALID[/bold red]")
        console.print(f"  Failure at entry: {entries_verified}")
        console.print(f"  Reason: {message}")

    if verbose:
        table = Table(show_lines=True)
        table.add_column("Seq", style="cyan", width=6)
        table.add_column("Action", style="green", width=28)
        table.add_column("Principal", style="yellow", width=18)
        table.add_column("Resource", width=18)
        table.add_column("Hash (first 16)", style="dim", width=18)
        table.add_column("Timestamp", width=22)

        for entry in trail.entries():
            table.add_row(
                str(entry.sequence_number),
                entry.action,
                entry.principal_id,
                f"{entry.resource_type}/{entry.resource_id}",
                entry.entry_hash[:16] + "...",
                entry.timestamp.isoformat()[:19],
            )
        console.print(table)

    console.print("\n[bold blue]═══ Verification Complete ═══[/bold blue]\n")
    return is_valid


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Subsidy audit chain integrity verifier")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed entry listing",
    )
    args = parser.parse_args(argv)

    store = SqlAuditStore(args.database_url or settings.database_url_sync)
    store.initialize()
    is_valid = run_verification(AuditTrail(store), verbose=args.verbose)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
