"""
Preflight checks run before remote calendar commands to catch common
misconfigurations early.
"""

import logging
import os
import sqlite3
from pathlib import Path
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from coach_calendar_sync.models import SyncSettings
from coach_calendar_sync.settings import CLIENT_ID_ENV
from coach_calendar_sync.settings import CLIENT_ID_KEY
from coach_calendar_sync.settings import TIMEZONE_KEY

logger = logging.getLogger(__name__)


def collect_issues(db_path: Path, settings: SyncSettings) -> list[tuple[str, str, str]]:
    """Return (label, detail, hint) for every problem found."""
    issues: list[tuple[str, str, str]] = []

    # 1. OAuth client configured
    if not settings.client_id:
        logger.error("No Google OAuth client id configured")
        issues.append(
            (
                "Google OAuth client",
                "missing clientId",
                f"Run: coach-calendar-sync config set {CLIENT_ID_KEY} <id>  "
                f"(or export {CLIENT_ID_ENV})",
            )
        )

    # 2. Timezone resolvable
    try:
        ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.error("Invalid calendar timezone %r: %s", settings.timezone, e)
        issues.append(
            (
                "Calendar timezone",
                f"Unknown timezone: {settings.timezone}",
                f"Run: coach-calendar-sync config set {TIMEZONE_KEY} Europe/London",
            )
        )

    # 3. Database directory writable
    if not os.access(db_path.parent, os.W_OK):
        logger.error("Database directory not writable: %s", db_path.parent)
        issues.append(
            (
                "Database",
                f"{db_path.parent} is not writable",
                f"Check permissions on {db_path.parent} "
                f"(journal files must be creatable alongside the DB)",
            )
        )
    elif db_path.exists():
        try:
            conn = sqlite3.connect(db_path)
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("ROLLBACK")
            conn.close()
        except sqlite3.Error as e:
            logger.error("Database not writable (%s): %s", db_path, e)
            issues.append(("Database", f"{db_path}: {e}", f"Check permissions on {db_path}"))

    return issues


def run_preflight_checks(db_path: Path, settings: SyncSettings, console: Console) -> bool:
    """Return True if remote commands may proceed; print issues otherwise."""
    issues = collect_issues(db_path, settings)
    if issues:
        _print_issues(issues, console)
        return False
    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
