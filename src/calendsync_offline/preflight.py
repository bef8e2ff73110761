"""
Preflight checks run before a flush to catch common misconfigurations early.
"""

import logging
import sqlite3

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from calendsync_offline.models import SyncConfig

logger = logging.getLogger(__name__)

HEALTH_PATH = "/healthz"


def run_preflight_checks(cfg: SyncConfig, console: Console) -> bool:
    """Return True if the flush may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Server reachable
    url = cfg.base_url.rstrip("/") + HEALTH_PATH
    try:
        response = httpx.get(url, timeout=cfg.request_timeout)
    except httpx.HTTPError as e:
        logger.error("Server unreachable at %s: %s", cfg.base_url, e)
        issues.append(
            (
                "Server",
                f"{cfg.base_url}: {e}",
                "Is the calendar server running? Check base_url in the config file",
            )
        )
    else:
        if not response.is_success:
            # The API can still work while the render pool reports unhealthy.
            logger.warning("Health check returned %d at %s", response.status_code, url)

    # 2. Database parent dir writable + DB writable if it exists
    db_path = cfg.db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create database directory %s: %s", db_path.parent, e)
        issues.append(
            (
                "Local database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent}",
            )
        )
    else:
        if db_path.exists():
            try:
                conn = sqlite3.connect(db_path)
                conn.execute("SELECT 1")
                # BEGIN IMMEDIATE takes the write lock and needs a journal file
                # next to the database.
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
                conn.close()
            except sqlite3.Error as e:
                logger.error("Database not readable/writable (%s): %s", db_path, e)
                issues.append(
                    (
                        "Local database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent} "
                        f"(journal files must be creatable alongside the DB)",
                    )
                )

    if issues:
        _print_issues(issues, console)
        return False

    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  \u2717  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       \u2192 {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
