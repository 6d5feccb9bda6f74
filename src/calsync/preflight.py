"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from urllib.parse import urlparse

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from calsync.models import Provider
from calsync.models import SyncSettings

logger = logging.getLogger(__name__)


def _connected_providers(settings: SyncSettings, user_id: int | None) -> list[sqlite3.Row]:
    """(provider, app_password) rows, or [] when nothing is stored yet."""
    db_path = settings.state_db_path
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "user_integrations" not in tables:
            return []
        query = "SELECT DISTINCT provider, app_password FROM user_integrations"
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        return conn.execute(query, params).fetchall()
    finally:
        conn.close()


def run_preflight_checks(
    settings: SyncSettings, console: Console, user_id: int | None = None
) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. State DB parent dir writable + DB readable if it exists
    db_path = settings.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create state DB directory {db_path.parent}: {e}")
        issues.append(
            (
                "State database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent}",
            )
        )
        _print_issues(issues, console)
        return False

    rows = []
    if db_path.exists():
        try:
            conn = sqlite3.connect(db_path)
            conn.execute("SELECT 1")
            # BEGIN IMMEDIATE needs a journal file next to the DB.
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("ROLLBACK")
            conn.close()
            rows = _connected_providers(settings, user_id)
        except sqlite3.Error as e:
            logger.error(f"State DB not readable/writable ({db_path}): {e}")
            issues.append(
                (
                    "State database",
                    f"{db_path}: {e}",
                    f"Check permissions on {db_path.parent} "
                    f"(journal files must be creatable alongside the DB)",
                )
            )

    # 2. OAuth client registration for each connected OAuth provider
    providers = {Provider(row["provider"]) for row in rows}
    for provider in sorted(providers, key=lambda p: p.value):
        if not provider.uses_oauth:
            continue
        oauth = settings.oauth_config(provider)
        if not oauth.is_configured:
            logger.error(f"{provider.value} OAuth client is not configured")
            issues.append(
                (
                    provider.display_name,
                    "client_id, client_secret or redirect_uri missing",
                    f"Set them in the [{provider.value}] section of the config file "
                    f"or via {provider.name}_CLIENT_ID / {provider.name}_CLIENT_SECRET / "
                    f"{provider.name}_REDIRECT_URI",
                )
            )

    # 3. CalDAV endpoint and stored app password
    if Provider.APPLE in providers:
        url = urlparse(settings.caldav.calendar_url)
        if url.scheme not in ("http", "https") or not url.netloc:
            logger.error(f"Invalid CalDAV calendar URL: {settings.caldav.calendar_url}")
            issues.append(
                (
                    Provider.APPLE.display_name,
                    f"Invalid calendar_url: {settings.caldav.calendar_url}",
                    "Set calendar_url in the [caldav] section to the collection URL",
                )
            )
        for row in rows:
            if row["provider"] == Provider.APPLE.value and not row["app_password"]:
                issues.append(
                    (
                        Provider.APPLE.display_name,
                        "No app-specific password stored",
                        "Run: calsync connect-apple",
                    )
                )
                break

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
