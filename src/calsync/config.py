"""
Settings loading: INI config file with environment fallback for OAuth secrets.

Example ``~/.config/calsync.conf``::

    [google]
    client_id = ...
    client_secret = ...
    redirect_uri = http://localhost:3000/api/auth/google/callback

    [outlook]
    client_id = ...
    client_secret = ...
    redirect_uri = http://localhost:3000/api/auth/outlook/callback

    [caldav]
    calendar_url = https://caldav.icloud.com/123456/calendars/home/
    uid_domain = example.com

    [sync]
    state_db = ~/.local/share/calsync-state.db
    http_timeout = 30
"""

import logging
import os
from configparser import ConfigParser
from pathlib import Path

from calsync.models import DEFAULT_STATE_DB
from calsync.models import CalendarSyncError
from calsync.models import OAuthClientConfig
from calsync.models import SyncSettings

logger = logging.getLogger(__name__)


def _load_config_file(config_path: Path) -> ConfigParser:
    parser = ConfigParser()
    if config_path.exists():
        parser.read(config_path)
    return parser


def _apply_oauth(parser: ConfigParser, section: str, env_prefix: str, target: OAuthClientConfig):
    values = dict(parser[section]) if section in parser else {}
    for key in ("client_id", "client_secret", "redirect_uri"):
        value = values.get(key) or os.getenv(f"{env_prefix}_{key.upper()}", "")
        setattr(target, key, value)
    if values.get("scopes"):
        target.scopes = values["scopes"].split()
    if values.get("authorize_url"):
        target.authorize_url = values["authorize_url"]
    if values.get("token_url"):
        target.token_url = values["token_url"]


def load_settings(
    config_path: Path,
    state_db: Path | None = None,
    verbose: bool = False,
) -> SyncSettings:
    """Build SyncSettings from the config file; explicit arguments win."""
    parser = _load_config_file(config_path)
    settings = SyncSettings(verbose=verbose)

    _apply_oauth(parser, "google", "GOOGLE", settings.google)
    _apply_oauth(parser, "outlook", "OUTLOOK", settings.outlook)

    if "caldav" in parser:
        caldav = parser["caldav"]
        settings.caldav.calendar_url = caldav.get("calendar_url", settings.caldav.calendar_url)
        settings.caldav.uid_domain = caldav.get("uid_domain", settings.caldav.uid_domain)
    if not settings.caldav.calendar_url.endswith("/"):
        settings.caldav.calendar_url += "/"

    sync_section = parser["sync"] if "sync" in parser else {}
    if state_db is not None:
        settings.state_db_path = state_db
    elif sync_section.get("state_db"):
        settings.state_db_path = Path(sync_section["state_db"]).expanduser()
    else:
        settings.state_db_path = DEFAULT_STATE_DB

    try:
        if sync_section.get("http_timeout"):
            settings.http_timeout = float(sync_section["http_timeout"])
        if sync_section.get("pull_max_results"):
            settings.pull_max_results = int(sync_section["pull_max_results"])
    except ValueError as e:
        raise CalendarSyncError(f"Invalid [sync] value in {config_path}: {e}") from e

    logger.debug(f"Loaded settings from {config_path} (state DB: {settings.state_db_path})")
    return settings
