"""
Data models and the exception hierarchy. Nothing here touches sqlite or HTTP.
"""

from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/calsync-state.db"
DEFAULT_CONFIG = Path.home() / ".config/calsync.conf"


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class ProviderError(CalendarSyncError):
    """A remote call failed: transport error, timeout, non-2xx or malformed body."""

    pass


class UnsupportedOperationError(ProviderError):
    """The provider adapter cannot perform the requested action."""

    pass


class UnsupportedProviderError(CalendarSyncError):
    """The provider name is not one of the known providers."""

    pass


class OAuthError(CalendarSyncError):
    """Token endpoint or consent flow failure."""

    pass


class OAuthStateError(OAuthError):
    """The OAuth ``state`` parameter could not be decoded."""

    pass


class Provider(str, Enum):
    GOOGLE = "google"
    OUTLOOK = "outlook"
    APPLE = "apple"

    @classmethod
    def parse(cls, value: "str | Provider") -> "Provider":
        if isinstance(value, Provider):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise UnsupportedProviderError(f"Unsupported provider: {value}") from None

    @property
    def display_name(self) -> str:
        return {
            Provider.GOOGLE: "Google Calendar",
            Provider.OUTLOOK: "Outlook Calendar",
            Provider.APPLE: "Apple Calendar",
        }[self]

    @property
    def uses_oauth(self) -> bool:
        return self is not Provider.APPLE


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class TokenData:
    """Token shape exchanged with the connect flow and returned by TokenManager.get()."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


@dataclass
class Credential:
    """One stored integration per (user_id, provider)."""

    user_id: int
    provider: Provider
    access_token: str | None = None
    refresh_token: str | None = None
    app_password: str | None = None
    username: str | None = None  # CalDAV Basic-auth account name
    expires_at: datetime | None = None
    created_at: int | None = None
    updated_at: int | None = None

    def with_tokens(self, tokens: TokenData) -> "Credential":
        """Return a copy carrying freshly obtained tokens."""
        if self.provider is Provider.APPLE:
            return self
        return replace(
            self,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or self.refresh_token,
            expires_at=tokens.expires_at,
        )


@dataclass
class LocalEvent:
    """Event row owned by the local store."""

    calendar_id: int
    user_id: int
    title: str
    start_time: datetime
    end_time: datetime
    description: str | None = None
    location: str | None = None
    all_day: bool = False
    recurrence_rule: str | None = None
    id: int | None = None
    created_at: int | None = None
    updated_at: int | None = None


@dataclass
class RemoteEvent(LocalEvent):
    """Event fetched from a provider, still wrapped in its (provider, external_id) envelope."""

    external_id: str = ""
    provider: Provider | None = None

    def to_local(self) -> LocalEvent:
        return LocalEvent(
            calendar_id=self.calendar_id,
            user_id=self.user_id,
            title=self.title,
            start_time=self.start_time,
            end_time=self.end_time,
            description=self.description,
            location=self.location,
            all_day=self.all_day,
            recurrence_rule=self.recurrence_rule,
        )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class OAuthClientConfig:
    """OAuth client registration for one provider."""

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: list[str]
    authorize_url: str
    token_url: str

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


@dataclass
class CalDAVConfig:
    calendar_url: str = "https://caldav.icloud.com/calendar/"
    uid_domain: str = "calsync.local"


def _google_defaults() -> OAuthClientConfig:
    return OAuthClientConfig(
        client_id="",
        client_secret="",
        redirect_uri="",
        scopes=["https://www.googleapis.com/auth/calendar"],
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
    )


def _outlook_defaults() -> OAuthClientConfig:
    return OAuthClientConfig(
        client_id="",
        client_secret="",
        redirect_uri="",
        scopes=["offline_access", "https://graph.microsoft.com/Calendars.ReadWrite"],
        authorize_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
    )


@dataclass
class SyncSettings:
    """Everything the token manager and the adapters need, passed in at construction."""

    google: OAuthClientConfig = field(default_factory=_google_defaults)
    outlook: OAuthClientConfig = field(default_factory=_outlook_defaults)
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    state_db_path: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    http_timeout: float = 30.0
    pull_max_results: int = 250
    verbose: bool = False

    def oauth_config(self, provider: Provider) -> OAuthClientConfig:
        if provider is Provider.GOOGLE:
            return self.google
        if provider is Provider.OUTLOOK:
            return self.outlook
        raise UnsupportedProviderError(f"{provider.value} does not use OAuth")


# ---------------------------------------------------------------------------
# Per-item results
# ---------------------------------------------------------------------------


class ItemStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"


@dataclass
class ItemResult:
    """Outcome of one provider push/pull or one inbound event upsert."""

    operation: str
    status: ItemStatus
    provider: Provider | None = None
    event_id: int | None = None
    external_id: str | None = None
    detail: str = ""


@dataclass
class SyncReport:
    """Batch report for one orchestrator run."""

    user_id: int
    operation: str
    results: list[ItemResult] = field(default_factory=list)
    inserted: list[LocalEvent] = field(default_factory=list)
    fetched: int = 0

    def add(self, result: ItemResult) -> ItemResult:
        self.results.append(result)
        return result

    def by_status(self, status: ItemStatus) -> list[ItemResult]:
        return [r for r in self.results if r.status is status]

    @property
    def failures(self) -> list[ItemResult]:
        return [
            r for r in self.results if r.status in (ItemStatus.FAILED, ItemStatus.UNSUPPORTED)
        ]

    @property
    def errors(self) -> int:
        return len(self.by_status(ItemStatus.FAILED))

    def failed_providers(self) -> set[Provider]:
        return {r.provider for r in self.failures if r.provider is not None}


@dataclass
class ConnectResult:
    """Structured result of a connect/disconnect action."""

    success: bool
    provider: str
    user_id: int | None = None
    error: str | None = None
