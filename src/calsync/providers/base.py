"""
Shared adapter contract and HTTP plumbing for the provider adapters.
"""

import logging
from abc import ABC
from abc import abstractmethod
from datetime import UTC
from datetime import date
from datetime import datetime
from typing import Any
from typing import ClassVar

import httpx

from calsync.db import StateDatabase
from calsync.mapping import CalendarMapper
from calsync.models import Credential
from calsync.models import LocalEvent
from calsync.models import Provider
from calsync.models import ProviderError
from calsync.models import RemoteEvent
from calsync.models import SyncAction
from calsync.models import SyncSettings

# Remote object already gone: a delete is complete.
_GONE_STATUSES = frozenset({404, 410})


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def day_start(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


class ProviderAdapter(ABC):
    """One provider's wire protocol behind push()/pull()."""

    provider: ClassVar[Provider]

    def __init__(
        self,
        settings: SyncSettings,
        state_db: StateDatabase,
        calendars: CalendarMapper,
        client: httpx.Client,
    ):
        self.settings = settings
        self.state_db = state_db
        self.calendars = calendars
        self.client = client
        self.logger = logging.getLogger(f"{__name__}.{self.provider.value}")

    # ------------------------------------------------------------------ #
    # Contract                                                             #
    # ------------------------------------------------------------------ #

    def push(self, credential: Credential, event: LocalEvent, action: SyncAction) -> None:
        """Mirror one local mutation to the provider.

        Raises ProviderError on remote failure; the caller decides isolation.
        """
        if event.id is None:
            raise ProviderError("Cannot push an event that has no local id")

        if action is SyncAction.CREATE:
            external_id = self.create_remote(credential, event)
            self.state_db.store_external_id(event.id, self.provider, external_id)
            self.logger.debug(f"Created {self.provider.value} event {external_id} for {event.id}")
            return

        external_id = self.state_db.get_external_id(event.id, self.provider)
        if external_id is None:
            self.logger.warning(
                f"No {self.provider.value} external ID for event {event.id}; "
                f"nothing remote to {action.value}"
            )
            return

        if action is SyncAction.UPDATE:
            self.update_remote(credential, event, external_id)
        elif action is SyncAction.DELETE:
            self.delete_remote(credential, event, external_id)
            self.state_db.remove_external_id(event.id, self.provider)

    def pull(self, credential: Credential) -> list[RemoteEvent]:
        """Fetch remote events; an outage yields an empty list, never an exception."""
        try:
            return self.fetch_remote(credential)
        except Exception as e:
            self.logger.error(
                f"Error fetching {self.provider.value} events for user {credential.user_id}: {e}"
            )
            return []

    @abstractmethod
    def create_remote(self, credential: Credential, event: LocalEvent) -> str:
        """Create the remote object and return its external id."""

    @abstractmethod
    def update_remote(self, credential: Credential, event: LocalEvent, external_id: str) -> None:
        pass

    @abstractmethod
    def delete_remote(self, credential: Credential, event: LocalEvent, external_id: str) -> None:
        pass

    @abstractmethod
    def fetch_remote(self, credential: Credential) -> list[RemoteEvent]:
        pass

    # ------------------------------------------------------------------ #
    # HTTP helpers                                                         #
    # ------------------------------------------------------------------ #

    def _request(
        self,
        method: str,
        url: str,
        allow_statuses: frozenset[int] = frozenset(),
        **kwargs,
    ) -> httpx.Response:
        """Send a request with the configured timeout; raise ProviderError on failure."""
        kwargs.setdefault("timeout", self.settings.http_timeout)
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self.provider.value} {method} {url} timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.provider.value} {method} {url} failed: {e}") from e

        if response.is_error and response.status_code not in allow_statuses:
            raise ProviderError(
                f"{self.provider.value} {method} {url} returned "
                f"{response.status_code} {response.reason_phrase}"
            )
        return response

    def _delete(self, url: str, **kwargs) -> None:
        response = self._request("DELETE", url, allow_statuses=_GONE_STATUSES, **kwargs)
        if response.status_code in _GONE_STATUSES:
            self.logger.info(f"{self.provider.value} object already gone: {url}")

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.provider.value} returned a malformed body: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.provider.value} returned {type(data).__name__}, not object")
        return data

    @staticmethod
    def _bearer(credential: Credential) -> dict[str, str]:
        if not credential.access_token:
            raise ProviderError("Credential has no access token")
        return {"Authorization": f"Bearer {credential.access_token}"}
