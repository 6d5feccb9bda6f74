"""
Inbound sync: pull every connected provider and import events not seen before.
"""

from calsync.db import StateDatabase
from calsync.local_store import EventStore
from calsync.models import ItemResult
from calsync.models import ItemStatus
from calsync.models import LocalEvent
from calsync.models import RemoteEvent
from calsync.models import SyncReport
from calsync.providers.base import ProviderAdapter
from calsync.sync.log import SyncLog
from calsync.tokens import TokenManager

OPERATION = "sync_in"


def _import_event(
    remote: RemoteEvent,
    state_db: StateDatabase,
    event_store: EventStore,
    report: SyncReport,
    log: SyncLog,
):
    """Insert one remote event unless it is already known locally."""
    provider = remote.provider

    local_id = state_db.get_local_id(provider, remote.external_id)
    if local_id is not None and event_store.get_event(local_id) is not None:
        # Local copy wins; remote edits to a linked event are not re-imported.
        report.add(
            ItemResult(
                OPERATION,
                ItemStatus.SKIPPED,
                provider,
                local_id,
                remote.external_id,
                detail="already linked",
            )
        )
        return

    inserted = event_store.insert_event_if_absent(remote.to_local())
    if inserted is None:
        report.add(
            ItemResult(
                OPERATION,
                ItemStatus.SKIPPED,
                provider,
                external_id=remote.external_id,
                detail="equal event exists",
            )
        )
        return

    state_db.link_external_id(inserted.id, provider, remote.external_id)
    state_db.commit()
    report.inserted.append(inserted)
    report.add(
        ItemResult(OPERATION, ItemStatus.OK, provider, inserted.id, remote.external_id, "inserted")
    )
    log.info(
        OPERATION,
        f"Imported '{inserted.title}' as event {inserted.id}",
        provider=provider,
        user_id=inserted.user_id,
        event_id=inserted.id,
        external_id=remote.external_id,
    )


def run_inbound(
    user_id: int,
    state_db: StateDatabase,
    event_store: EventStore,
    token_manager: TokenManager,
    adapters: dict,
    report: SyncReport,
    log: SyncLog,
) -> list[LocalEvent]:
    """Pull each connected provider and insert new events.

    Returns the events inserted by this run. A provider that cannot be
    reached, or an event that cannot be stored, is recorded in ``report``
    and the run carries on.
    """
    credentials = state_db.list_credentials(user_id)
    if not credentials:
        log.info(OPERATION, f"No integrations for user {user_id}", user_id=user_id)
        return report.inserted

    for credential in credentials:
        provider = credential.provider
        adapter: ProviderAdapter | None = adapters.get(provider)
        if adapter is None:
            log.warning(OPERATION, "No adapter registered", provider=provider, user_id=user_id)
            report.add(ItemResult(OPERATION, ItemStatus.SKIPPED, provider, detail="no adapter"))
            continue

        try:
            tokens = token_manager.get(user_id, provider)
        except Exception as e:
            state_db.rollback()
            log.error(
                OPERATION, "Token lookup failed", provider=provider, user_id=user_id, error=e
            )
            report.add(ItemResult(OPERATION, ItemStatus.FAILED, provider, detail=str(e)))
            continue
        if tokens is None:
            log.warning(
                OPERATION,
                f"No valid credential for user {user_id}; skipping",
                provider=provider,
                user_id=user_id,
            )
            report.add(ItemResult(OPERATION, ItemStatus.SKIPPED, provider, detail="not connected"))
            continue

        try:
            remote_events = adapter.pull(credential.with_tokens(tokens))
        except Exception as e:
            state_db.rollback()
            log.error(OPERATION, "Pull failed", provider=provider, user_id=user_id, error=e)
            report.add(ItemResult(OPERATION, ItemStatus.FAILED, provider, detail=str(e)))
            continue

        report.fetched += len(remote_events)
        log.info(
            OPERATION,
            f"Fetched {len(remote_events)} events",
            provider=provider,
            user_id=user_id,
        )

        for remote in remote_events:
            if remote.provider is None:
                remote.provider = provider
            try:
                _import_event(remote, state_db, event_store, report, log)
            except Exception as e:
                state_db.rollback()
                log.error(
                    OPERATION,
                    f"Failed to import {remote.external_id}",
                    provider=provider,
                    user_id=user_id,
                    error=e,
                )
                report.add(
                    ItemResult(
                        OPERATION,
                        ItemStatus.FAILED,
                        provider,
                        external_id=remote.external_id,
                        detail=str(e),
                    )
                )

    return report.inserted
