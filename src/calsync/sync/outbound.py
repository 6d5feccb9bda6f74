"""
Outbound sync: mirror one local mutation to every provider the user connected.
"""

from calsync.db import StateDatabase
from calsync.models import ItemResult
from calsync.models import ItemStatus
from calsync.models import LocalEvent
from calsync.models import SyncAction
from calsync.models import SyncReport
from calsync.models import UnsupportedOperationError
from calsync.providers.base import ProviderAdapter
from calsync.sync.log import SyncLog
from calsync.tokens import TokenManager

OPERATION = "sync_out"


def run_outbound(
    user_id: int,
    event: LocalEvent,
    action: SyncAction,
    state_db: StateDatabase,
    token_manager: TokenManager,
    adapters: dict,
    report: SyncReport,
    log: SyncLog,
):
    """Push one event mutation to each connected provider.

    A failing provider is recorded in ``report`` and never stops the others.
    Only a failure to load the user's credentials propagates.
    """
    credentials = state_db.list_credentials(user_id)
    if not credentials:
        log.info(
            OPERATION, f"No integrations for user {user_id}; nothing to push", user_id=user_id
        )
        return

    for credential in credentials:
        provider = credential.provider
        adapter: ProviderAdapter | None = adapters.get(provider)
        if adapter is None:
            log.warning(
                OPERATION,
                "No adapter registered",
                provider=provider,
                user_id=user_id,
                event_id=event.id,
            )
            report.add(
                ItemResult(OPERATION, ItemStatus.SKIPPED, provider, event.id, detail="no adapter")
            )
            continue

        try:
            tokens = token_manager.get(user_id, provider)
        except Exception as e:
            state_db.rollback()
            log.error(
                OPERATION,
                f"Token lookup failed for user {user_id}",
                provider=provider,
                user_id=user_id,
                event_id=event.id,
                error=e,
            )
            report.add(ItemResult(OPERATION, ItemStatus.FAILED, provider, event.id, detail=str(e)))
            continue
        if tokens is None:
            log.warning(
                OPERATION,
                f"No valid credential for user {user_id}; skipping",
                provider=provider,
                user_id=user_id,
                event_id=event.id,
            )
            report.add(
                ItemResult(
                    OPERATION, ItemStatus.SKIPPED, provider, event.id, detail="not connected"
                )
            )
            continue

        try:
            adapter.push(credential.with_tokens(tokens), event, action)
            state_db.commit()
        except UnsupportedOperationError as e:
            state_db.rollback()
            log.warning(
                OPERATION,
                f"{action.value} of event {event.id} not supported",
                provider=provider,
                user_id=user_id,
                event_id=event.id,
                error=e,
            )
            report.add(
                ItemResult(OPERATION, ItemStatus.UNSUPPORTED, provider, event.id, detail=str(e))
            )
            continue
        except Exception as e:
            state_db.rollback()
            log.error(
                OPERATION,
                f"Failed to {action.value} event {event.id}",
                provider=provider,
                user_id=user_id,
                event_id=event.id,
                error=e,
            )
            report.add(ItemResult(OPERATION, ItemStatus.FAILED, provider, event.id, detail=str(e)))
            continue

        log.info(
            OPERATION,
            f"{action.value} of event {event.id} synced",
            provider=provider,
            user_id=user_id,
            event_id=event.id,
        )
        report.add(
            ItemResult(
                OPERATION,
                ItemStatus.OK,
                provider,
                event.id,
                external_id=state_db.get_external_id(event.id, provider),
                detail=action.value,
            )
        )
