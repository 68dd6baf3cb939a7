"""Deletion sweep: detect remote deletions by comparing full id snapshots.

The remote listing never returns hard-deleted records, so the only way to see
a deletion is to list every remote id in a scope and flag local records of
that scope that are missing from it. Kinds whose listing reports voids and
deletes with a status get those applied by the reconciler; the absence check
still runs for them as the fallback for records purged outright.
"""

import logging
from dataclasses import dataclass
from functools import partial

from app.core.config import settings
from app.services.entity_kinds import EntityKind
from app.services.pagination import fetch_all
from app.services.remote_client import RemoteClient
from app.services.store import LedgerStore, SyncScope, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    removed: int = 0
    live: int = 0
    checked: int = 0


class DeletionSweep:
    def __init__(
        self,
        client: RemoteClient,
        store: LedgerStore,
        page_size: int = settings.ledger_page_size,
        max_pages: int | None = settings.sync_max_pages,
    ):
        self.client = client
        self.store = store
        self.page_size = page_size
        self.max_pages = max_pages

    def live_ids(self, kind: EntityKind, scope: SyncScope) -> set[str]:
        """Every remote id of ``kind`` in ``scope``, whatever its status."""
        list_operation = partial(
            self._list_page, kind, where=kind.scope_filter(scope.since)
        )
        ids = set()
        for entity in fetch_all(list_operation, self.page_size, self.max_pages):
            remote_id = kind.remote_id(entity)
            if remote_id:
                ids.add(remote_id)
        return ids

    def _list_page(self, kind: EntityKind, page: int, page_size: int, *, where: str | None):
        # No If-Modified-Since: the snapshot must include unchanged records
        return self.client.list_page(kind, page, page_size, where=where)

    def sweep(self, kind: EntityKind, scope: SyncScope) -> SweepResult:
        started = utcnow()
        live = self.live_ids(kind, scope)
        # Records written after the snapshot began may be missing from it legitimately
        local = self.store.list_active_ids(kind, scope, synced_before=started)

        result = SweepResult(live=len(live), checked=len(local))
        try:
            for remote_id in sorted(local - live):
                if self.store.mark_removed(kind, remote_id, synced_before=started):
                    result.removed += 1
                    logger.info("Marked %s %s as removed (absent remotely)", kind.name, remote_id)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info(
            "Sweep %s since %s: %d live, %d local checked, %d removed",
            kind.name, scope.since or "beginning", result.live, result.checked, result.removed,
        )
        return result
