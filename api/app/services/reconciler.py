"""Create/update reconciliation of remote entities into the local store."""

import logging
from dataclasses import dataclass

from app.services.entity_kinds import EntityKind, get_kind
from app.services.store import CREATED, UPDATED, LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0

    def __iadd__(self, other: "ReconcileResult") -> "ReconcileResult":
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.skipped += other.skipped
        return self

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged


class Reconciler:
    def __init__(self, store: LedgerStore):
        self.store = store

    def _parent_ids(self, kind: EntityKind, rows: list[dict]) -> dict:
        link = kind.parent
        remote_ids = {r[link.remote_field] for r in rows if r.get(link.remote_field)}
        return self.store.local_ids(get_kind(link.parent_kind), remote_ids)

    def reconcile(self, kind: EntityKind, batch: list[dict], *, commit: bool = True) -> ReconcileResult:
        """Upsert a batch of remote entities of one kind.

        Re-running with the same batch is a no-op: the second run reports zero
        created and zero updated. With ``commit`` the batch is committed as a
        unit; on failure it is rolled back alone and the error propagates.
        """
        result = ReconcileResult()
        prepared = []
        for entity in batch:
            remote_id = kind.remote_id(entity)
            if remote_id is None:
                logger.warning("Skipping %s without %s", kind.name, kind.id_field)
                result.skipped += 1
                continue
            prepared.append((remote_id, entity, kind.to_fields(entity)))

        parent_ids = self._parent_ids(kind, [f for _, _, f in prepared]) if kind.parent else {}

        try:
            for remote_id, entity, fields in prepared:
                if kind.parent:
                    parent_id = parent_ids.get(fields.get(kind.parent.remote_field))
                    if parent_id is not None:
                        fields[kind.parent.local_field] = parent_id
                    else:
                        logger.debug(
                            "%s %s: parent %s not mirrored yet",
                            kind.name, remote_id, fields.get(kind.parent.remote_field),
                        )

                outcome = self.store.upsert(
                    kind,
                    remote_id,
                    kind.status(entity),
                    fields,
                    remote_updated_at=kind.last_modified(entity),
                )
                if outcome == CREATED:
                    result.created += 1
                elif outcome == UPDATED:
                    result.updated += 1
                else:
                    result.unchanged += 1
            if commit:
                self.store.commit()
        except Exception:
            if commit:
                self.store.rollback()
            raise

        logger.debug(
            "Reconciled %d %s: %d created, %d updated, %d unchanged",
            len(batch), kind.name, result.created, result.updated, result.unchanged,
        )
        return result
