"""Ordered sibling collections: lanes within a pipeline, tickets within a lane.

Every member carries an integer ``order``. New members are appended at the end
of their parent's sequence unless the caller supplies an explicit order, which
is stored verbatim. Bulk reorders are persisted in one transaction and are
reported back as a :class:`ReorderResult` instead of raising.

Deleting a member or moving a ticket to another lane does not renumber the
remaining siblings; gaps and duplicates are left for the caller to resolve or
for an explicit :meth:`OrderedCollectionManager.normalize_order` call.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic

from opentelemetry import trace
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from agency_api.metrics import observe_reorder_batch
from agency_api.pipelines.models import utcnow
from agency_api.pipelines.repositories import OrderedRepository, OrderedT
from agency_api.pipelines.schemas import ReorderResult


logger = logging.getLogger("app.pipelines.ordering")
tracer = trace.get_tracer("app.pipelines.ordering")


@dataclass(frozen=True, slots=True)
class OrderChange:
    id: uuid.UUID
    order: int
    parent_id: uuid.UUID | None = None


class OrderedCollectionManager(Generic[OrderedT]):
    def __init__(self, repository: OrderedRepository[OrderedT]) -> None:
        self.repository = repository

    @property
    def scope(self) -> str:
        return self.repository.scope

    def derive_order(self, session: Session, parent_id: uuid.UUID) -> int:
        return self.repository.count_siblings(session, parent_id)

    def upsert_with_derived_order(
        self,
        session: Session,
        *,
        entity_id: uuid.UUID | None,
        parent_id: uuid.UUID,
        values: dict[str, Any],
        order: int | None = None,
        apply: Callable[[OrderedT], None] | None = None,
    ) -> OrderedT:
        """Create or update one member and return it re-read with its relations.

        ``order=None`` on a new member appends it after the current siblings; on an
        existing member it leaves the stored order alone. Storage errors are
        re-raised after the session is rolled back.
        """

        model = self.repository.model
        resolved_id = entity_id or uuid.uuid4()
        entity = self.repository.get(session, resolved_id)

        try:
            if entity is None:
                resolved_order = order if order is not None else self.derive_order(session, parent_id)
                entity = model(id=resolved_id, order=resolved_order, **{self.repository.parent_field: parent_id}, **values)
                session.add(entity)
            else:
                for field_name, value in values.items():
                    setattr(entity, field_name, value)
                setattr(entity, self.repository.parent_field, parent_id)
                if order is not None:
                    entity.order = order

            if apply is not None:
                apply(entity)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise

        hydrated = self.repository.get_hydrated(session, resolved_id)
        if hydrated is None:
            raise LookupError(f"{self.scope} {resolved_id} vanished after upsert")
        return hydrated

    def reorder_batch(
        self,
        session: Session,
        changes: Sequence[OrderChange],
        *,
        scope_parent_id: uuid.UUID | None = None,
    ) -> ReorderResult:
        """Persist caller-computed orders for a batch of members, all or nothing.

        ``scope_parent_id`` restricts the batch to members of one parent; rows outside
        it count as missing. A change carrying ``parent_id`` also moves the member; a
        target parent the repository places outside the member's scope counts as missing.
        There is no version check, so concurrent batches resolve last-writer-wins per row.
        """

        model = self.repository.model
        parent_column = self.repository.parent_column()
        log_extra: dict[str, Any] = {
            "scope": self.scope,
            "parent_id": str(scope_parent_id) if scope_parent_id else None,
            "batch_size": len(changes),
        }

        with tracer.start_as_current_span(f"pipelines.reorder.{self.scope}") as span:
            span.set_attribute("reorder.scope", self.scope)
            span.set_attribute("reorder.batch_size", len(changes))

            missing_ids: list[uuid.UUID] = []
            updated = 0
            try:
                moves = {change.id: change.parent_id for change in changes if change.parent_id is not None}
                missing_parents = self.repository.missing_parents(session, set(moves.values()))
                missing_parents += self.repository.parents_outside_scope(session, moves)
                if missing_parents:
                    return self._fail(
                        ReorderResult(status="not_found", missing_ids=sorted(set(missing_parents), key=str)),
                        size=len(changes),
                        log_extra=log_extra,
                    )

                for change in changes:
                    values: dict[str, Any] = {"order": change.order, "updated_at": utcnow()}
                    if change.parent_id is not None:
                        values[self.repository.parent_field] = change.parent_id

                    stmt = update(model).where(model.id == change.id)
                    if scope_parent_id is not None:
                        stmt = stmt.where(parent_column == scope_parent_id)
                    result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
                    if result.rowcount == 0:
                        missing_ids.append(change.id)
                    else:
                        updated += result.rowcount

                if missing_ids:
                    session.rollback()
                    return self._fail(
                        ReorderResult(status="not_found", missing_ids=missing_ids),
                        size=len(changes),
                        log_extra=log_extra,
                    )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                return self._fail(
                    ReorderResult(status="conflict", error=str(exc.orig)[:500]),
                    size=len(changes),
                    log_extra=log_extra,
                )
            except SQLAlchemyError as exc:
                session.rollback()
                return self._fail(
                    ReorderResult(status="storage_error", error=str(exc)[:500]),
                    size=len(changes),
                    log_extra=log_extra,
                )
            finally:
                # Bulk UPDATE bypasses the identity map.
                session.expire_all()

            span.set_attribute("reorder.outcome", "applied")

        observe_reorder_batch(self.scope, "applied", len(changes))
        logger.info("reorder.applied", extra={**log_extra, "outcome": "applied"})
        return ReorderResult(status="applied", updated=updated)

    def normalize_order(self, session: Session, parent_id: uuid.UUID) -> list[OrderedT]:
        """Renumber a parent's members to ``0..N-1`` keeping their current relative order."""

        siblings = self.repository.list_siblings(session, parent_id)
        try:
            for position, sibling in enumerate(siblings):
                if sibling.order != position:
                    sibling.order = position
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return self.repository.list_siblings(session, parent_id)

    def _fail(self, result: ReorderResult, *, size: int, log_extra: dict[str, Any]) -> ReorderResult:
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("reorder.outcome", result.status)
        observe_reorder_batch(self.scope, result.status, size)
        logger.warning(
            "reorder.failed",
            extra={
                **log_extra,
                "outcome": result.status,
                "missing_ids": [str(item) for item in result.missing_ids],
                "error": result.error,
            },
        )
        return result
