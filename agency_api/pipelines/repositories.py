from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session, selectinload

from agency_api.pipelines.models import Lane, Pipeline, Ticket


OrderedT = TypeVar("OrderedT", Lane, Ticket)


class OrderedRepository(Generic[OrderedT]):
    """Data access for rows carrying an ``order`` column scoped to a parent row."""

    model: ClassVar[type[Any]]
    parent_model: ClassVar[type[Any]]
    parent_field: ClassVar[str]
    scope: ClassVar[str]

    def parent_column(self) -> Any:
        return getattr(self.model, self.parent_field)

    def get(self, session: Session, entity_id: uuid.UUID) -> OrderedT | None:
        return session.get(self.model, entity_id)

    def get_hydrated(self, session: Session, entity_id: uuid.UUID) -> OrderedT | None:
        return session.scalar(self._hydrated(select(self.model).where(self.model.id == entity_id)))

    def count_siblings(self, session: Session, parent_id: uuid.UUID) -> int:
        stmt = select(func.count()).select_from(self.model).where(self.parent_column() == parent_id)
        return int(session.scalar(stmt) or 0)

    def list_siblings(self, session: Session, parent_id: uuid.UUID) -> list[OrderedT]:
        stmt = (
            select(self.model)
            .where(self.parent_column() == parent_id)
            .order_by(self.model.order.asc(), self.model.created_at.asc(), self.model.id.asc())
        )
        return list(session.scalars(stmt).all())

    def parent_exists(self, session: Session, parent_id: uuid.UUID) -> bool:
        return session.get(self.parent_model, parent_id) is not None

    def missing_parents(self, session: Session, parent_ids: Iterable[uuid.UUID]) -> list[uuid.UUID]:
        wanted = set(parent_ids)
        if not wanted:
            return []
        found = set(session.scalars(select(self.parent_model.id).where(self.parent_model.id.in_(wanted))).all())
        return sorted(wanted - found, key=str)

    def parents_outside_scope(self, session: Session, moves: Mapping[uuid.UUID, uuid.UUID]) -> list[uuid.UUID]:
        return []

    def _hydrated(self, stmt: Select[Any]) -> Select[Any]:
        return stmt


class LaneRepository(OrderedRepository[Lane]):
    model = Lane
    parent_model = Pipeline
    parent_field = "pipeline_id"
    scope = "lane"

    def list_for_pipeline_with_tickets(self, session: Session, pipeline_id: uuid.UUID) -> Sequence[Lane]:
        stmt = (
            select(Lane)
            .where(Lane.pipeline_id == pipeline_id)
            .order_by(Lane.order.asc(), Lane.created_at.asc())
            .options(
                selectinload(Lane.tickets).selectinload(Ticket.tags),
                selectinload(Lane.tickets).selectinload(Ticket.assigned),
                selectinload(Lane.tickets).selectinload(Ticket.customer),
            )
        )
        return session.scalars(stmt).all()


class TicketRepository(OrderedRepository[Ticket]):
    model = Ticket
    parent_model = Lane
    parent_field = "lane_id"
    scope = "ticket"

    def list_for_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> Sequence[Ticket]:
        stmt = (
            select(Ticket)
            .join(Lane, Ticket.lane_id == Lane.id)
            .where(Lane.pipeline_id == pipeline_id)
            .order_by(Lane.order.asc(), Ticket.order.asc(), Ticket.created_at.asc())
        )
        return session.scalars(self._hydrated(stmt)).all()

    def list_for_lane(self, session: Session, lane_id: uuid.UUID) -> Sequence[Ticket]:
        stmt = select(Ticket).where(Ticket.lane_id == lane_id).order_by(Ticket.order.asc(), Ticket.created_at.asc())
        return session.scalars(self._hydrated(stmt)).all()

    def parents_outside_scope(self, session: Session, moves: Mapping[uuid.UUID, uuid.UUID]) -> list[uuid.UUID]:
        """Target lanes whose sub account differs from the moving ticket's current one."""

        if not moves:
            return []
        current = dict(
            session.execute(
                select(Ticket.id, Pipeline.sub_account_id)
                .join(Lane, Ticket.lane_id == Lane.id)
                .join(Pipeline, Lane.pipeline_id == Pipeline.id)
                .where(Ticket.id.in_(list(moves)))
            ).all()
        )
        targets = dict(
            session.execute(
                select(Lane.id, Pipeline.sub_account_id)
                .join(Pipeline, Lane.pipeline_id == Pipeline.id)
                .where(Lane.id.in_(set(moves.values())))
            ).all()
        )
        foreign = {
            lane_id
            for ticket_id, lane_id in moves.items()
            if ticket_id in current and lane_id in targets and current[ticket_id] != targets[lane_id]
        }
        return sorted(foreign, key=str)

    def _hydrated(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.options(
            selectinload(Ticket.lane),
            selectinload(Ticket.tags),
            selectinload(Ticket.assigned),
            selectinload(Ticket.customer),
        )
