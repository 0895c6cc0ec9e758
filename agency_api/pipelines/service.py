from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from agency_api import audit, events
from agency_api.core.config import get_settings
from agency_api.metrics import observe_activity_log
from agency_api.pipelines.models import (
    Contact,
    Lane,
    Notification,
    Pipeline,
    SubAccount,
    Tag,
    TeamMember,
    Ticket,
)
from agency_api.pipelines.ordering import OrderChange, OrderedCollectionManager
from agency_api.pipelines.repositories import LaneRepository, TicketRepository
from agency_api.pipelines.schemas import (
    ContactRead,
    ContactUpsert,
    LaneOrderItem,
    LaneRead,
    LaneUpsert,
    LaneWithTicketsRead,
    NotificationRead,
    PipelineRead,
    PipelineUpsert,
    ReorderResult,
    SubAccountRead,
    SubAccountUpsert,
    TagRead,
    TagUpsert,
    TeamMemberRead,
    TeamMemberUpsert,
    TicketOrderItem,
    TicketRead,
    TicketUpsert,
    TicketWithLaneRead,
)


logger = logging.getLogger("app.pipelines.activity")


@dataclass
class ActorUser:
    """Caller identity, resolved by the route layer and passed into every operation."""

    user_id: str
    agency_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def _publish_activity(
    actor_user: ActorUser,
    event_type: str,
    *,
    entity_id: uuid.UUID,
    description: str,
    sub_account_id: uuid.UUID | None,
    agency_id: uuid.UUID | None = None,
) -> None:
    resolved_agency_id = agency_id or actor_user.agency_id
    events.publish(
        events.build_envelope(
            event_type,
            actor_user.user_id,
            {"entity_id": str(entity_id)},
            correlation_id=actor_user.correlation_id,
            activity={
                "description": description,
                "agency_id": str(resolved_agency_id) if resolved_agency_id else None,
                "sub_account_id": str(sub_account_id) if sub_account_id else None,
            },
        )
    )


def _get_or_404(session: Session, model: type[Any], entity_id: uuid.UUID, label: str) -> Any:
    entity = session.get(model, entity_id)
    if entity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return entity


def _commit_or_conflict(session: Session, detail: str) -> None:
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


class SubAccountService:
    entity_type = "crm.sub_account"

    def upsert_sub_account(self, session: Session, actor_user: ActorUser, dto: SubAccountUpsert) -> SubAccountRead:
        if not dto.company_email:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="company_email is required")

        sub_account = session.get(SubAccount, dto.id) if dto.id is not None else None
        created = sub_account is None
        if sub_account is None:
            sub_account = SubAccount(
                id=dto.id or uuid.uuid4(),
                agency_id=dto.agency_id,
                name=dto.name.strip(),
                company_email=str(dto.company_email),
                company_phone=dto.company_phone,
            )
            sub_account.pipelines.append(Pipeline(name=get_settings().default_pipeline_name))
            session.add(sub_account)
        else:
            sub_account.agency_id = dto.agency_id
            sub_account.name = dto.name.strip()
            sub_account.company_email = str(dto.company_email)
            sub_account.company_phone = dto.company_phone

        _commit_or_conflict(session, "sub account conflict")
        session.refresh(sub_account)
        read_model = SubAccountRead.model_validate(sub_account)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(sub_account.id),
            action="create" if created else "update",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        _publish_activity(
            actor_user,
            "crm.sub_account.upserted",
            entity_id=sub_account.id,
            description=f"Updated sub account | {sub_account.name}",
            sub_account_id=sub_account.id,
            agency_id=sub_account.agency_id,
        )
        return read_model

    def get_sub_account(self, session: Session, actor_user: ActorUser, sub_account_id: uuid.UUID) -> SubAccountRead:
        return SubAccountRead.model_validate(_get_or_404(session, SubAccount, sub_account_id, "sub account"))

    def delete_sub_account(self, session: Session, actor_user: ActorUser, sub_account_id: uuid.UUID) -> None:
        sub_account = _get_or_404(session, SubAccount, sub_account_id, "sub account")
        before = SubAccountRead.model_validate(sub_account).model_dump(mode="json")
        session.delete(sub_account)
        session.commit()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(sub_account_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        _publish_activity(
            actor_user,
            "crm.sub_account.deleted",
            entity_id=sub_account_id,
            description=f"Deleted sub account | {before['name']}",
            sub_account_id=None,
            agency_id=uuid.UUID(before["agency_id"]),
        )


class TeamMemberService:
    entity_type = "crm.team_member"
    assignable_roles = ("AGENCY_OWNER", "AGENCY_ADMIN", "SUBACCOUNT_USER")

    def upsert_team_member(self, session: Session, actor_user: ActorUser, dto: TeamMemberUpsert) -> TeamMemberRead:
        """Create or refresh a member from identity-provider profile data.

        The row is matched by id (the caller's own id when none is given), then by
        email, so a provider account that was re-created keeps its member row.
        """

        member_id = dto.id or actor_user.user_id
        member = session.get(TeamMember, member_id)
        if member is None:
            member = session.scalar(select(TeamMember).where(TeamMember.email == str(dto.email)))
        created = member is None
        if member is None:
            member = TeamMember(id=member_id, email=str(dto.email))
            session.add(member)

        member.agency_id = dto.agency_id or member.agency_id or actor_user.agency_id
        member.name = dto.name.strip()
        member.email = str(dto.email)
        member.avatar_url = dto.avatar_url
        member.role = dto.role

        _commit_or_conflict(session, "team member conflict")
        session.refresh(member)
        read_model = TeamMemberRead.model_validate(member)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=member.id,
            action="create" if created else "update",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return read_model

    def list_sub_account_team_members(
        self,
        session: Session,
        actor_user: ActorUser,
        sub_account_id: uuid.UUID,
    ) -> list[TeamMemberRead]:
        sub_account = _get_or_404(session, SubAccount, sub_account_id, "sub account")
        rows = session.scalars(
            select(TeamMember)
            .where(and_(TeamMember.agency_id == sub_account.agency_id, TeamMember.role.in_(self.assignable_roles)))
            .order_by(TeamMember.name.asc())
        ).all()
        return [TeamMemberRead.model_validate(row) for row in rows]


class PipelineService:
    entity_type = "crm.pipeline"

    def upsert_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineUpsert) -> PipelineRead:
        _get_or_404(session, SubAccount, dto.sub_account_id, "sub account")

        pipeline = session.get(Pipeline, dto.id) if dto.id is not None else None
        created = pipeline is None
        if pipeline is None:
            pipeline = Pipeline(id=dto.id or uuid.uuid4(), sub_account_id=dto.sub_account_id, name=dto.name.strip())
            session.add(pipeline)
        else:
            pipeline.sub_account_id = dto.sub_account_id
            pipeline.name = dto.name.strip()

        _commit_or_conflict(session, "pipeline conflict")
        session.refresh(pipeline)
        read_model = PipelineRead.model_validate(pipeline)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create" if created else "update",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        _publish_activity(
            actor_user,
            "crm.pipeline.upserted",
            entity_id=pipeline.id,
            description=f"Updated a pipeline | {pipeline.name}",
            sub_account_id=pipeline.sub_account_id,
        )
        return read_model

    def get_pipeline_details(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> PipelineRead:
        return PipelineRead.model_validate(_get_or_404(session, Pipeline, pipeline_id, "pipeline"))

    def list_pipelines(self, session: Session, actor_user: ActorUser, sub_account_id: uuid.UUID) -> list[PipelineRead]:
        _get_or_404(session, SubAccount, sub_account_id, "sub account")
        rows = session.scalars(
            select(Pipeline).where(Pipeline.sub_account_id == sub_account_id).order_by(Pipeline.created_at.asc())
        ).all()
        return [PipelineRead.model_validate(row) for row in rows]

    def delete_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> None:
        pipeline = _get_or_404(session, Pipeline, pipeline_id, "pipeline")
        before = PipelineRead.model_validate(pipeline).model_dump(mode="json")
        session.delete(pipeline)
        session.commit()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        _publish_activity(
            actor_user,
            "crm.pipeline.deleted",
            entity_id=pipeline_id,
            description=f"Deleted a pipeline | {before['name']}",
            sub_account_id=uuid.UUID(before["sub_account_id"]),
        )


class LaneService:
    entity_type = "crm.lane"

    def __init__(self) -> None:
        self.repository = LaneRepository()
        self.manager = OrderedCollectionManager(self.repository)

    def upsert_lane(self, session: Session, actor_user: ActorUser, dto: LaneUpsert) -> LaneRead:
        pipeline = _get_or_404(session, Pipeline, dto.pipeline_id, "pipeline")
        sub_account_id = pipeline.sub_account_id

        lane = self.manager.upsert_with_derived_order(
            session,
            entity_id=dto.id,
            parent_id=dto.pipeline_id,
            values={"name": dto.name.strip()},
            order=dto.order,
        )
        read_model = LaneRead.model_validate(lane)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lane.id),
            action="upsert",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        _publish_activity(
            actor_user,
            "crm.lane.upserted",
            entity_id=lane.id,
            description=f"Updated a lane | {lane.name}",
            sub_account_id=sub_account_id,
        )
        return read_model

    def delete_lane(self, session: Session, actor_user: ActorUser, lane_id: uuid.UUID) -> None:
        lane = session.scalar(select(Lane).where(Lane.id == lane_id).options(selectinload(Lane.pipeline)))
        if lane is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lane not found")

        before = LaneRead.model_validate(lane).model_dump(mode="json")
        sub_account_id = lane.pipeline.sub_account_id
        session.delete(lane)
        session.commit()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lane_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        _publish_activity(
            actor_user,
            "crm.lane.deleted",
            entity_id=lane_id,
            description=f"Deleted a lane | {before['name']}",
            sub_account_id=sub_account_id,
        )

    def list_lanes_with_tickets_and_tags(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
    ) -> list[LaneWithTicketsRead]:
        _get_or_404(session, Pipeline, pipeline_id, "pipeline")
        lanes = self.repository.list_for_pipeline_with_tickets(session, pipeline_id)
        return [LaneWithTicketsRead.model_validate(lane) for lane in lanes]

    def reorder_lanes(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        items: Sequence[LaneOrderItem],
    ) -> ReorderResult:
        changes = [OrderChange(id=item.id, order=item.order) for item in items]
        result = self.manager.reorder_batch(session, changes, scope_parent_id=pipeline_id)
        if result.ok:
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=f"{self.entity_type}.order",
                entity_id=str(pipeline_id),
                action="reorder",
                before=None,
                after=[{"id": str(item.id), "order": item.order} for item in items],
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lanes.reordered",
                    actor_user.user_id,
                    {"pipeline_id": str(pipeline_id), "lane_ids": [str(item.id) for item in items]},
                    correlation_id=actor_user.correlation_id,
                )
            )
        return result

    def normalize_lane_order(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> list[LaneRead]:
        _get_or_404(session, Pipeline, pipeline_id, "pipeline")
        lanes = self.manager.normalize_order(session, pipeline_id)
        return [LaneRead.model_validate(lane) for lane in lanes]


class TicketService:
    entity_type = "crm.ticket"

    def __init__(self) -> None:
        self.repository = TicketRepository()
        self.manager = OrderedCollectionManager(self.repository)

    def upsert_ticket(self, session: Session, actor_user: ActorUser, dto: TicketUpsert) -> TicketWithLaneRead:
        lane = session.scalar(select(Lane).where(Lane.id == dto.lane_id).options(selectinload(Lane.pipeline)))
        if lane is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lane not found")
        sub_account_id = lane.pipeline.sub_account_id

        if dto.id is not None:
            existing = session.scalar(
                select(Ticket).where(Ticket.id == dto.id).options(selectinload(Ticket.lane).selectinload(Lane.pipeline))
            )
            if existing is not None and existing.lane.pipeline.sub_account_id != sub_account_id:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="ticket cannot move to another sub account",
                )

        if dto.customer_id is not None and session.get(Contact, dto.customer_id) is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="customer not found")
        if dto.assigned_user_id is not None and session.get(TeamMember, dto.assigned_user_id) is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="assignee not found")
        tags = self._resolve_tags(session, dto.tag_ids, sub_account_id) if dto.tag_ids is not None else None

        def apply_tags(ticket: Ticket) -> None:
            if tags is not None:
                ticket.tags = tags

        ticket = self.manager.upsert_with_derived_order(
            session,
            entity_id=dto.id,
            parent_id=dto.lane_id,
            values={
                "name": dto.name.strip(),
                "description": dto.description,
                "value": dto.value,
                "customer_id": dto.customer_id,
                "assigned_user_id": dto.assigned_user_id,
            },
            order=dto.order,
            apply=apply_tags,
        )
        read_model = TicketWithLaneRead.model_validate(ticket)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(ticket.id),
            action="upsert",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        _publish_activity(
            actor_user,
            "crm.ticket.upserted",
            entity_id=ticket.id,
            description=f"Updated a ticket | {ticket.name}",
            sub_account_id=sub_account_id,
        )
        return read_model

    def delete_ticket(self, session: Session, actor_user: ActorUser, ticket_id: uuid.UUID) -> None:
        ticket = session.scalar(
            select(Ticket)
            .where(Ticket.id == ticket_id)
            .options(selectinload(Ticket.lane).selectinload(Lane.pipeline))
        )
        if ticket is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ticket not found")

        before = {"id": str(ticket.id), "lane_id": str(ticket.lane_id), "name": ticket.name, "order": ticket.order}
        sub_account_id = ticket.lane.pipeline.sub_account_id
        session.delete(ticket)
        session.commit()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(ticket_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        _publish_activity(
            actor_user,
            "crm.ticket.deleted",
            entity_id=ticket_id,
            description=f"Deleted a ticket | {before['name']}",
            sub_account_id=sub_account_id,
        )

    def list_tickets_with_tags(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> list[TicketRead]:
        _get_or_404(session, Pipeline, pipeline_id, "pipeline")
        return [TicketRead.model_validate(ticket) for ticket in self.repository.list_for_pipeline(session, pipeline_id)]

    def list_tickets_with_all_relations(
        self,
        session: Session,
        actor_user: ActorUser,
        lane_id: uuid.UUID,
    ) -> list[TicketWithLaneRead]:
        _get_or_404(session, Lane, lane_id, "lane")
        return [TicketWithLaneRead.model_validate(ticket) for ticket in self.repository.list_for_lane(session, lane_id)]

    def reorder_tickets(
        self,
        session: Session,
        actor_user: ActorUser,
        items: Sequence[TicketOrderItem],
    ) -> ReorderResult:
        changes = [OrderChange(id=item.id, order=item.order, parent_id=item.lane_id) for item in items]
        result = self.manager.reorder_batch(session, changes)
        if result.ok:
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=f"{self.entity_type}.order",
                entity_id=",".join(sorted({str(item.lane_id) for item in items if item.lane_id})) or "-",
                action="reorder",
                before=None,
                after=[item.model_dump(mode="json") for item in items],
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.tickets.reordered",
                    actor_user.user_id,
                    {"ticket_ids": [str(item.id) for item in items]},
                    correlation_id=actor_user.correlation_id,
                )
            )
        return result

    def normalize_ticket_order(self, session: Session, actor_user: ActorUser, lane_id: uuid.UUID) -> list[TicketRead]:
        _get_or_404(session, Lane, lane_id, "lane")
        self.manager.normalize_order(session, lane_id)
        return [TicketRead.model_validate(ticket) for ticket in self.repository.list_for_lane(session, lane_id)]

    def _resolve_tags(self, session: Session, tag_ids: list[uuid.UUID], sub_account_id: uuid.UUID) -> list[Tag]:
        if not tag_ids:
            return []
        unique_ids = list(dict.fromkeys(tag_ids))
        tags = session.scalars(
            select(Tag).where(and_(Tag.id.in_(unique_ids), Tag.sub_account_id == sub_account_id))
        ).all()
        if len(tags) != len(unique_ids):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unknown tag for sub account")
        return list(tags)


class TagService:
    entity_type = "crm.tag"

    def upsert_tag(self, session: Session, actor_user: ActorUser, sub_account_id: uuid.UUID, dto: TagUpsert) -> TagRead:
        _get_or_404(session, SubAccount, sub_account_id, "sub account")

        tag = session.get(Tag, dto.id) if dto.id is not None else None
        if tag is not None and tag.sub_account_id != sub_account_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="tag not found")
        if tag is None:
            tag = Tag(id=dto.id or uuid.uuid4(), sub_account_id=sub_account_id, name=dto.name.strip(), color=dto.color)
            session.add(tag)
        else:
            tag.name = dto.name.strip()
            tag.color = dto.color

        _commit_or_conflict(session, "tag conflict")
        session.refresh(tag)
        _publish_activity(
            actor_user,
            "crm.tag.upserted",
            entity_id=tag.id,
            description=f"Updated a tag | {tag.name}",
            sub_account_id=sub_account_id,
        )
        return TagRead.model_validate(tag)

    def list_tags(self, session: Session, actor_user: ActorUser, sub_account_id: uuid.UUID) -> list[TagRead]:
        _get_or_404(session, SubAccount, sub_account_id, "sub account")
        rows = session.scalars(select(Tag).where(Tag.sub_account_id == sub_account_id).order_by(Tag.name.asc())).all()
        return [TagRead.model_validate(row) for row in rows]

    def delete_tag(self, session: Session, actor_user: ActorUser, tag_id: uuid.UUID) -> None:
        tag = _get_or_404(session, Tag, tag_id, "tag")
        name, sub_account_id = tag.name, tag.sub_account_id
        session.delete(tag)
        session.commit()
        _publish_activity(
            actor_user,
            "crm.tag.deleted",
            entity_id=tag_id,
            description=f"Deleted a tag | {name}",
            sub_account_id=sub_account_id,
        )


class ContactService:
    entity_type = "crm.contact"

    def upsert_contact(self, session: Session, actor_user: ActorUser, dto: ContactUpsert) -> ContactRead:
        _get_or_404(session, SubAccount, dto.sub_account_id, "sub account")

        contact = session.get(Contact, dto.id) if dto.id is not None else None
        if contact is None:
            contact = Contact(
                id=dto.id or uuid.uuid4(),
                sub_account_id=dto.sub_account_id,
                name=dto.name.strip(),
                email=str(dto.email),
            )
            session.add(contact)
        else:
            contact.sub_account_id = dto.sub_account_id
            contact.name = dto.name.strip()
            contact.email = str(dto.email)

        _commit_or_conflict(session, "contact conflict")
        session.refresh(contact)
        _publish_activity(
            actor_user,
            "crm.contact.upserted",
            entity_id=contact.id,
            description=f"Updated a contact | {contact.name}",
            sub_account_id=contact.sub_account_id,
        )
        return ContactRead.model_validate(contact)

    def search_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        sub_account_id: uuid.UUID,
        search: str | None,
    ) -> list[ContactRead]:
        stmt = select(Contact).where(Contact.sub_account_id == sub_account_id)
        term = (search or "").strip()
        if term:
            stmt = stmt.where(Contact.name.ilike(f"%{term}%"))
        rows = session.scalars(stmt.order_by(Contact.name.asc())).all()
        return [ContactRead.model_validate(row) for row in rows]


class NotificationService:
    def save_activity_log_notification(
        self,
        session: Session,
        *,
        actor_user_id: str,
        description: str,
        agency_id: uuid.UUID | None = None,
        sub_account_id: uuid.UUID | None = None,
    ) -> Notification | None:
        """Record ``"<author name> | <description>"`` for an agency and optionally a sub account.

        The author is the acting team member, or, when the actor is not a known member,
        any member of the agency that owns the sub account. Nothing is written when no
        author can be resolved.
        """

        if agency_id is None and sub_account_id is None:
            raise ValueError("agency_id or sub_account_id is required")

        sub_account = session.get(SubAccount, sub_account_id) if sub_account_id is not None else None
        resolved_agency_id = agency_id or (sub_account.agency_id if sub_account is not None else None)
        if resolved_agency_id is None:
            logger.warning(
                "activity_log_skipped",
                extra={"sub_account_id": str(sub_account_id), "error": "agency could not be resolved"},
            )
            observe_activity_log("skipped")
            return None

        author = session.get(TeamMember, actor_user_id)
        if author is None and sub_account is not None:
            author = session.scalar(
                select(TeamMember)
                .where(TeamMember.agency_id == sub_account.agency_id)
                .order_by(TeamMember.created_at.asc())
            )
        if author is None:
            logger.warning(
                "activity_log_skipped",
                extra={"agency_id": str(resolved_agency_id), "error": "could not find a user"},
            )
            observe_activity_log("skipped")
            return None

        notification = Notification(
            notification=f"{author.name} | {description}",
            agency_id=resolved_agency_id,
            sub_account_id=sub_account.id if sub_account is not None else None,
            user_id=author.id,
        )
        session.add(notification)
        try:
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        observe_activity_log("recorded")
        return notification

    def list_notifications(self, session: Session, actor_user: ActorUser, agency_id: uuid.UUID) -> list[NotificationRead]:
        rows = session.scalars(
            select(Notification)
            .where(Notification.agency_id == agency_id)
            .options(selectinload(Notification.user))
            .order_by(Notification.created_at.desc())
        ).all()
        return [NotificationRead.model_validate(row) for row in rows]


notification_service = NotificationService()
