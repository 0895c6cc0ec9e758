from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from agency_api.context import get_correlation_id
from agency_api.core.auth import AuthUser, get_current_user as get_auth_user
from agency_api.core.database import get_db
from agency_api.pipelines.schemas import (
    ContactRead,
    ContactUpsert,
    LaneRead,
    LaneReorderRequest,
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
    TicketRead,
    TicketReorderRequest,
    TicketUpsert,
    TicketWithLaneRead,
)
from agency_api.pipelines.service import (
    ActorUser,
    ContactService,
    LaneService,
    PipelineService,
    SubAccountService,
    TagService,
    TeamMemberService,
    TicketService,
    notification_service,
)

sub_accounts_router = APIRouter(prefix="/api", tags=["sub_accounts"])
team_router = APIRouter(prefix="/api", tags=["team"])
pipelines_router = APIRouter(prefix="/api", tags=["pipelines"])
lanes_router = APIRouter(prefix="/api", tags=["lanes"])
tickets_router = APIRouter(prefix="/api", tags=["tickets"])
tags_router = APIRouter(prefix="/api", tags=["tags"])
contacts_router = APIRouter(prefix="/api", tags=["contacts"])
notifications_router = APIRouter(prefix="/api", tags=["notifications"])
sub_account_service = SubAccountService()
team_member_service = TeamMemberService()
pipeline_service = PipelineService()
lane_service = LaneService()
ticket_service = TicketService()
tag_service = TagService()
contact_service = ContactService()

_REORDER_FAILURE_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "storage_error": status.HTTP_503_SERVICE_UNAVAILABLE,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _http_error(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def _reorder_response(request: Request, result: ReorderResult, code: str) -> ReorderResult | JSONResponse:
    if result.ok:
        return result
    return error_response(
        request,
        status_code=_REORDER_FAILURE_STATUS[result.status],
        code=code,
        message=f"reorder {result.status}",
        details=result.model_dump(mode="json"),
    )


def _parse_agency_id(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    context = getattr(request.state, "context", None)
    correlation_id = get_correlation_id() or getattr(context, "request_id", None)
    agency_id = _parse_agency_id(request.headers.get("x-agency-id")) or _parse_agency_id(auth_user.agency_id)

    return ActorUser(
        user_id=auth_user.sub,
        agency_id=agency_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@sub_accounts_router.put("/sub-accounts", response_model=SubAccountRead)
def upsert_sub_account(
    request: Request,
    dto: SubAccountUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SubAccountRead | JSONResponse:
    try:
        require_permission(user, "sub_accounts.manage")
        return sub_account_service.upsert_sub_account(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "sub_account_upsert_failed")


@sub_accounts_router.get("/sub-accounts/{sub_account_id}", response_model=SubAccountRead)
def get_sub_account(
    request: Request,
    sub_account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SubAccountRead | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return sub_account_service.get_sub_account(db, user, sub_account_id)
    except HTTPException as exc:
        return _http_error(request, exc, "sub_account_get_failed")


@sub_accounts_router.delete("/sub-accounts/{sub_account_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_sub_account(
    request: Request,
    sub_account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "sub_accounts.manage")
        sub_account_service.delete_sub_account(db, user, sub_account_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _http_error(request, exc, "sub_account_delete_failed")


@team_router.put("/team-members", response_model=TeamMemberRead)
def upsert_team_member(
    request: Request,
    dto: TeamMemberUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TeamMemberRead | JSONResponse:
    try:
        # Syncing your own profile needs no grant.
        if dto.id is not None and dto.id != user.user_id:
            require_permission(user, "team.manage")
        return team_member_service.upsert_team_member(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "team_member_upsert_failed")


@team_router.get("/sub-accounts/{sub_account_id}/team-members", response_model=list[TeamMemberRead])
def list_sub_account_team_members(
    request: Request,
    sub_account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TeamMemberRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return team_member_service.list_sub_account_team_members(db, user, sub_account_id)
    except HTTPException as exc:
        return _http_error(request, exc, "team_member_list_failed")


@pipelines_router.get("/sub-accounts/{sub_account_id}/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    sub_account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return pipeline_service.list_pipelines(db, user, sub_account_id)
    except HTTPException as exc:
        return _http_error(request, exc, "pipeline_list_failed")


@pipelines_router.put("/pipelines", response_model=PipelineRead)
def upsert_pipeline(
    request: Request,
    dto: PipelineUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "pipelines.manage")
        return pipeline_service.upsert_pipeline(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "pipeline_upsert_failed")


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return pipeline_service.get_pipeline_details(db, user, pipeline_id)
    except HTTPException as exc:
        return _http_error(request, exc, "pipeline_get_failed")


@pipelines_router.delete("/pipelines/{pipeline_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "pipelines.manage")
        pipeline_service.delete_pipeline(db, user, pipeline_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _http_error(request, exc, "pipeline_delete_failed")


@pipelines_router.get("/pipelines/{pipeline_id}/lanes", response_model=list[LaneWithTicketsRead])
def list_lanes(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LaneWithTicketsRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return lane_service.list_lanes_with_tickets_and_tags(db, user, pipeline_id)
    except HTTPException as exc:
        return _http_error(request, exc, "lane_list_failed")


@pipelines_router.post("/pipelines/{pipeline_id}/lanes/reorder", response_model=ReorderResult)
def reorder_lanes(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: LaneReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReorderResult | JSONResponse:
    try:
        require_permission(user, "pipelines.manage")
        result = lane_service.reorder_lanes(db, user, pipeline_id, dto.lanes)
    except HTTPException as exc:
        return _http_error(request, exc, "lane_reorder_failed")
    return _reorder_response(request, result, "lane_reorder_failed")


@pipelines_router.post("/pipelines/{pipeline_id}/lanes/normalize", response_model=list[LaneRead])
def normalize_lanes(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LaneRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.manage")
        return lane_service.normalize_lane_order(db, user, pipeline_id)
    except HTTPException as exc:
        return _http_error(request, exc, "lane_normalize_failed")


@pipelines_router.get("/pipelines/{pipeline_id}/tickets", response_model=list[TicketRead])
def list_pipeline_tickets(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TicketRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return ticket_service.list_tickets_with_tags(db, user, pipeline_id)
    except HTTPException as exc:
        return _http_error(request, exc, "ticket_list_failed")


@lanes_router.put("/lanes", response_model=LaneRead)
def upsert_lane(
    request: Request,
    dto: LaneUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LaneRead | JSONResponse:
    try:
        require_permission(user, "pipelines.manage")
        return lane_service.upsert_lane(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "lane_upsert_failed")


@lanes_router.delete("/lanes/{lane_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lane(
    request: Request,
    lane_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "pipelines.manage")
        lane_service.delete_lane(db, user, lane_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _http_error(request, exc, "lane_delete_failed")


@lanes_router.get("/lanes/{lane_id}/tickets", response_model=list[TicketWithLaneRead])
def list_lane_tickets(
    request: Request,
    lane_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TicketWithLaneRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return ticket_service.list_tickets_with_all_relations(db, user, lane_id)
    except HTTPException as exc:
        return _http_error(request, exc, "ticket_list_failed")


@lanes_router.post("/lanes/{lane_id}/tickets/normalize", response_model=list[TicketRead])
def normalize_tickets(
    request: Request,
    lane_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TicketRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.manage")
        return ticket_service.normalize_ticket_order(db, user, lane_id)
    except HTTPException as exc:
        return _http_error(request, exc, "ticket_normalize_failed")


@tickets_router.put("/tickets", response_model=TicketWithLaneRead)
def upsert_ticket(
    request: Request,
    dto: TicketUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TicketWithLaneRead | JSONResponse:
    try:
        require_permission(user, "pipelines.manage")
        return ticket_service.upsert_ticket(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "ticket_upsert_failed")


@tickets_router.delete("/tickets/{ticket_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_ticket(
    request: Request,
    ticket_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "pipelines.manage")
        ticket_service.delete_ticket(db, user, ticket_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _http_error(request, exc, "ticket_delete_failed")


@tickets_router.post("/tickets/reorder", response_model=ReorderResult)
def reorder_tickets(
    request: Request,
    dto: TicketReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ReorderResult | JSONResponse:
    try:
        require_permission(user, "pipelines.manage")
        result = ticket_service.reorder_tickets(db, user, dto.tickets)
    except HTTPException as exc:
        return _http_error(request, exc, "ticket_reorder_failed")
    return _reorder_response(request, result, "ticket_reorder_failed")


@tags_router.put("/sub-accounts/{sub_account_id}/tags", response_model=TagRead)
def upsert_tag(
    request: Request,
    sub_account_id: uuid.UUID,
    dto: TagUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TagRead | JSONResponse:
    try:
        require_permission(user, "pipelines.manage")
        return tag_service.upsert_tag(db, user, sub_account_id, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "tag_upsert_failed")


@tags_router.get("/sub-accounts/{sub_account_id}/tags", response_model=list[TagRead])
def list_tags(
    request: Request,
    sub_account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TagRead] | JSONResponse:
    try:
        require_permission(user, "pipelines.read")
        return tag_service.list_tags(db, user, sub_account_id)
    except HTTPException as exc:
        return _http_error(request, exc, "tag_list_failed")


@tags_router.delete("/tags/{tag_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_tag(
    request: Request,
    tag_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "pipelines.manage")
        tag_service.delete_tag(db, user, tag_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _http_error(request, exc, "tag_delete_failed")


@contacts_router.put("/contacts", response_model=ContactRead)
def upsert_contact(
    request: Request,
    dto: ContactUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "contacts.manage")
        return contact_service.upsert_contact(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, "contact_upsert_failed")


@contacts_router.get("/sub-accounts/{sub_account_id}/contacts", response_model=list[ContactRead])
def search_contacts(
    request: Request,
    sub_account_id: uuid.UUID,
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "contacts.read")
        return contact_service.search_contacts(db, user, sub_account_id, search)
    except HTTPException as exc:
        return _http_error(request, exc, "contact_search_failed")


@notifications_router.get("/agencies/{agency_id}/notifications", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    agency_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        require_permission(user, "notifications.read")
        return notification_service.list_notifications(db, user, agency_id)
    except HTTPException as exc:
        return _http_error(request, exc, "notification_list_failed")
