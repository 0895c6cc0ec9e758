from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class SubAccountUpsert(BaseModel):
    id: UUID | None = None
    agency_id: UUID
    name: str = Field(min_length=1)
    company_email: EmailStr | None = None
    company_phone: str | None = None


class SubAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agency_id: UUID
    name: str
    company_email: str
    company_phone: str | None
    created_at: datetime
    updated_at: datetime


class TeamMemberUpsert(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=128)
    agency_id: UUID | None = None
    name: str = Field(min_length=1)
    email: EmailStr
    avatar_url: str | None = None
    role: Literal["AGENCY_OWNER", "AGENCY_ADMIN", "SUBACCOUNT_USER", "SUBACCOUNT_GUEST"] = "SUBACCOUNT_USER"


class TeamMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agency_id: UUID | None
    name: str
    email: str
    avatar_url: str | None
    role: str


class ContactUpsert(BaseModel):
    id: UUID | None = None
    sub_account_id: UUID
    name: str = Field(min_length=1)
    email: EmailStr


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sub_account_id: UUID
    name: str
    email: str
    created_at: datetime
    updated_at: datetime


class TagUpsert(BaseModel):
    id: UUID | None = None
    name: str = Field(min_length=1)
    color: str = Field(min_length=1, max_length=32)


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sub_account_id: UUID
    name: str
    color: str
    created_at: datetime
    updated_at: datetime


class PipelineUpsert(BaseModel):
    id: UUID | None = None
    sub_account_id: UUID
    name: str = Field(min_length=1)


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sub_account_id: UUID
    name: str
    created_at: datetime
    updated_at: datetime


class LaneUpsert(BaseModel):
    id: UUID | None = None
    pipeline_id: UUID
    name: str = Field(min_length=1)
    order: int | None = None


class LaneRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    order: int
    created_at: datetime
    updated_at: datetime


class TicketUpsert(BaseModel):
    id: UUID | None = None
    lane_id: UUID
    name: str = Field(min_length=1)
    description: str | None = None
    value: Decimal | None = None
    order: int | None = None
    customer_id: UUID | None = None
    assigned_user_id: str | None = None
    tag_ids: list[UUID] | None = None


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lane_id: UUID
    name: str
    description: str | None
    value: Decimal | None
    order: int
    customer_id: UUID | None
    assigned_user_id: str | None
    created_at: datetime
    updated_at: datetime
    tags: list[TagRead] = Field(default_factory=list)
    customer: ContactRead | None = None
    assigned: TeamMemberRead | None = None


class TicketWithLaneRead(TicketRead):
    lane: LaneRead


class LaneWithTicketsRead(LaneRead):
    tickets: list[TicketRead] = Field(default_factory=list)


class LaneOrderItem(BaseModel):
    id: UUID
    order: int


class TicketOrderItem(BaseModel):
    id: UUID
    order: int
    lane_id: UUID | None = None


class LaneReorderRequest(BaseModel):
    lanes: list[LaneOrderItem] = Field(min_length=1)


class TicketReorderRequest(BaseModel):
    tickets: list[TicketOrderItem] = Field(min_length=1)


ReorderStatus = Literal["applied", "not_found", "conflict", "storage_error"]


class ReorderResult(BaseModel):
    status: ReorderStatus
    updated: int = 0
    missing_ids: list[UUID] = Field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "applied"


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    notification: str
    agency_id: UUID
    sub_account_id: UUID | None
    user_id: str
    created_at: datetime
    user: TeamMemberRead
