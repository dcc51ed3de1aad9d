from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, get_args
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


ProposalType = Literal[
    "send_message",
    "update_lead_score",
    "book_appointment",
    "run_workflow",
    "update_contact_status",
    "add_tag",
    "add_task",
]
ProposalStatus = Literal["pending", "approved", "dismissed", "auto_approved"]
AutonomyTier = Literal["auto_approve", "require_approval", "require_approval_preview"]
ProposalSource = Literal["manual", "proactive"]
ContactStatus = Literal["Lead", "Interested", "Appointment", "Closed"]
MessageChannel = Literal["sms", "email", "voice", "whatsapp"]

PROPOSAL_TYPES: tuple[str, ...] = get_args(ProposalType)
AUTONOMY_TIERS: tuple[str, ...] = get_args(AutonomyTier)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SendMessagePayload(_Payload):
    channel: MessageChannel = "email"
    content: str = ""
    subject: str | None = None


class UpdateLeadScorePayload(_Payload):
    new_score: int = Field(alias="newScore", ge=0, le=100)
    previous_score: int | None = Field(default=None, alias="previousScore")
    reason: str | None = None


class AddTagPayload(_Payload):
    tag: str = Field(min_length=1)


class AddTaskPayload(_Payload):
    title: str = "AI-suggested Task"
    due_date: datetime | None = Field(default=None, alias="dueDate")


class UpdateContactStatusPayload(_Payload):
    status: ContactStatus


class BookAppointmentPayload(_Payload):
    start_time: datetime | None = Field(default=None, alias="startTime")
    end_time: datetime | None = Field(default=None, alias="endTime")
    title: str = "AI-booked Appointment"
    notes: str = "Auto-booked by AI"
    calendar_id: UUID | None = Field(default=None, alias="calendarId")


class RunWorkflowPayload(_Payload):
    workflow_name: str = Field(default="AI-triggered", alias="workflowName")


class SendMessageAction(BaseModel):
    type: Literal["send_message"]
    payload: SendMessagePayload


class UpdateLeadScoreAction(BaseModel):
    type: Literal["update_lead_score"]
    payload: UpdateLeadScorePayload


class AddTagAction(BaseModel):
    type: Literal["add_tag"]
    payload: AddTagPayload


class AddTaskAction(BaseModel):
    type: Literal["add_task"]
    payload: AddTaskPayload


class UpdateContactStatusAction(BaseModel):
    type: Literal["update_contact_status"]
    payload: UpdateContactStatusPayload


class BookAppointmentAction(BaseModel):
    type: Literal["book_appointment"]
    payload: BookAppointmentPayload


class RunWorkflowAction(BaseModel):
    type: Literal["run_workflow"]
    payload: RunWorkflowPayload


ProposalAction = Annotated[
    SendMessageAction
    | UpdateLeadScoreAction
    | AddTagAction
    | AddTaskAction
    | UpdateContactStatusAction
    | BookAppointmentAction
    | RunWorkflowAction,
    Field(discriminator="type"),
]

_proposal_action_adapter = TypeAdapter(ProposalAction)


def parse_proposal_action(proposal_type: str, payload: dict[str, Any] | None) -> ProposalAction:
    return _proposal_action_adapter.validate_python({"type": proposal_type, "payload": payload or {}})


def dump_payload(action: ProposalAction) -> dict[str, Any]:
    return action.payload.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProposalCreate(BaseModel):
    type: ProposalType
    title: str = Field(min_length=1)
    description: str = ""
    module: str = "pipeline"
    contact_id: UUID | None = None
    contact_name: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    source: ProposalSource = "manual"


class ProposalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    type: str
    status: str
    title: str
    description: str
    module: str
    contact_id: UUID | None
    contact_name: str | None
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str
    resolved_at: datetime | None
    created_at: datetime


class ProposalCreateResult(BaseModel):
    proposal: ProposalRead
    tier: AutonomyTier
    auto_approved: bool
    duplicate: bool = False
    dispatch_error: str | None = None


class ProposalApproveRequest(BaseModel):
    payload: dict[str, Any] | None = None


class ProposalResolveResult(BaseModel):
    proposal: ProposalRead
    applied: bool = False
    detail: str | None = None


class BulkResolveRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class BulkResolveResult(BaseModel):
    count: int
    failed_ids: list[UUID] = Field(default_factory=list)


class AutonomySettingsRead(BaseModel):
    settings: dict[str, str]


class AutonomySettingsUpdate(BaseModel):
    settings: dict[str, str] = Field(min_length=1)


class ProposalStatRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    proposal_type: str
    approved_count: int
    dismissed_count: int
    auto_approved_count: int
    last_updated: datetime


class ProposalStatsResponse(BaseModel):
    stats: list[ProposalStatRead]
    suppressed_types: list[str]


class ProactiveProposalDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    title: str
    description: str = ""
    module: str = "pipeline"
    contact_id: str | None = Field(default=None, alias="contactId")
    contact_name: str | None = Field(default=None, alias="contactName")
    payload: dict[str, Any] = Field(default_factory=dict)


class ProactiveProposalBatch(BaseModel):
    proposals: list[ProactiveProposalDraft] = Field(default_factory=list)


class ProactiveInsightsResult(BaseModel):
    skipped: bool
    proposals: list[ProposalRead] = Field(default_factory=list)
    suppressed_types: list[str] = Field(default_factory=list)


class EnrichmentProfile(BaseModel):
    email: str | None = None
    owner_name: str | None = None
    services: list[str] = Field(default_factory=list)
    pain_points: list[str] = Field(default_factory=list)
    social_links: dict[str, str] = Field(default_factory=dict)
    website: str | None = None


class BatchEnrichRequest(BaseModel):
    contact_ids: list[UUID] = Field(min_length=1, max_length=100)


class BatchEnrichAccepted(BaseModel):
    batch_id: str
    status: str
    total: int


class BatchItemResultRead(BaseModel):
    item_id: str
    item_name: str
    status: Literal["success", "failed", "skipped"]
    detail: str = ""
    enriched_email: str | None = None


class BatchJobRead(BaseModel):
    id: str
    status: Literal["processing", "completed", "failed"]
    total: int
    processed: int
    results: list[BatchItemResultRead]
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


class LocalSeoRequest(BaseModel):
    industry: str = Field(min_length=1)
    location: str = Field(min_length=1)
    count: int = 5
    force_refresh: bool = False


class DiscoveryEntry(BaseModel):
    title: str
    rating: float | None = None
    reviews_count: int | None = None
    address: str = ""
    phone: str | None = None
    website: str | None = None
    url: str = ""
    category_name: str = ""
    categories: list[str] = Field(default_factory=list)


class OracleDiscoveryBatch(BaseModel):
    entries: list[DiscoveryEntry] = Field(default_factory=list)


class DiscoveryResult(BaseModel):
    result_text: str
    entries: list[DiscoveryEntry] = Field(default_factory=list)
    data_source: Literal["database", "cache", "apify", "oracle"]
    from_database: bool = False
    cached: bool = False
    cache_age_minutes: int | None = None
