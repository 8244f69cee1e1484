from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

ConversationType = Literal["gallery", "shipper_peer"]
ThreadStatus = Literal["active", "archived"]
ParticipantRole = Literal["client", "shipper"]
OrganizationType = Literal["client", "partner"]
ThreadShipperRole = Literal["initiator", "invited"]
WebhookEventType = Literal[
    "onMessageAdded",
    "onParticipantUpdated",
    "onParticipantRemoved",
    "onParticipantLeft",
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _strip_optional(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


# ---------------------------------------------------------------------------
# Thread metadata (mirrored to provider conversation attributes)
# ---------------------------------------------------------------------------


class ParticipantSummary(_CamelModel):
    id: str
    identity: str
    role: ParticipantRole
    name: str
    organization_id: str
    organization_name: str


class _ThreadMetadataBase(_CamelModel):
    quote_id: str | None = None
    quote_title: str | None = None
    organization_id: str | None = None
    created_by: str | None = None
    shipment_id: str | None = None
    shipper_branch_org_id: str | None = None
    gallery_branch_org_id: str | None = None
    participants: list[ParticipantSummary] = Field(default_factory=list)

    def upsert_participant(self, summary: ParticipantSummary) -> None:
        for index, existing in enumerate(self.participants):
            if existing.id == summary.id:
                self.participants[index] = summary
                return
        self.participants.append(summary)


class GalleryThreadMetadata(_ThreadMetadataBase):
    conversation_type: Literal["gallery"] = "gallery"
    partner_name: str | None = None
    partner_company: str | None = None
    partner_org_id: str | None = None
    shipper_name: str | None = None
    shipper_company: str | None = None
    shipper_org_id: str | None = None

    def upsert_participant(self, summary: ParticipantSummary) -> None:
        super().upsert_participant(summary)
        if summary.role == "client":
            self.partner_name = self.partner_name or summary.name
            self.partner_company = self.partner_company or summary.organization_name
            self.partner_org_id = summary.organization_id
        else:
            self.shipper_name = self.shipper_name or summary.name
            self.shipper_company = self.shipper_company or summary.organization_name
            self.shipper_org_id = summary.organization_id


class ShipperPeerThreadMetadata(_ThreadMetadataBase):
    conversation_type: Literal["shipper_peer"] = "shipper_peer"
    initiator_shipper_org_id: str | None = None
    shipper_branch_org_ids: list[str] = Field(default_factory=list)


ThreadMetadata = Annotated[
    Union[GalleryThreadMetadata, ShipperPeerThreadMetadata],
    Field(discriminator="conversation_type"),
]

_THREAD_METADATA_ADAPTER: TypeAdapter[ThreadMetadata] = TypeAdapter(ThreadMetadata)


def parse_thread_metadata(raw: Any, *, conversation_type: ConversationType) -> GalleryThreadMetadata | ShipperPeerThreadMetadata:
    if isinstance(raw, (GalleryThreadMetadata, ShipperPeerThreadMetadata)):
        return raw
    data = dict(raw) if isinstance(raw, dict) else {}
    data["conversation_type"] = conversation_type
    data.pop("conversationType", None)
    return _THREAD_METADATA_ADAPTER.validate_python(data)


def metadata_to_attributes(metadata: GalleryThreadMetadata | ShipperPeerThreadMetadata) -> dict[str, Any]:
    return metadata.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class AddParticipantRequest(_CamelModel):
    user_id: str | None = None
    organization_id: str | None = None
    role_override: ParticipantRole | None = None

    @field_validator("user_id", "organization_id")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class ParticipantItem(_CamelModel):
    id: str
    thread_id: str
    user_id: str
    organization_id: str | None
    role: str
    identity: str
    joined_at: datetime
    left_at: datetime | None


class AddParticipantResponse(_CamelModel):
    ok: bool = True
    participant: ParticipantItem


class OkResponse(_CamelModel):
    ok: bool = True


class ChatTokenRequest(_CamelModel):
    thread_id: str | None = None
    quote_id: str | None = None
    organization_id: str | None = None
    shipper_branch_org_id: str | None = None
    gallery_branch_org_id: str | None = None
    ttl_seconds: int | None = Field(default=None, ge=60)

    @field_validator("thread_id", "quote_id", "organization_id", "shipper_branch_org_id", "gallery_branch_org_id")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class ChatTokenResponse(_CamelModel):
    token: str
    expires_at: datetime
    ttl_seconds: int
    conversation_sid: str
    thread_id: str
    quote_id: str | None
    shipment_id: str | None
    identity: str
    role: str
    shipper_branch_org_id: str | None
    gallery_branch_org_id: str | None


class ProvisionRequest(_CamelModel):
    organization_ids: list[str] | None = None


class ProvisionResult(_CamelModel):
    processed_organizations: int
    ensured_threads: int
    ensured_participants: int


class ProvisionResponse(_CamelModel):
    ok: bool = True
    result: ProvisionResult
