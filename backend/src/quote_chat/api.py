from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from .errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from .models import (
    AddParticipantRequest,
    AddParticipantResponse,
    ChatTokenRequest,
    ChatTokenResponse,
    OkResponse,
    ParticipantItem,
    ProvisionRequest,
    ProvisionResponse,
    ProvisionResult,
)
from .provisioning import provision_user_conversations
from .services import ChatServices, get_services
from .session_tokens import SessionTokenError, decode_session_token
from .thread_store import ParticipantRecord
from .webhooks import build_webhook_url, parse_webhook_payload, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _require_user(request: Request, services: ChatServices) -> str:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise AuthenticationError("Missing Authorization bearer token")
    token = header.removeprefix("Bearer ").strip()
    try:
        payload = decode_session_token(token, secret=services.settings.chat_session_secret)
    except SessionTokenError as exc:
        raise AuthenticationError(f"Invalid or expired token: {exc}") from exc
    return payload.user_id


def _participant_item(record: ParticipantRecord) -> ParticipantItem:
    return ParticipantItem(
        id=record.participant_id,
        thread_id=record.thread_id,
        user_id=record.user_id,
        organization_id=record.organization_id,
        role=record.role,
        identity=record.provider_identity,
        joined_at=record.joined_at,
        left_at=record.left_at,
    )


@router.post("/threads/{thread_id}/participants", response_model=AddParticipantResponse)
def add_participant(
    thread_id: str,
    payload: AddParticipantRequest,
    request: Request,
    services: ChatServices = Depends(get_services),
) -> AddParticipantResponse:
    requester_id = _require_user(request, services)
    if not payload.user_id:
        raise ValidationError("userId is required")
    if payload.user_id == requester_id:
        raise ValidationError("Cannot add yourself via this endpoint")

    services.guard.assert_can_manage_participants(thread_id, requester_id)
    if services.directory.get_profile(payload.user_id) is None:
        raise NotFoundError("Target user not found")

    result = services.orchestrator.ensure_participant_in_thread(
        thread_id,
        payload.user_id,
        organization_id=payload.organization_id,
        role_override=payload.role_override,
    )
    return AddParticipantResponse(participant=_participant_item(result.participant))


@router.delete("/threads/{thread_id}/participants/{user_id}", response_model=OkResponse)
def remove_participant(
    thread_id: str,
    user_id: str,
    request: Request,
    services: ChatServices = Depends(get_services),
) -> OkResponse:
    requester_id = _require_user(request, services)
    if user_id == requester_id:
        raise ValidationError("Cannot remove yourself via this endpoint")

    thread = services.guard.assert_can_manage_participants(thread_id, requester_id)
    services.orchestrator.remove_participant(thread, user_id)
    return OkResponse()


@router.post("/webhooks/conversations", response_model=OkResponse)
async def conversation_webhook(request: Request, services: ChatServices = Depends(get_services)) -> OkResponse:
    settings = services.settings
    raw_body = await request.body()
    content_type = request.headers.get("content-type", "")
    url = build_webhook_url(str(request.url), request.headers, trust_proxy_headers=settings.trust_proxy_headers)

    verification = verify_webhook_signature(
        settings=settings,
        url=url,
        raw_body=raw_body,
        content_type=content_type,
        headers=request.headers,
    )
    if not verification.verified:
        if settings.chat_webhook_signature_mode == "enforce":
            logger.warning("rejected conversation webhook: %s", verification.reason)
            raise AuthorizationError("Invalid webhook signature")
        logger.warning("conversation webhook signature not verified (log_only): %s", verification.reason)

    payload = parse_webhook_payload(raw_body, content_type)
    result = await run_in_threadpool(services.ingestor.handle, payload)
    logger.info("conversation webhook %s -> %s", result.event_type or "<none>", result.status)
    return OkResponse()


@router.post("/token", response_model=ChatTokenResponse)
def issue_chat_token(
    payload: ChatTokenRequest,
    request: Request,
    services: ChatServices = Depends(get_services),
) -> ChatTokenResponse:
    requester_id = _require_user(request, services)

    if payload.thread_id:
        thread = services.store.get_thread(payload.thread_id)
        if thread is None:
            raise NotFoundError("Thread not found")
        services.guard.assert_can_join_thread(thread, requester_id)
    elif payload.quote_id:
        services.guard.assert_can_open_quote(
            payload.quote_id,
            requester_id,
            shipper_branch_org_id=payload.shipper_branch_org_id,
            gallery_branch_org_id=payload.gallery_branch_org_id,
        )
        thread = services.orchestrator.ensure_thread_for_quote(
            quote_id=payload.quote_id,
            initiator_user_id=requester_id,
            shipper_branch_org_id=payload.shipper_branch_org_id,
            gallery_branch_org_id=payload.gallery_branch_org_id,
        ).thread
    else:
        raise ValidationError("threadId or quoteId is required")

    membership = services.orchestrator.ensure_participant_in_thread(
        thread.thread_id,
        requester_id,
        organization_id=payload.organization_id,
    )
    issued = services.token_issuer.issue(membership.identity, ttl_seconds=payload.ttl_seconds)
    return ChatTokenResponse(
        token=issued.token,
        expires_at=issued.expires_at,
        ttl_seconds=issued.ttl_seconds,
        conversation_sid=membership.thread.provider_conversation_id,
        thread_id=membership.thread.thread_id,
        quote_id=membership.thread.quote_id,
        shipment_id=membership.thread.shipment_id,
        identity=membership.identity,
        role=membership.role,
        shipper_branch_org_id=membership.thread.shipper_branch_org_id,
        gallery_branch_org_id=membership.thread.gallery_branch_org_id,
    )


@router.post("/provision", response_model=ProvisionResponse)
def provision_conversations(
    request: Request,
    payload: ProvisionRequest | None = None,
    services: ChatServices = Depends(get_services),
) -> ProvisionResponse:
    requester_id = _require_user(request, services)
    outcome = provision_user_conversations(
        orchestrator=services.orchestrator,
        directory=services.directory,
        user_id=requester_id,
        organization_ids=payload.organization_ids if payload is not None else None,
    )
    return ProvisionResponse(
        result=ProvisionResult(
            processed_organizations=outcome.processed_organizations,
            ensured_threads=outcome.ensured_threads,
            ensured_participants=outcome.ensured_participants,
        )
    )
