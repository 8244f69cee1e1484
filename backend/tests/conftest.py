from __future__ import annotations

from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient

from quote_chat.config import Settings
from quote_chat.directory import InMemoryDirectory
from quote_chat.main import create_app
from quote_chat.provider_client import InMemoryConversationProvider
from quote_chat.services import ChatServices, assemble_services
from quote_chat.session_tokens import create_session_token, encode_session_token
from quote_chat.thread_store import InMemoryThreadStore, ThreadStore

SESSION_SECRET = "test-chat-session-secret"


def make_settings(**overrides) -> Settings:
    values = {
        "twilio_account_sid": "AC" + "1" * 32,
        "twilio_api_key": "SK" + "2" * 32,
        "twilio_api_secret": "test-api-secret",
        "twilio_conversations_service_sid": "IS" + "3" * 32,
        "twilio_role_client_sid": "RL-client",
        "twilio_role_shipper_sid": "RL-shipper",
        "chat_provider_backend": "stub",
        "chat_webhook_signature_mode": "off",
        "chat_session_secret": SESSION_SECRET,
        "chat_seed_default_participants": False,
    }
    values.update(overrides)
    return Settings(**values)


def seed_directory(directory: InMemoryDirectory) -> InMemoryDirectory:
    directory.add_organization("org-gallery", name="Acme Gallery", type="client")
    directory.add_organization("org-shipper", name="Fast Freight", type="partner")
    directory.add_organization("org-shipper-2", name="Second Freight", type="partner")
    directory.add_organization("org-shipper-3", name="Third Freight", type="partner")

    directory.add_profile("u-admin", full_name="Ada Admin", default_org_id="org-gallery")
    directory.add_profile("u-viewer", full_name="Vic Viewer", default_org_id="org-gallery")
    directory.add_profile("u-submitter", full_name="Sue Submitter", default_org_id="org-gallery")
    directory.add_profile("u-ship-admin", full_name="Sam Shipper", default_org_id="org-shipper")
    directory.add_profile("u-ship-member", full_name=None, default_org_id="org-shipper")
    directory.add_profile("u-ship2-admin", full_name="Tess Two", default_org_id="org-shipper-2")
    directory.add_profile("u-ship3-admin", full_name="Theo Three", default_org_id="org-shipper-3")
    directory.add_profile("u-outsider", full_name="Olly Outsider", default_org_id=None)

    directory.add_membership("u-admin", "org-gallery", role="admin")
    directory.add_membership("u-viewer", "org-gallery", role="viewer")
    directory.add_membership("u-submitter", "org-gallery", role="editor")
    directory.add_membership("u-ship-admin", "org-shipper", role="admin")
    directory.add_membership("u-ship-member", "org-shipper", role="viewer")
    directory.add_membership("u-ship2-admin", "org-shipper-2", role="admin")
    directory.add_membership("u-ship3-admin", "org-shipper-3", role="admin")

    directory.add_quote(
        "Q1",
        owner_org_id="org-gallery",
        title="Quote One",
        shipment_id="S1",
        submitted_by="u-submitter",
    )
    directory.add_quote("Q2", owner_org_id="org-gallery", title=None, shipment_id=None, submitted_by=None)
    return directory


@dataclass
class ChatWorld:
    services: ChatServices
    store: ThreadStore
    directory: InMemoryDirectory
    provider: InMemoryConversationProvider


def build_world(*, store: ThreadStore | None = None, **setting_overrides) -> ChatWorld:
    settings = make_settings(**setting_overrides)
    store = store or InMemoryThreadStore()
    directory = seed_directory(InMemoryDirectory())
    provider = InMemoryConversationProvider()
    services = assemble_services(settings, store=store, directory=directory, provider=provider)
    return ChatWorld(services=services, store=store, directory=directory, provider=provider)


def bearer(user_id: str, *, secret: str = SESSION_SECRET) -> dict[str, str]:
    token = encode_session_token(create_session_token(user_id=user_id, ttl_minutes=30), secret=secret)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def world() -> ChatWorld:
    return build_world()


@pytest.fixture
def client(world: ChatWorld) -> TestClient:
    return TestClient(create_app(services=world.services))
