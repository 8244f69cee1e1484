from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from .authorization import AuthorizationGuard
from .config import Settings
from .directory import Directory, create_directory
from .orchestrator import ThreadOrchestrator
from .provider_client import ConversationProviderClient, create_provider_client
from .reconciliation import ReconciliationTool
from .thread_store import ThreadStore, create_thread_store
from .tokens import TokenIssuer
from .webhooks import WebhookIngestor


@dataclass
class ChatServices:
    settings: Settings
    store: ThreadStore
    directory: Directory
    provider: ConversationProviderClient
    token_issuer: TokenIssuer
    guard: AuthorizationGuard
    orchestrator: ThreadOrchestrator
    ingestor: WebhookIngestor
    reconciliation: ReconciliationTool


def assemble_services(
    settings: Settings,
    *,
    store: ThreadStore,
    directory: Directory,
    provider: ConversationProviderClient,
    token_issuer: TokenIssuer | None = None,
) -> ChatServices:
    orchestrator = ThreadOrchestrator(store=store, directory=directory, provider=provider, settings=settings)
    return ChatServices(
        settings=settings,
        store=store,
        directory=directory,
        provider=provider,
        token_issuer=token_issuer or TokenIssuer.from_settings(settings),
        guard=AuthorizationGuard(store=store, directory=directory),
        orchestrator=orchestrator,
        ingestor=WebhookIngestor(store=store, orchestrator=orchestrator, provider=provider, settings=settings),
        reconciliation=ReconciliationTool(store=store, directory=directory, orchestrator=orchestrator),
    )


def build_services(settings: Settings) -> ChatServices:
    return assemble_services(
        settings,
        store=create_thread_store(backend=settings.chat_store_backend, database_url=settings.database_url),
        directory=create_directory(backend=settings.chat_store_backend, database_url=settings.database_url),
        provider=create_provider_client(settings),
    )


def get_services(request: Request) -> ChatServices:
    return request.app.state.chat_services
