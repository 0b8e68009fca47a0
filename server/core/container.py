"""Dependency injection container for the application."""

import httpx
from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from services.execution import EventBus, ExecutionCoordinator
from services.memory_store import MemoryStore
from services.node_registry import InMemoryCredentialResolver, build_default_registry
from services.scheduler import create_scheduler
from services.triggers import TriggerManager


def _storage_backend(settings: Settings) -> str:
    return settings.storage


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Storage backends. `store` implements WorkflowStore, ExecutionLedger and TriggerStore.
    database = providers.Singleton(
        Database,
        settings=settings
    )

    memory_store = providers.Singleton(
        MemoryStore
    )

    store = providers.Selector(
        providers.Callable(_storage_backend, settings),
        database=database,
        memory=memory_store,
    )

    # Credentials are external; the in-memory resolver is the default binding
    credential_resolver = providers.Singleton(
        InMemoryCredentialResolver
    )

    # Shared outbound HTTP client for handlers
    http_client = providers.Singleton(
        httpx.AsyncClient,
        timeout=settings.provided.http_timeout,
    )

    # Execution engine
    handler_registry = providers.Singleton(
        build_default_registry,
        credential_resolver=credential_resolver,
        http_client=http_client,
        http_timeout=settings.provided.http_timeout,
    )

    event_bus = providers.Singleton(
        EventBus
    )

    coordinator = providers.Singleton(
        ExecutionCoordinator,
        workflow_store=store,
        registry=handler_registry,
        ledger=store,
        event_bus=event_bus,
        max_parallel_nodes=settings.provided.max_parallel_nodes,
        default_max_retries=settings.provided.default_max_retries,
        default_retry_delay_ms=settings.provided.default_retry_delay_ms,
    )

    # Triggers
    scheduler = providers.Singleton(
        create_scheduler,
        timezone=settings.provided.default_timezone,
    )

    trigger_manager = providers.Singleton(
        TriggerManager,
        coordinator=coordinator,
        workflow_store=store,
        trigger_store=store,
        scheduler=scheduler,
        default_timezone=settings.provided.default_timezone,
    )


# Global container instance
container = Container()
