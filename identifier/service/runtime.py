from __future__ import annotations

from typing import Optional, Union

from identifier.config import EventBackend, Settings
from identifier.logging import get_logger
from identifier.service.email import EmailService
from identifier.service.events import (
    BestEffortPublisher,
    EventPublisher,
    InMemoryEventPublisher,
    LoggingEventPublisher,
    RedisEventPublisher,
)
from identifier.service.identity import IdentityLifecycleEngine
from identifier.service.passwords import PasswordHasher
from identifier.service.recovery import PasswordRecoveryEngine
from identifier.service.roles import HttpRoleResolver, RoleResolver, StaticRoleResolver
from identifier.service.sessions import TokenLifecycleEngine
from identifier.service.tokens import AccessTokenIssuer
from identifier.storage.memory import MemoryStore
from identifier.storage.postgres import PostgresStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]


def build_store(settings: Settings) -> Store:
    if settings.use_memory_store:
        return MemoryStore()
    return PostgresStore(settings.database_url)


def build_resolver(settings: Settings) -> RoleResolver:
    if not settings.auth_service_url:
        return StaticRoleResolver()
    return HttpRoleResolver(
        settings.auth_service_url, timeout=settings.auth_service_timeout_seconds
    )


def build_event_sink(settings: Settings) -> EventPublisher:
    if settings.event_backend == EventBackend.REDIS:
        return RedisEventPublisher(settings.redis_url, settings.event_stream)
    if settings.event_backend == EventBackend.MEMORY:
        return InMemoryEventPublisher()
    return LoggingEventPublisher()


class Runtime:
    """Every collaborator the service needs, wired from one ``Settings``.

    Collaborators can be passed in to replace the ones built from settings.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[Store] = None,
        resolver: Optional[RoleResolver] = None,
        event_sink: Optional[EventPublisher] = None,
        hasher: Optional[PasswordHasher] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else build_store(settings)
        self.resolver = resolver if resolver is not None else build_resolver(settings)
        self.events = BestEffortPublisher(
            event_sink if event_sink is not None else build_event_sink(settings)
        )
        self.hasher = hasher or PasswordHasher()
        self.email = email or EmailService.from_settings(settings)
        self.issuer = AccessTokenIssuer(settings)

        self.sessions = TokenLifecycleEngine(
            credentials=self.store,
            tokens=self.store,
            issuer=self.issuer,
            resolver=self.resolver,
            settings=settings,
        )
        self.identities = IdentityLifecycleEngine(
            credentials=self.store,
            attempts=self.store,
            sessions=self.sessions,
            hasher=self.hasher,
            events=self.events,
            settings=settings,
        )
        self.recovery = PasswordRecoveryEngine(
            credentials=self.store,
            tokens=self.store,
            sessions=self.sessions,
            hasher=self.hasher,
            email=self.email,
            events=self.events,
            settings=settings,
        )
        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            resolver=type(self.resolver).__name__,
            event_sink=type(self.events.sink).__name__,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        await self.recovery.drain()
        await self.events.close()
        await self.resolver.close()
        self.store.close()
        logger.info("runtime_closed")
