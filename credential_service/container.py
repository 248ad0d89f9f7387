"""Object graph for one process: build once, open, pass by reference.

Nothing in this package keeps a client at module level.  The container
builds every adapter from Settings, owns the ones with connections
(database engine, Redis pool, httpx clients) and opens/closes them in
order.  The API's lifespan and the worker each own one container.

Backends are picked per store from the settings:

    DATABASE_URL    set -> Postgres index + verification log, else in-memory
    REDIS_URL       set -> Redis cache, rate-limit counters and reconciler
                           height, else in-memory
    LEDGER_URL      set -> HTTP ledger gateway, else in-memory ledger
    BLOB_STORE_URL  set -> HTTP pinning service, else in-memory blobs

Tests use ``ServiceContainer.in_memory(...)`` and swap single adapters
for fault-injecting wrappers through keyword overrides.
"""

from __future__ import annotations

import logging
from typing import Any

from credential_service.core.clock import Clock, SystemClock
from credential_service.core.config import Settings, load_settings
from credential_service.core.retry import RetryPolicy
from credential_service.db.engine import Database
from credential_service.db.redis import RedisConnection
from credential_service.repos.credential_repo import CredentialIndex, InMemoryCredentialIndex
from credential_service.repos.pg_credential_repo import PgCredentialIndex
from credential_service.repos.pg_verification_log_repo import PgVerificationLog
from credential_service.repos.verification_log_repo import (
    InMemoryVerificationLog,
    VerificationLog,
)
from credential_service.services.blob_store import BlobStore, HttpBlobStore, InMemoryBlobStore
from credential_service.services.cache import CacheService, InMemoryCacheService, RedisCacheService
from credential_service.services.credentials import CredentialService
from credential_service.services.issuance import IssuanceCoordinator
from credential_service.services.ledger import HttpLedgerAdapter, InMemoryLedger, LedgerAdapter
from credential_service.services.rate_limiter import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    SlidingWindowRateLimiter,
)
from credential_service.services.reconciliation import (
    HeightStore,
    IndexReconciler,
    InMemoryHeightStore,
    LedgerEventReconciler,
    RedisHeightStore,
)
from credential_service.services.revocation import (
    IssuerAuthorizer,
    IssuerOfRecordAuthorizer,
    RevocationManager,
)
from credential_service.services.verification import VerificationEngine
from credential_service.services.verification_cache import VerificationCache

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        *,
        index: CredentialIndex,
        verification_log: VerificationLog,
        ledger: LedgerAdapter,
        blob_store: BlobStore,
        cache: CacheService,
        rate_limit_store: RateLimitStore,
        height_store: HeightStore,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        authorizer: IssuerAuthorizer | None = None,
        database: Database | None = None,
        redis: RedisConnection | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            timeout=settings.store_timeout_seconds,
        )
        self.database = database
        self.redis = redis

        self.index = index
        self.verification_log = verification_log
        self.ledger = ledger
        self.blob_store = blob_store
        self.cache = cache
        self.rate_limit_store = rate_limit_store
        self.height_store = height_store

        self.reconciler = IndexReconciler(
            index,
            base_delay=max(self.retry_policy.base_delay, 0.05),
            max_delay=max(self.retry_policy.max_delay, 1.0),
            timeout=self.retry_policy.timeout,
        )
        self.verification_cache = VerificationCache(
            cache,
            ttl_seconds=settings.verification_cache_ttl_seconds,
            clock=self.clock,
            base_delay=max(self.retry_policy.base_delay, 0.05),
            max_delay=max(self.retry_policy.max_delay, 1.0),
        )
        self.rate_limiter = SlidingWindowRateLimiter(
            rate_limit_store, clock=self.clock, timeout=min(self.retry_policy.timeout, 1.0)
        )
        self.issuance = IssuanceCoordinator(
            index,
            ledger,
            blob_store,
            self.reconciler,
            clock=self.clock,
            retry_policy=self.retry_policy,
        )
        self.verification = VerificationEngine(
            index,
            ledger,
            blob_store,
            self.verification_cache,
            verification_log,
            clock=self.clock,
            retry_policy=self.retry_policy,
        )
        self.revocation = RevocationManager(
            index,
            ledger,
            self.verification_cache,
            self.reconciler,
            authorizer or IssuerOfRecordAuthorizer(),
            clock=self.clock,
            retry_policy=self.retry_policy,
        )
        self.service = CredentialService(
            index=index,
            verification_log=verification_log,
            issuance=self.issuance,
            verification=self.verification,
            revocation=self.revocation,
            rate_limiter=self.rate_limiter,
            retry_policy=self.retry_policy,
            rate_limit_window_seconds=settings.rate_limit_window_seconds,
            rate_limit_max_requests=settings.rate_limit_max_requests,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ServiceContainer:
        settings = settings or load_settings()

        database = Database(settings.database_url) if settings.database_url else None
        redis = RedisConnection(settings.redis_url) if settings.redis_url else None

        timeout = settings.store_timeout_seconds
        ledger: LedgerAdapter = (
            HttpLedgerAdapter(settings.ledger_url, timeout=timeout)
            if settings.ledger_url
            else InMemoryLedger()
        )
        blob_store: BlobStore = (
            HttpBlobStore(settings.blob_store_url, timeout=timeout)
            if settings.blob_store_url
            else InMemoryBlobStore()
        )

        if settings.is_prod and not all((database, redis, settings.ledger_url)):
            logger.warning(
                "Running in prod with in-memory backends: database=%s redis=%s ledger=%s",
                bool(database),
                bool(redis),
                bool(settings.ledger_url),
            )

        return cls(
            settings,
            index=PgCredentialIndex(database) if database else InMemoryCredentialIndex(),
            verification_log=(
                PgVerificationLog(database) if database else InMemoryVerificationLog()
            ),
            ledger=ledger,
            blob_store=blob_store,
            cache=RedisCacheService(redis) if redis else InMemoryCacheService(),
            rate_limit_store=RedisRateLimitStore(redis) if redis else InMemoryRateLimitStore(),
            height_store=RedisHeightStore(redis) if redis else InMemoryHeightStore(),
            database=database,
            redis=redis,
        )

    @classmethod
    def in_memory(cls, settings: Settings | None = None, **overrides: Any) -> ServiceContainer:
        """All-in-memory graph.  Keyword overrides replace single adapters
        (``ledger=FlakyLedger(...)``) or the clock and retry policy."""
        parts: dict[str, Any] = {
            "index": InMemoryCredentialIndex(),
            "verification_log": InMemoryVerificationLog(),
            "ledger": InMemoryLedger(),
            "blob_store": InMemoryBlobStore(),
            "cache": InMemoryCacheService(),
            "rate_limit_store": InMemoryRateLimitStore(),
            "height_store": InMemoryHeightStore(),
        }
        parts.update(overrides)
        return cls(settings or _in_memory_settings(), **parts)

    def event_reconciler(self) -> LedgerEventReconciler:
        return LedgerEventReconciler(
            self.ledger,
            self.index,
            self.height_store,
            clock=self.clock,
            retry_policy=self.retry_policy,
            poll_seconds=self.settings.reconcile_poll_seconds,
        )

    async def open(self) -> None:
        if self.database is not None:
            await self.database.open()
        if self.redis is not None:
            await self.redis.open()
        for client in (self.ledger, self.blob_store):
            if isinstance(client, HttpLedgerAdapter | HttpBlobStore):
                await client.open()
        logger.info("Service container opened")

    async def close(self) -> None:
        """Let in-flight work finish, then close clients in reverse order."""
        await self.service.drain()
        await self.reconciler.drain(timeout=self.retry_policy.timeout)
        await self.reconciler.close()
        await self.verification_cache.drain(timeout=self.retry_policy.timeout)
        await self.verification_cache.close()
        for client in (self.blob_store, self.ledger):
            if isinstance(client, HttpLedgerAdapter | HttpBlobStore):
                await client.close()
        if self.redis is not None:
            await self.redis.close()
        if self.database is not None:
            await self.database.close()
        logger.info("Service container closed")


def _in_memory_settings() -> Settings:
    return Settings(
        app_env="test",
        log_level="info",
        log_json=False,
        port=8000,
        database_url=None,
        redis_url=None,
        ledger_url=None,
        blob_store_url=None,
    )
