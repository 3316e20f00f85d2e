"""
Composition root - builds every delivery and cache service from Settings.

Created once in the FastAPI lifespan and stored on app.state. Tests build
their own containers against SQLite and fakeredis, so no two tests share
queue or worker state.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leadrelay.config import (
    BULK_CAMPAIGN_QUEUE,
    DIRECT_MESSAGE_QUEUE,
    TRANSACTIONAL_EMAIL_QUEUE,
    QueueConfig,
    Settings,
    build_queue_configs,
)
from leadrelay.services.catalog_cache import LocalCatalogCache
from leadrelay.services.catalog_repository import CatalogRepository, SqlAlchemyCatalogRepository
from leadrelay.services.credential_cache import CredentialCache
from leadrelay.services.job_queue import JobQueue
from leadrelay.services.job_repository import SqlAlchemyJobRepository
from leadrelay.services.response_cache import ResponseCache
from leadrelay.services.senders import (
    CampaignSender,
    SendGridEmailSender,
    Sender,
    WhatsAppSender,
)
from leadrelay.services.tag_index import TagIndex
from leadrelay.utils.rate_limiter import SlidingWindowRateLimiter
from leadrelay.workers.cache_warmer import run_cache_warmer
from leadrelay.workers.delivery_worker import SHUTDOWN_GRACE_SECONDS, DeliveryWorkerPool
from leadrelay.workers.queue_maintenance import run_queue_maintenance

logger = logging.getLogger(__name__)


def build_senders(settings: Settings, credentials: Optional[CredentialCache]) -> dict[str, Sender]:
    """One sender per queue. Campaigns fan out through the direct senders."""
    whatsapp = WhatsAppSender(
        credentials=credentials,
        phone_number_id=settings.whatsapp_phone_number_id,
        base_url=settings.whatsapp_api_base_url,
    )
    email = SendGridEmailSender(
        api_key=settings.sendgrid_api_key,
        from_email=settings.sendgrid_from_email,
        from_name=settings.sendgrid_from_name,
    )
    return {
        DIRECT_MESSAGE_QUEUE: whatsapp,
        TRANSACTIONAL_EMAIL_QUEUE: email,
        BULK_CAMPAIGN_QUEUE: CampaignSender(
            {"whatsapp": whatsapp, "email": email},
            pacing_seconds=settings.campaign_pacing_seconds,
        ),
    }


@dataclass
class ServiceContainer:
    settings: Settings
    redis: object
    queue_configs: dict[str, QueueConfig]
    job_queue: JobQueue
    response_cache: ResponseCache
    catalog_cache: LocalCatalogCache
    catalog: CatalogRepository
    credential_cache: Optional[CredentialCache] = None
    senders: dict[str, Sender] = field(default_factory=dict)
    pools: dict[str, DeliveryWorkerPool] = field(default_factory=dict)
    _tasks: list[asyncio.Task] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        settings: Settings,
        redis,
        session_factory: async_sessionmaker[AsyncSession],
        senders: Optional[dict[str, Sender]] = None,
    ) -> "ServiceContainer":
        queue_configs = build_queue_configs(settings)

        credential_cache = None
        if settings.credential_encryption_key:
            credential_cache = CredentialCache(
                redis,
                settings.credential_encryption_key,
                expiry_buffer_seconds=settings.credential_expiry_buffer_seconds,
                default_ttl_seconds=settings.credential_default_ttl_seconds,
            )
        else:
            logger.warning(
                "CREDENTIAL_ENCRYPTION_KEY not set - credential cache disabled, "
                "direct messages will fail with missing credentials."
            )

        job_queue = JobQueue(SqlAlchemyJobRepository(session_factory), queue_configs, redis=redis)
        if senders is None:
            senders = build_senders(settings, credential_cache)

        pools = {}
        for name, config in queue_configs.items():
            sender = senders.get(name)
            if sender is None:
                logger.warning("No sender configured for queue %s, no workers started", name)
                continue
            pools[name] = DeliveryWorkerPool(
                job_queue,
                config,
                sender,
                rate_limiter=SlidingWindowRateLimiter(
                    redis, name, config.rate_limit, config.rate_window_seconds
                ),
                redis=redis,
                poll_interval_seconds=settings.worker_poll_interval_seconds,
            )

        return cls(
            settings=settings,
            redis=redis,
            queue_configs=queue_configs,
            job_queue=job_queue,
            response_cache=ResponseCache(
                redis,
                TagIndex(redis),
                default_ttl_seconds=settings.cache_default_ttl_seconds,
            ),
            catalog_cache=LocalCatalogCache(ttl_seconds=settings.catalog_cache_ttl_seconds),
            catalog=SqlAlchemyCatalogRepository(session_factory),
            credential_cache=credential_cache,
            senders=senders,
            pools=pools,
        )

    def start_workers(self) -> None:
        """Start one pool per queue plus the maintenance and cache warming loops."""
        for name, pool in self.pools.items():
            self._tasks.append(asyncio.create_task(pool.run(), name=pool.name))
            logger.info("Delivery worker for %s started", name, extra={"queue": name})

        self._tasks.append(asyncio.create_task(
            run_queue_maintenance(
                self.job_queue,
                self.settings.stall_timeout_seconds,
                redis=self.redis,
                interval_seconds=self.settings.maintenance_interval_seconds,
            ),
            name="queue_maintenance",
        ))
        logger.info("Queue maintenance worker started")

        self._tasks.append(asyncio.create_task(
            run_cache_warmer(
                self.catalog,
                self.response_cache,
                redis=self.redis,
                interval_seconds=self.settings.cache_warm_interval_seconds,
                owner_limit=self.settings.cache_warm_owner_limit,
            ),
            name="cache_warmer",
        ))
        logger.info("Cache warmer started")

    async def shutdown(self, timeout: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop claiming, let in-flight jobs finish for up to `timeout`, then cancel loops."""
        if self.pools:
            await asyncio.gather(*(pool.stop(timeout) for pool in self.pools.values()))

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Service container shut down - %d worker loops stopped", len(self._tasks))
        self._tasks.clear()
