"""
Composition root.

Builds every component with explicit constructor injection and wires the
event subscribers.  Nothing here starts I/O; ``posthub.main`` drives the
lifecycle (cache connect, worker start/stop).
"""
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posthub.cache import CacheManager
from posthub.config import Settings
from posthub.events import EventBus
from posthub.gateway import BroadcastGateway
from posthub.jobs import SqlJobQueue
from posthub.services.notifications import NotificationProcessor, register_subscribers
from posthub.services.post_service import PostService
from posthub.store import SqlPostStore
from posthub.workers import WorkerPool


@dataclass
class Container:
    cache: CacheManager
    bus: EventBus
    queue: SqlJobQueue
    gateway: BroadcastGateway
    workers: WorkerPool
    posts: PostService


def build_container(
    config: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    cache: CacheManager | None = None,
) -> Container:
    if config.JOB_LEASE <= config.JOB_TIMEOUT:
        raise ValueError(
            f"JOB_LEASE ({config.JOB_LEASE}s) must exceed JOB_TIMEOUT ({config.JOB_TIMEOUT}s), "
            "otherwise a running job can be reclaimed by another worker"
        )
    cache = cache or CacheManager(
        config.REDIS_URL,
        socket_timeout=config.CACHE_SOCKET_TIMEOUT,
        logger=logging.getLogger("posthub.cache"),
    )
    bus = EventBus(logger=logging.getLogger("posthub.events"))
    queue = SqlJobQueue(
        session_factory,
        max_attempts=config.JOB_MAX_ATTEMPTS,
        backoff_base=config.JOB_BACKOFF_BASE,
        backoff_max=config.JOB_BACKOFF_MAX,
        lease_seconds=config.JOB_LEASE,
        logger=logging.getLogger("posthub.jobs"),
    )
    gateway = BroadcastGateway(
        send_timeout=config.BROADCAST_SEND_TIMEOUT,
        logger=logging.getLogger("posthub.gateway"),
    )
    workers = WorkerPool(
        queue,
        NotificationProcessor(delay=config.NOTIFICATION_DELAY).handlers(),
        concurrency=config.WORKER_CONCURRENCY,
        job_timeout=config.JOB_TIMEOUT,
        poll_interval=config.QUEUE_POLL_INTERVAL,
        logger=logging.getLogger("posthub.workers"),
    )
    posts = PostService(
        SqlPostStore(session_factory),
        cache,
        bus,
        item_ttl=config.CACHE_TTL_POST,
        list_ttl=config.CACHE_TTL_LIST,
        logger=logging.getLogger("posthub.posts"),
    )
    register_subscribers(bus, queue, gateway, enqueue_timeout=config.JOB_ENQUEUE_TIMEOUT)
    return Container(cache=cache, bus=bus, queue=queue, gateway=gateway, workers=workers, posts=posts)
