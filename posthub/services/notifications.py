"""
Post event subscribers and the notification job handler.

Subscribers run on the writer's task, so each one only hands work off.
The queue subscriber inserts a ``post-created`` job under a timeout; a
stalled insert drops that notification instead of holding up the write.
The broadcast subscriber schedules a live update and returns at once.
"""
import asyncio
import logging

from posthub.events import DomainEvent, EventBus, EventType
from posthub.gateway import BroadcastGateway
from posthub.jobs import Job, JobQueue

logger = logging.getLogger(__name__)

POST_CREATED_JOB = "post-created"


def queue_subscriber(queue: JobQueue, timeout: float = 2.0):
    async def enqueue_post_created(event: DomainEvent) -> None:
        logger.info("Post created event received: %s", event.resource_id)
        try:
            await asyncio.wait_for(
                queue.enqueue(
                    POST_CREATED_JOB,
                    {
                        "postId": event.resource_id,
                        "userId": event.owner_id,
                        "title": event.payload.get("title"),
                    },
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Enqueue of %s job for post %s timed out after %ss; notification dropped",
                POST_CREATED_JOB, event.resource_id, timeout,
            )

    return enqueue_post_created


def broadcast_subscriber(gateway: BroadcastGateway):
    async def push_live_update(event: DomainEvent) -> None:
        gateway.broadcast_all(
            event.type.value,
            {**event.payload, "postId": event.resource_id, "emittedAt": event.emitted_at.isoformat()},
        )

    return push_live_update


async def log_lifecycle_event(event: DomainEvent) -> None:
    logger.info("Post %s event received: %s", event.type.name.lower(), event.resource_id)


def register_subscribers(
    bus: EventBus, queue: JobQueue, gateway: BroadcastGateway, *, enqueue_timeout: float = 2.0
) -> None:
    """Wire the post event subscribers onto *bus*; called once by the composition root."""
    bus.subscribe(EventType.CREATED, queue_subscriber(queue, enqueue_timeout))
    live = broadcast_subscriber(gateway)
    for event_type in EventType:
        bus.subscribe(event_type, live)
    bus.subscribe(EventType.UPDATED, log_lifecycle_event)
    bus.subscribe(EventType.DELETED, log_lifecycle_event)


class NotificationProcessor:
    """Handles ``post-created`` jobs by notifying the author (simulated)."""

    def __init__(self, delay: float = 1.0) -> None:
        self._delay = delay

    async def handle_post_created(self, job: Job) -> None:
        logger.info("Processing post-created job: %s", job.id)
        data = job.json()
        await self.send_notification(data["userId"], f"New post created: {data['title']}")
        logger.info("Notification sent for post %s", data["postId"])

    async def send_notification(self, user_id: int, message: str) -> None:
        await asyncio.sleep(self._delay)
        logger.info("Notification to user %s: %s", user_id, message)

    def handlers(self) -> dict:
        return {POST_CREATED_JOB: self.handle_post_created}
