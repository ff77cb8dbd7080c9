"""
Post service: business logic for the Post aggregate.

Design notes
------------
- Reads are cache-aside: ``post:{id}`` and ``posts:all`` are checked
  first, the store is hit on a miss and the result cached for the
  configured TTL.  An entry that no longer validates is ignored.
- Every write follows the same order: store commit, then cache
  invalidation, then event publication.  A reader racing a writer sees
  the old or the new value, never one older than the last invalidation.
- The collection entry is dropped on any write, never patched.
- Ownership is checked before anything is touched; a rejected write
  mutates nothing, invalidates nothing and publishes nothing.
"""
import logging

from pydantic import ValidationError as SchemaError

from posthub.cache import POSTS_ALL_KEY, CacheManager, post_key
from posthub.errors import ForbiddenError, NotFoundError, ValidationError
from posthub.events import DomainEvent, EventBus, EventType
from posthub.schemas import PostCreate, PostRead, PostUpdate, Principal
from posthub.store import PostStore


def _require_text(field: str, value: str | None) -> None:
    if value is None or not value.strip():
        raise ValidationError(f"{field} must not be empty")


def _event_payload(post: PostRead) -> dict:
    return {"postId": post.id, "userId": post.owner_id, "title": post.title, "published": post.published}


class PostService:
    def __init__(
        self,
        store: PostStore,
        cache: CacheManager,
        bus: EventBus,
        *,
        item_ttl: int = 300,
        list_ttl: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._bus = bus
        self._item_ttl = item_ttl
        self._list_ttl = list_ttl
        self._log = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read(self, post_id: int) -> PostRead:
        key = post_key(post_id)
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                post = PostRead.model_validate(cached)
            except SchemaError:
                self._log.warning("Ignoring malformed cache entry %s", key)
            else:
                self._log.debug("Post %s served from cache", post_id)
                return post

        post = await self._store.get(post_id)
        if post is None:
            raise NotFoundError(f"Post with ID {post_id} not found")
        await self._cache.set(key, post.model_dump(mode="json"), ttl=self._item_ttl)
        return post

    async def read_all(self) -> list[PostRead]:
        cached = await self._cache.get(POSTS_ALL_KEY)
        if isinstance(cached, list):
            try:
                return [PostRead.model_validate(item) for item in cached]
            except SchemaError:
                self._log.warning("Ignoring malformed cache entry %s", POSTS_ALL_KEY)

        posts = await self._store.list_all()
        await self._cache.set(
            POSTS_ALL_KEY, [p.model_dump(mode="json") for p in posts], ttl=self._list_ttl
        )
        return posts

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, data: PostCreate, principal: Principal) -> PostRead:
        _require_text("title", data.title)
        _require_text("content", data.content)

        post = await self._store.add(data, owner_id=principal.id)
        await self._cache.invalidate_posts()
        await self._bus.publish(
            DomainEvent(EventType.CREATED, post.id, post.owner_id, _event_payload(post))
        )
        self._log.info("Post created: %s by user %s", post.id, principal.id)
        return post

    async def update(self, post_id: int, patch: PostUpdate, principal: Principal) -> PostRead:
        current = await self.read(post_id)
        self._authorize(current, principal, "update")

        changes = patch.model_dump(exclude_unset=True)
        for field in ("title", "content"):
            if field in changes:
                _require_text(field, changes[field])
        if changes.get("published", True) is None:
            raise ValidationError("published must be a boolean")

        post = await self._store.update(post_id, changes)
        if post is None:
            # Deleted between the ownership check and the write.
            await self._cache.invalidate_posts(post_id)
            raise NotFoundError(f"Post with ID {post_id} not found")
        await self._cache.invalidate_posts(post_id)
        await self._bus.publish(
            DomainEvent(EventType.UPDATED, post.id, post.owner_id, _event_payload(post))
        )
        self._log.info("Post %s updated by user %s", post_id, principal.id)
        return post

    async def delete(self, post_id: int, principal: Principal) -> None:
        current = await self.read(post_id)
        self._authorize(current, principal, "delete")

        if not await self._store.delete(post_id):
            await self._cache.invalidate_posts(post_id)
            raise NotFoundError(f"Post with ID {post_id} not found")
        await self._cache.invalidate_posts(post_id)
        await self._bus.publish(
            DomainEvent(EventType.DELETED, post_id, current.owner_id, {"postId": post_id, "userId": principal.id})
        )
        self._log.info("Post %s deleted by user %s", post_id, principal.id)

    async def count(self) -> int:
        return await self._store.count()

    def _authorize(self, post: PostRead, principal: Principal, action: str) -> None:
        if post.owner_id != principal.id:
            self._log.warning(
                "User %s denied %s on post %s owned by %s", principal.id, action, post.id, post.owner_id
            )
            raise ForbiddenError(f"You can only {action} your own posts")
