"""
Post store: durable CRUD over the ``posts`` table.

Every write opens its own session and commits before returning, so a
caller that gets a result back knows the change is durable.  Cache
invalidation and event publication rely on that.
"""
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from posthub.models import Post
from posthub.schemas import PostCreate, PostRead

# Fields a patch may touch; owner_id and timestamps are not among them.
_MUTABLE_FIELDS: frozenset[str] = frozenset({"title", "content", "published"})


class PostStore(Protocol):
    async def add(self, data: PostCreate, owner_id: int) -> PostRead: ...

    async def get(self, post_id: int) -> PostRead | None: ...

    async def list_all(self) -> list[PostRead]: ...

    async def update(self, post_id: int, changes: dict[str, Any]) -> PostRead | None: ...

    async def delete(self, post_id: int) -> bool: ...

    async def count(self) -> int: ...


class SqlPostStore:
    """``PostStore`` over an SQLAlchemy async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def add(self, data: PostCreate, owner_id: int) -> PostRead:
        async with self._sessions() as db:
            post = Post(
                title=data.title,
                content=data.content,
                published=data.published,
                owner_id=owner_id,
            )
            db.add(post)
            await db.commit()
            await db.refresh(post)
            return PostRead.model_validate(post)

    async def get(self, post_id: int) -> PostRead | None:
        async with self._sessions() as db:
            post = await db.get(Post, post_id)
            return PostRead.model_validate(post) if post is not None else None

    async def list_all(self) -> list[PostRead]:
        async with self._sessions() as db:
            result = await db.execute(select(Post).order_by(Post.created_at.desc(), Post.id.desc()))
            return [PostRead.model_validate(p) for p in result.scalars().all()]

    async def update(self, post_id: int, changes: dict[str, Any]) -> PostRead | None:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"immutable or unknown post fields: {sorted(unknown)}")
        async with self._sessions() as db:
            post = await db.get(Post, post_id)
            if post is None:
                return None
            for field, value in changes.items():
                setattr(post, field, value)
            await db.commit()
            await db.refresh(post)
            return PostRead.model_validate(post)

    async def delete(self, post_id: int) -> bool:
        async with self._sessions() as db:
            post = await db.get(Post, post_id)
            if post is None:
                return False
            await db.delete(post)
            await db.commit()
            return True

    async def count(self) -> int:
        async with self._sessions() as db:
            return (await db.execute(select(func.count()).select_from(Post))).scalar_one()
