"""Narrow persistence interfaces the federation engine consumes.

Each operation runs in its own transaction; the engine takes no in-process
locks and relies on the database for a consistent view.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import StorageError
from .models import PROFILE_ID, Follower, Post, Profile

logger = structlog.get_logger()


def dialect_insert(session: AsyncSession, model: Any):
    """Return a dialect-specific INSERT supporting ON CONFLICT clauses.

    Raises:
        StorageError: For backends without ON CONFLICT support here
    """
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StorageError(f"Unsupported database dialect: {dialect}")
    return insert(model)


class SqlStore:
    """Shared transaction handling for the SQLAlchemy-backed stores."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Open a session, commit on success and map driver errors to StorageError."""
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            raise StorageError(f"{type(self).__name__}: {e}") from e


class FollowerStore(SqlStore):
    """Remote actors following the local actor."""

    async def add(self, actor_iri: str, inbox_iri: str) -> None:
        """Insert a follower, refreshing the inbox if it already follows."""
        async with self.transaction() as session:
            stmt = dialect_insert(session, Follower).values(
                actor_iri=actor_iri,
                inbox_iri=inbox_iri,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Follower.actor_iri],
                set_={"inbox_iri": stmt.excluded.inbox_iri},
            )
            await session.execute(stmt)

    async def remove(self, actor_iri: str) -> bool:
        """Remove a follower. Returns False if it was not following."""
        async with self.transaction() as session:
            result = await session.execute(
                delete(Follower).where(Follower.actor_iri == actor_iri)
            )
            return result.rowcount > 0

    async def get(self, actor_iri: str) -> Follower | None:
        async with self.transaction() as session:
            return await session.get(Follower, actor_iri)

    async def list_all(self) -> list[Follower]:
        """All followers, most recent first."""
        async with self.transaction() as session:
            result = await session.execute(
                select(Follower).order_by(Follower.followed_at.desc())
            )
            return list(result.scalars().all())

    async def count(self) -> int:
        async with self.transaction() as session:
            return await session.scalar(select(func.count()).select_from(Follower)) or 0


class PostStore(SqlStore):
    """Local and federated posts."""

    async def create_local(self, post: Post, base_url: str) -> Post:
        """Persist a local post and assign its canonical URI.

        The row is inserted first so the database assigns the id, then the
        URI {base_url}/notes/{id} is written in the same transaction.
        """
        async with self.transaction() as session:
            post.uri = None
            session.add(post)
            await session.flush()
            post.uri = f"{base_url.rstrip('/')}/notes/{post.id}"
        logger.info("Created local post", post_id=post.id, uri=post.uri)
        return post

    async def create_federated(self, post: Post) -> bool:
        """Persist a federated post keyed by its URI.

        Returns:
            False if a post with that URI already exists
        """
        if not post.uri:
            raise ValueError("federated posts must carry a URI")
        async with self.transaction() as session:
            stmt = dialect_insert(session, Post).values(
                uri=post.uri,
                cw=post.cw or "",
                content=post.content,
                host=post.host,
                author_name=post.author_name or "",
                author_finger=post.author_finger,
                visibility=post.visibility,
                likes=0,
                shares=0,
                created_at=post.created_at or datetime.now(timezone.utc),
            ).on_conflict_do_nothing(index_elements=[Post.uri])
            result = await session.execute(stmt)
            return result.rowcount > 0

    async def get(self, post_id: int) -> Post | None:
        async with self.transaction() as session:
            return await session.get(Post, post_id)

    async def get_by_uri(self, uri: str) -> Post | None:
        async with self.transaction() as session:
            result = await session.execute(select(Post).where(Post.uri == uri))
            return result.scalar_one_or_none()

    async def update_content_by_uri(self, uri: str, content: str) -> bool:
        async with self.transaction() as session:
            result = await session.execute(
                update(Post).where(Post.uri == uri).values(content=content)
            )
            return result.rowcount > 0

    async def delete(self, post_id: int) -> Post | None:
        """Delete a post by id, returning the removed row."""
        async with self.transaction() as session:
            post = await session.get(Post, post_id)
            if post is not None:
                await session.delete(post)
            return post

    async def delete_by_uri(self, uri: str) -> bool:
        async with self.transaction() as session:
            result = await session.execute(delete(Post).where(Post.uri == uri))
            return result.rowcount > 0

    async def increment_likes(self, post_id: int) -> None:
        await self._adjust(post_id, Post.likes, 1)

    async def decrement_likes(self, post_id: int) -> None:
        await self._adjust(post_id, Post.likes, -1)

    async def increment_shares(self, post_id: int) -> None:
        await self._adjust(post_id, Post.shares, 1)

    async def decrement_shares(self, post_id: int) -> None:
        await self._adjust(post_id, Post.shares, -1)

    async def _adjust(self, post_id: int, column: Any, delta: int) -> None:
        # Counters never go below zero
        stmt = update(Post).where(Post.id == post_id).values({column: column + delta})
        if delta < 0:
            stmt = stmt.where(column > 0)
        async with self.transaction() as session:
            await session.execute(stmt)

    async def count_by_host(self, host: str) -> int:
        async with self.transaction() as session:
            return await session.scalar(
                select(func.count()).select_from(Post).where(Post.host == host)
            ) or 0


class ProfileStore(SqlStore):
    """The single stored profile the local actor is derived from."""

    async def get(self) -> Profile | None:
        async with self.transaction() as session:
            return await session.get(Profile, PROFILE_ID)

    async def save(self, profile: Profile) -> Profile:
        """Create the profile or overwrite the existing one, whatever its finger."""
        profile.id = PROFILE_ID
        async with self.transaction() as session:
            return await session.merge(profile)
