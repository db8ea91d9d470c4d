"""Database models for knife."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Visibility(str, Enum):
    """Who may see a post."""
    PUBLIC = "public"        # Listed on public timelines
    UNLISTED = "unlisted"    # Public, but kept off public timelines
    FOLLOWERS = "followers"  # Followers only
    PRIVATE = "private"      # Author (and mentioned actors) only


PROFILE_ID = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class Profile(Base):
    """The single local user.

    Stored as the single row PROFILE_ID; saving another finger replaces it.

    Actor format: @{finger}@{host}
    """
    __tablename__ = "profile"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=PROFILE_ID)
    finger: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), default="", nullable=False)
    avatar_url: Mapped[str] = mapped_column(String(2048), default="", nullable=False)
    bio: Mapped[str] = mapped_column(Text, default="", nullable=False)

    __table_args__ = (
        CheckConstraint(f"id = {PROFILE_ID}", name="ck_profile_single_row"),
    )


class Post(Base):
    """A note, either written locally or received through federation.

    Local posts are inserted without a URI and receive
    {base_url}/notes/{id} in the same transaction; federated posts keep the
    id of the remote object.
    """
    __tablename__ = "notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uri: Mapped[Optional[str]] = mapped_column(String(2048), unique=True, nullable=True)
    # Content warning; published as summary + sensitive
    cw: Mapped[str] = mapped_column(String(512), default="", nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    host: Mapped[str] = mapped_column(String(256), nullable=False)
    author_name: Mapped[str] = mapped_column(String(256), default="", nullable=False)
    # user@host of the author
    author_finger: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    visibility: Mapped[Visibility] = mapped_column(
        SQLEnum(Visibility), default=Visibility.PUBLIC, nullable=False
    )

    likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_notes_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Post id={self.id!r} uri={self.uri!r}>"


class Follower(Base):
    """Remote actor following the local actor."""
    __tablename__ = "followers"

    # Canonical actor IRI, e.g. https://mastodon.social/users/alice
    actor_iri: Mapped[str] = mapped_column(String(2048), primary_key=True)
    # Cached so deliveries need no re-fetch
    inbox_iri: Mapped[str] = mapped_column(String(2048), nullable=False)
    followed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Follower actor_iri={self.actor_iri!r}>"


class KeyRecord(Base):
    """RSA key pair used to sign requests on behalf of a local actor."""
    __tablename__ = "httpsigs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # The unique constraint is what makes concurrent get-or-create converge
    actor: Mapped[str] = mapped_column(String(2048), unique=True, nullable=False)
    public_key_pem: Mapped[str] = mapped_column(Text, nullable=False)
    private_key_pem: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


async def init_db(database_url: str) -> async_sessionmaker:
    """Initialize database and return session maker."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
