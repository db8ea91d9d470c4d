"""Tests for follower, post and profile stores."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from knife_activitypub.errors import StorageError
from knife_activitypub.models import Post, Profile, Visibility
from knife_activitypub.stores import FollowerStore, PostStore, ProfileStore, dialect_insert

BASE = "https://knife.test"
BOB = "https://remote.example/users/bob"
CAROL = "https://other.example/users/carol"


def federated_post(uri: str = "https://remote.example/notes/1") -> Post:
    return Post(
        uri=uri,
        content="hello",
        host="remote.example",
        author_name="Bob",
        author_finger="bob@remote.example",
        visibility=Visibility.PUBLIC,
        created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
    )


def local_post(content: str = "local") -> Post:
    return Post(
        content=content,
        host="knife.test",
        author_finger="alice@knife.test",
        visibility=Visibility.PUBLIC,
    )


class TestFollowerStore:
    """Tests for FollowerStore."""

    @pytest.mark.asyncio
    async def test_add_and_list(self, session_maker):
        store = FollowerStore(session_maker)

        await store.add(BOB, f"{BOB}/inbox")
        await store.add(CAROL, f"{CAROL}/inbox")

        followers = await store.list_all()
        assert {f.actor_iri for f in followers} == {BOB, CAROL}
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_add_twice_updates_inbox(self, session_maker):
        """Test a repeated Follow refreshes the stored inbox."""
        store = FollowerStore(session_maker)

        await store.add(BOB, f"{BOB}/inbox")
        await store.add(BOB, "https://remote.example/inbox")

        follower = await store.get(BOB)
        assert follower.inbox_iri == "https://remote.example/inbox"
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_remove(self, session_maker):
        store = FollowerStore(session_maker)
        await store.add(BOB, f"{BOB}/inbox")

        assert await store.remove(BOB) is True
        assert await store.remove(BOB) is False
        assert await store.get(BOB) is None
        assert await store.list_all() == []


class TestPostStore:
    """Tests for PostStore."""

    @pytest.mark.asyncio
    async def test_create_local_assigns_uri(self, session_maker):
        store = PostStore(session_maker)

        post = await store.create_local(local_post(), BASE + "/")

        assert post.id is not None
        assert post.uri == f"{BASE}/notes/{post.id}"
        stored = await store.get(post.id)
        assert stored.uri == post.uri
        assert stored.likes == 0
        assert stored.cw == ""

    @pytest.mark.asyncio
    async def test_local_ids_are_distinct(self, session_maker):
        store = PostStore(session_maker)

        a = await store.create_local(local_post("a"), BASE)
        b = await store.create_local(local_post("b"), BASE)

        assert a.uri != b.uri

    @pytest.mark.asyncio
    async def test_create_federated_deduplicates(self, session_maker):
        """Test a second post with the same URI is a no-op."""
        store = PostStore(session_maker)

        assert await store.create_federated(federated_post()) is True
        assert await store.create_federated(federated_post()) is False

        stored = await store.get_by_uri("https://remote.example/notes/1")
        assert stored.content == "hello"
        assert stored.author_finger == "bob@remote.example"

    @pytest.mark.asyncio
    async def test_create_federated_requires_uri(self, session_maker):
        with pytest.raises(ValueError):
            await PostStore(session_maker).create_federated(federated_post(uri=None))

    @pytest.mark.asyncio
    async def test_update_content(self, session_maker):
        store = PostStore(session_maker)
        await store.create_federated(federated_post())

        assert await store.update_content_by_uri("https://remote.example/notes/1", "edited")
        assert not await store.update_content_by_uri("https://remote.example/notes/404", "x")
        assert (await store.get_by_uri("https://remote.example/notes/1")).content == "edited"

    @pytest.mark.asyncio
    async def test_delete(self, session_maker):
        store = PostStore(session_maker)
        await store.create_federated(federated_post())
        post = await store.create_local(local_post(), BASE)

        assert await store.delete_by_uri("https://remote.example/notes/1") is True
        assert await store.delete_by_uri("https://remote.example/notes/1") is False

        removed = await store.delete(post.id)
        assert removed.uri == post.uri
        assert await store.get(post.id) is None
        assert await store.delete(post.id) is None

    @pytest.mark.asyncio
    async def test_counters(self, session_maker):
        """Test likes and shares move up and never below zero."""
        store = PostStore(session_maker)
        await store.create_federated(federated_post())
        post = await store.get_by_uri("https://remote.example/notes/1")

        await store.increment_likes(post.id)
        await store.increment_likes(post.id)
        await store.increment_shares(post.id)
        await store.decrement_likes(post.id)
        await store.decrement_shares(post.id)
        await store.decrement_shares(post.id)

        post = await store.get(post.id)
        assert post.likes == 1
        assert post.shares == 0

    @pytest.mark.asyncio
    async def test_count_by_host(self, session_maker):
        store = PostStore(session_maker)
        await store.create_local(local_post(), BASE)
        await store.create_federated(federated_post())

        assert await store.count_by_host("knife.test") == 1
        assert await store.count_by_host("remote.example") == 1
        assert await store.count_by_host("nowhere.example") == 0


class TestProfileStore:
    """Tests for ProfileStore."""

    @pytest.mark.asyncio
    async def test_empty(self, session_maker):
        assert await ProfileStore(session_maker).get() is None

    @pytest.mark.asyncio
    async def test_save_and_update(self, session_maker):
        store = ProfileStore(session_maker)

        await store.save(Profile(finger="alice", display_name="Alice", bio="", avatar_url=""))
        await store.save(Profile(finger="alice", display_name="Alice B", bio="hi", avatar_url=""))

        profile = await store.get()
        assert profile.finger == "alice"
        assert profile.display_name == "Alice B"
        assert profile.bio == "hi"

    @pytest.mark.asyncio
    async def test_new_finger_replaces_profile(self, session_maker):
        """Test saving under another finger keeps a single profile row."""
        store = ProfileStore(session_maker)

        await store.save(Profile(finger="alice", display_name="Alice", bio="", avatar_url=""))
        await store.save(Profile(finger="bob", display_name="Bob", bio="", avatar_url=""))

        async with session_maker() as session:
            rows = await session.scalar(select(func.count()).select_from(Profile))
        assert rows == 1
        profile = await store.get()
        assert profile.finger == "bob"
        assert profile.display_name == "Bob"


class TestDialectInsert:
    """Tests for dialect_insert."""

    def test_sqlite(self):
        session = MagicMock()
        session.bind.dialect.name = "sqlite"
        stmt = dialect_insert(session, Post)
        assert hasattr(stmt, "on_conflict_do_nothing")

    def test_unsupported_dialect(self):
        session = MagicMock()
        session.bind.dialect.name = "mysql"
        with pytest.raises(StorageError):
            dialect_insert(session, Post)
