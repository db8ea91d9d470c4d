"""Inbound activity processing.

Implements the side effects of activities POSTed to the shared inbox:
- Follow / Undo(Follow): maintain the follower list, answer with Accept
- Create / Update / Delete: store, edit and remove federated notes
- Like / Announce and their Undo: adjust post counters

Failures are logged and never reach the HTTP caller.
"""

from enum import Enum
from typing import Awaitable, Callable

import structlog

from .activitypub_types import (
    ActivityType,
    JsonDict,
    ObjectType,
    object_id,
    object_type,
)
from .dispatcher import OutboundDispatcher
from .errors import KnifeError, ParseError
from .protocol_mapper import ProtocolMapper, strip_html
from .resolver import ActorResolver
from .stores import FollowerStore, PostStore

logger = structlog.get_logger()


class InboxResult(str, Enum):
    """Outcome of processing one inbound activity."""
    FOLLOWED = "followed"
    UNFOLLOWED = "unfollowed"
    STORED = "stored"
    DUPLICATE = "duplicate"
    UPDATED = "updated"
    DELETED = "deleted"
    LIKED = "liked"
    UNLIKED = "unliked"
    SHARED = "shared"
    UNSHARED = "unshared"
    IGNORED = "ignored"
    FAILED = "failed"


Handler = Callable[[JsonDict], Awaitable[InboxResult]]


class InboxProcessor:
    """Applies inbound activities to local state."""

    def __init__(
        self,
        resolver: ActorResolver,
        follower_store: FollowerStore,
        post_store: PostStore,
        dispatcher: OutboundDispatcher,
        mapper: ProtocolMapper,
    ):
        self.resolver = resolver
        self.followers = follower_store
        self.posts = post_store
        self.dispatcher = dispatcher
        self.mapper = mapper

        self._handlers: dict[ActivityType, Handler] = {
            ActivityType.FOLLOW: self._handle_follow,
            ActivityType.UNDO: self._handle_undo,
            ActivityType.CREATE: self._handle_create,
            ActivityType.UPDATE: self._handle_update,
            ActivityType.DELETE: self._handle_delete,
            ActivityType.LIKE: self._handle_like,
            ActivityType.ANNOUNCE: self._handle_announce,
        }

    async def process(self, activity: JsonDict) -> InboxResult:
        """Process one inbound activity.

        Args:
            activity: Parsed activity JSON object

        Returns:
            What happened, for logging and tests
        """
        raw_type = object_type(activity)
        try:
            handler = self._handlers.get(ActivityType(raw_type), self._handle_unknown)
        except ValueError:
            handler = self._handle_unknown

        logger.info(
            "Processing inbox activity",
            type=raw_type,
            activity_id=activity.get("id"),
            from_actor=object_id(activity.get("actor")),
        )

        try:
            return await handler(activity)
        except KnifeError as e:
            logger.warning(
                "Inbox activity failed",
                type=raw_type,
                activity_id=activity.get("id"),
                error_type=type(e).__name__,
                error=str(e),
            )
            return InboxResult.FAILED

    async def _handle_unknown(self, activity: JsonDict) -> InboxResult:
        logger.debug("Ignoring unsupported activity type", type=object_type(activity))
        return InboxResult.IGNORED

    # === Follows ===

    async def _handle_follow(self, activity: JsonDict) -> InboxResult:
        """Record the follower and send Accept."""
        actor, inbox = await self.resolver.resolve_inbox_of(activity.get("actor"))
        await self.followers.add(actor.id, inbox)
        await self.dispatcher.send_accept(activity, inbox)

        logger.info("Accepted follow", from_actor=actor.id, inbox=inbox)
        return InboxResult.FOLLOWED

    async def _handle_undo(self, activity: JsonDict) -> InboxResult:
        obj = activity.get("object")
        if not isinstance(obj, dict):
            # Bare IRI: we keep no activity log to look it up in
            return InboxResult.IGNORED

        inner_type = object_type(obj)
        if inner_type == ActivityType.FOLLOW.value:
            actor_id = object_id(activity.get("actor"))
            if not actor_id:
                actor_id = (await self.resolver.resolve(activity.get("actor"))).id
            removed = await self.followers.remove(actor_id)
            logger.info("Processed unfollow", from_actor=actor_id, was_following=removed)
            return InboxResult.UNFOLLOWED

        if inner_type == ActivityType.LIKE.value:
            return await self._adjust_counter(obj, "likes", -1)
        if inner_type == ActivityType.ANNOUNCE.value:
            return await self._adjust_counter(obj, "shares", -1)

        logger.debug("Ignoring unsupported undo", type=inner_type)
        return InboxResult.IGNORED

    # === Notes ===

    async def _handle_create(self, activity: JsonDict) -> InboxResult:
        """Store an embedded Note as a federated post."""
        note = activity.get("object")
        if object_type(note) != ObjectType.NOTE.value:
            logger.debug("Ignoring create of non-note", object_type=object_type(note))
            return InboxResult.IGNORED
        if not object_id(note):
            raise ParseError("Created note has no id")

        actor = await self.resolver.resolve(activity.get("actor"))
        post = self.mapper.note_to_post(note, actor)
        if not await self.posts.create_federated(post):
            logger.debug("Note already stored", uri=post.uri)
            return InboxResult.DUPLICATE

        logger.info(
            "Stored federated note",
            uri=post.uri,
            author=post.author_finger,
            visibility=post.visibility.value,
        )
        return InboxResult.STORED

    async def _handle_update(self, activity: JsonDict) -> InboxResult:
        note = activity.get("object")
        if object_type(note) != ObjectType.NOTE.value or not object_id(note):
            return InboxResult.IGNORED

        content = note.get("content")
        updated = await self.posts.update_content_by_uri(
            object_id(note),
            strip_html(content if isinstance(content, str) else ""),
        )
        if not updated:
            return InboxResult.IGNORED
        logger.info("Updated federated note", uri=object_id(note))
        return InboxResult.UPDATED

    async def _handle_delete(self, activity: JsonDict) -> InboxResult:
        # Either a bare IRI or an embedded object such as a Tombstone
        uri = object_id(activity.get("object"))
        if not uri:
            raise ParseError("Delete has no object id")
        if not await self.posts.delete_by_uri(uri):
            return InboxResult.IGNORED
        logger.info("Deleted federated note", uri=uri)
        return InboxResult.DELETED

    # === Reactions ===

    async def _handle_like(self, activity: JsonDict) -> InboxResult:
        return await self._adjust_counter(activity, "likes", 1)

    async def _handle_announce(self, activity: JsonDict) -> InboxResult:
        return await self._adjust_counter(activity, "shares", 1)

    async def _adjust_counter(self, activity: JsonDict, counter: str, delta: int) -> InboxResult:
        uri = object_id(activity.get("object"))
        post = await self.posts.get_by_uri(uri) if uri else None
        if post is None:
            logger.info("Reaction to unknown post", counter=counter, uri=uri)
            return InboxResult.IGNORED

        if counter == "likes":
            if delta > 0:
                await self.posts.increment_likes(post.id)
                return InboxResult.LIKED
            await self.posts.decrement_likes(post.id)
            return InboxResult.UNLIKED

        if delta > 0:
            await self.posts.increment_shares(post.id)
            return InboxResult.SHARED
        await self.posts.decrement_shares(post.id)
        return InboxResult.UNSHARED
