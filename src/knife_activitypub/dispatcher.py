"""Outbound fan-out of local activity to followers."""

import json

import structlog

from .activitypub_types import Activity, JsonDict
from .delivery import DeliveryJob, DeliveryQueue
from .models import Post
from .protocol_mapper import ProtocolMapper
from .stores import FollowerStore

logger = structlog.get_logger()


class OutboundDispatcher:
    """Turns local publications into delivery jobs, one per follower inbox."""

    def __init__(
        self,
        follower_store: FollowerStore,
        queue: DeliveryQueue,
        mapper: ProtocolMapper,
    ):
        self.followers = follower_store
        self.queue = queue
        self.mapper = mapper

    async def publish_create(self, post: Post) -> int:
        """Announce a new local post to every follower.

        Returns:
            Number of delivery jobs enqueued

        Raises:
            StorageError: If followers cannot be listed
        """
        activity = self.mapper.create_activity(post)
        count = await self._fan_out(activity)
        logger.info("Published post", post_id=post.id, uri=activity.object["id"], jobs=count)
        return count

    async def publish_delete(self, post: Post) -> int:
        """Announce the deletion of a local post to every follower."""
        activity = self.mapper.delete_activity(post)
        count = await self._fan_out(activity)
        logger.info("Published delete", uri=activity.object, jobs=count)
        return count

    async def send_accept(self, follow: JsonDict, inbox: str) -> None:
        """Answer a Follow with an Accept sent to the follower's inbox."""
        activity = self.mapper.accept_activity(follow, inbox)
        await self.queue.enqueue(
            DeliveryJob(inbox=inbox, body=_serialize(activity), actor_iri=activity.actor)
        )
        logger.info("Queued accept", inbox=inbox, follow_id=follow.get("id"))

    async def _fan_out(self, activity: Activity) -> int:
        followers = await self.followers.list_all()
        if not followers:
            return 0

        # Serialized once; every job shares the same bytes
        body = _serialize(activity)
        for follower in followers:
            await self.queue.enqueue(
                DeliveryJob(inbox=follower.inbox_iri, body=body, actor_iri=activity.actor)
            )
        return len(followers)


def _serialize(activity: Activity) -> bytes:
    return json.dumps(activity.to_dict()).encode()
