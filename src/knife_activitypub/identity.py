"""Local actor identity: actor document, WebFinger and NodeInfo.

Implements:
- Actor document for the single local user, with its public key
- WebFinger discovery (RFC 7033)
- NodeInfo 2.1 server metadata
"""

import mimetypes
from typing import Any

import structlog

from . import __version__
from .activitypub_types import Actor, JsonDict, ObjectType, PublicKey
from .config import FederationConfig
from .keys import KeyStore, key_id_for
from .models import Profile
from .stores import PostStore, ProfileStore

logger = structlog.get_logger()

SOFTWARE_NAME = "knife"
SOFTWARE_HOMEPAGE = "https://github.com/makachanm/knife"
NODEINFO_CONTENT_TYPE = (
    'application/json; profile="http://nodeinfo.diaspora.software/ns/schema/2.1#"'
)


class IdentityService:
    """Describes the local actor to the rest of the fediverse."""

    def __init__(
        self,
        profile_store: ProfileStore,
        key_store: KeyStore,
        post_store: PostStore,
        config: FederationConfig,
    ):
        """Initialize identity service.

        Args:
            profile_store: Source of the local profile
            key_store: Key pairs; the actor key is created on first request
            post_store: Used for NodeInfo post counts
            config: Public identity settings
        """
        self.profiles = profile_store
        self.keys = key_store
        self.posts = post_store
        self.config = config

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def actor_iri(self) -> str:
        return self.config.actor_iri

    async def get_profile(self) -> Profile | None:
        return await self.profiles.get()

    async def build_actor(self) -> Actor | None:
        """Build the local Actor, creating its key pair if needed.

        Returns:
            Actor or None if no profile has been set up

        Raises:
            CryptoError: If the key pair cannot be generated
            StorageError: If the profile or key cannot be read
        """
        profile = await self.get_profile()
        if profile is None:
            return None

        keypair = await self.keys.get_or_create(self.actor_iri)

        icon = None
        if profile.avatar_url:
            icon = {"type": "Image", "url": profile.avatar_url}
            media_type, _ = mimetypes.guess_type(profile.avatar_url)
            if media_type:
                icon["mediaType"] = media_type

        return Actor(
            id=self.actor_iri,
            type=ObjectType.PERSON,
            preferred_username=profile.finger,
            name=profile.display_name,
            summary=profile.bio,
            url=self.actor_iri,
            inbox=f"{self.base_url}/inbox",
            outbox=f"{self.base_url}/outbox",
            shared_inbox=f"{self.base_url}/inbox",
            public_key=PublicKey(
                id=key_id_for(self.actor_iri),
                owner=self.actor_iri,
                public_key_pem=keypair.public_key_pem,
            ),
            icon=icon,
        )

    async def build_actor_document(self) -> JsonDict | None:
        """Actor document served at /profile."""
        actor = await self.build_actor()
        return actor.to_dict() if actor else None

    # === WebFinger Support ===

    async def webfinger_lookup(self, resource: str) -> dict[str, Any] | None:
        """Perform WebFinger lookup for a resource.

        Args:
            resource: acct:finger@host, or the actor IRI itself

        Returns:
            WebFinger JRD document or None if not found
        """
        profile = await self.get_profile()
        if profile is None:
            return None

        if resource.startswith("acct:"):
            acct = resource[5:].lstrip("@")
            if "@" not in acct:
                return None
            finger, host = acct.rsplit("@", 1)
            if finger != profile.finger or host.lower() != self.config.host.lower():
                return None
        elif resource != self.actor_iri:
            return None

        return {
            "subject": f"acct:{profile.finger}@{self.config.host}",
            "aliases": [
                self.actor_iri,
            ],
            "links": [
                {
                    "rel": "self",
                    "type": "application/activity+json",
                    "href": self.actor_iri,
                },
                {
                    "rel": "http://webfinger.net/rel/profile-page",
                    "type": "text/html",
                    "href": self.actor_iri,
                },
            ],
        }

    # === NodeInfo ===

    async def nodeinfo(self) -> JsonDict:
        """NodeInfo 2.1 document for this single-user server."""
        profile = await self.get_profile()
        local_posts = await self.posts.count_by_host(self.config.host)
        return {
            "version": "2.1",
            "software": {
                "name": SOFTWARE_NAME,
                "version": __version__,
                "repository": SOFTWARE_HOMEPAGE,
                "homepage": SOFTWARE_HOMEPAGE,
            },
            "protocols": ["activitypub"],
            "services": {
                "inbound": [],
                "outbound": [],
            },
            "openRegistrations": False,
            "usage": {
                "users": {
                    "total": 1,
                    "activeHalfyear": 1,
                    "activeMonth": 1,
                },
                "localPosts": local_posts,
            },
            "metadata": {
                "nodeName": self.config.host,
                "nodeDescription": profile.bio if profile else "",
            },
        }
