"""ActivityPub protocol types and utilities for knife.

This module implements the ActivityPub/ActivityStreams data types the
federation engine reads and writes.

References:
- ActivityPub: https://www.w3.org/TR/activitypub/
- ActivityStreams 2.0: https://www.w3.org/TR/activitystreams-core/
- Mastodon API: https://docs.joinmastodon.org/spec/activitypub/
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias
from urllib.parse import urlparse

# JSON-LD contexts for ActivityPub
ACTIVITY_STREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"

# Standard ActivityPub context
AP_CONTEXT: list[str | dict] = [
    ACTIVITY_STREAMS_CONTEXT,
    SECURITY_CONTEXT,
]

# Content types
AP_CONTENT_TYPE = "application/activity+json"
AP_ACCEPT_HEADER = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'

# Public addressing, plus the compacted forms some servers emit
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
AS_PUBLIC_ALIASES = frozenset({AS_PUBLIC, "as:Public", "Public"})

# Type aliases
JsonDict: TypeAlias = dict[str, Any]


class ActivityType(str, Enum):
    """Activity kinds the engine understands."""
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"

    FOLLOW = "Follow"
    ACCEPT = "Accept"
    UNDO = "Undo"

    LIKE = "Like"
    ANNOUNCE = "Announce"  # Boost/reblog


class ObjectType(str, Enum):
    """ActivityPub object types."""
    # Actors
    PERSON = "Person"
    SERVICE = "Service"
    APPLICATION = "Application"
    GROUP = "Group"
    ORGANIZATION = "Organization"

    # Content
    NOTE = "Note"
    TOMBSTONE = "Tombstone"


ACTOR_TYPES = frozenset({
    ObjectType.PERSON.value,
    ObjectType.SERVICE.value,
    ObjectType.APPLICATION.value,
    ObjectType.GROUP.value,
    ObjectType.ORGANIZATION.value,
})


@dataclass
class PublicKey:
    """RSA public key for HTTP signatures."""
    id: str  # e.g., https://knife.example/profile#main-key
    owner: str  # Actor ID
    public_key_pem: str

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        return {
            "id": self.id,
            "type": "Key",
            "owner": self.owner,
            "publicKeyPem": self.public_key_pem,
        }


@dataclass
class Actor:
    """ActivityPub Actor (Person, Service, etc.)."""
    id: str  # https://mastodon.social/users/alice
    type: ObjectType = ObjectType.PERSON
    preferred_username: str = ""  # alice
    name: str = ""  # Display name
    summary: str = ""  # Bio/about
    url: str = ""  # Profile URL
    inbox: str = ""  # Inbox endpoint
    outbox: str = ""  # Outbox endpoint
    shared_inbox: str = ""
    public_key: PublicKey | None = None
    icon: JsonDict | None = None  # Avatar

    @property
    def host(self) -> str:
        """Home host of the actor, taken from its profile URL or id."""
        return extract_instance_domain(self.url or self.id)

    @property
    def handle(self) -> str:
        """user@host form, as stored on federated posts."""
        return f"{self.preferred_username}@{self.host}"

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        actor = {
            "@context": AP_CONTEXT,
            "id": self.id,
            "type": self.type.value,
            "preferredUsername": self.preferred_username,
            "name": self.name or self.preferred_username,
            "summary": self.summary,
            "url": self.url or self.id,
            "inbox": self.inbox,
            "outbox": self.outbox,
        }

        if self.shared_inbox:
            actor["endpoints"] = {"sharedInbox": self.shared_inbox}

        if self.icon:
            actor["icon"] = self.icon

        if self.public_key:
            actor["publicKey"] = self.public_key.to_dict()

        return actor


@dataclass
class Activity:
    """ActivityPub Activity wrapper."""
    id: str
    type: ActivityType
    actor: str  # Actor ID performing the activity
    object: str | JsonDict  # Target object (ID or inline object)
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    published: str = ""

    def to_dict(self) -> JsonDict:
        """Convert to ActivityPub JSON-LD format."""
        activity = {
            "@context": ACTIVITY_STREAMS_CONTEXT,
            "id": self.id,
            "type": self.type.value,
            "actor": self.actor,
            "object": self.object,
        }

        if self.to:
            activity["to"] = self.to
        if self.cc:
            activity["cc"] = self.cc
        if self.published:
            activity["published"] = self.published

        return activity


def format_published(value: datetime | None) -> str:
    """Format a timestamp the way notes publish it (UTC, second precision)."""
    if value is None:
        value = datetime.now(timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def as_list(value: Any) -> list[str]:
    """Normalise an addressing field (absent, single IRI, list, objects) to IRIs."""
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    iris = []
    for item in value:
        if isinstance(item, str):
            iris.append(item)
        elif isinstance(item, dict) and isinstance(item.get("id"), str):
            iris.append(item["id"])
    return iris


def object_id(value: Any) -> str:
    """Return the IRI of a link or embedded object, or "" if there is none."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        ref = value.get("id") or value.get("href")
        if isinstance(ref, str):
            return ref
    return ""


def object_type(value: Any) -> str:
    """Return the type of an embedded object, or "" for links."""
    if not isinstance(value, dict):
        return ""
    obj_type = value.get("type", "")
    if isinstance(obj_type, list):
        obj_type = obj_type[0] if obj_type else ""
    return obj_type if isinstance(obj_type, str) else ""


def is_actor_document(data: Any) -> bool:
    """Whether data is an embedded actor representation rather than a reference."""
    return object_type(data) in ACTOR_TYPES and bool(data.get("inbox"))


def _text(value: Any) -> str:
    # name/summary may arrive as language maps
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return next((v for v in value.values() if isinstance(v, str)), "")
    return ""


def parse_actor(data: JsonDict) -> Actor | None:
    """Parse an Actor from JSON-LD data.

    Args:
        data: JSON-LD actor document

    Returns:
        Actor instance or None if the document is not an actor
    """
    if not isinstance(data, dict):
        return None

    actor_type = object_type(data)
    actor_id = data.get("id")
    if actor_type not in ACTOR_TYPES or not isinstance(actor_id, str) or not actor_id:
        return None

    public_key = None
    pk = data.get("publicKey")
    if isinstance(pk, list):
        pk = pk[0] if pk else None
    if isinstance(pk, dict):
        public_key = PublicKey(
            id=pk.get("id", ""),
            owner=pk.get("owner", ""),
            public_key_pem=pk.get("publicKeyPem", ""),
        )

    icon = data.get("icon")
    if isinstance(icon, list):
        icon = icon[0] if icon else None

    endpoints = data.get("endpoints")
    shared_inbox = endpoints.get("sharedInbox", "") if isinstance(endpoints, dict) else ""

    return Actor(
        id=actor_id,
        type=ObjectType(actor_type),
        preferred_username=_text(data.get("preferredUsername")),
        name=_text(data.get("name")),
        summary=_text(data.get("summary")),
        url=object_id(data.get("url")) or actor_id,
        inbox=object_id(data.get("inbox")),
        outbox=object_id(data.get("outbox")),
        shared_inbox=shared_inbox if isinstance(shared_inbox, str) else "",
        public_key=public_key,
        icon=icon if isinstance(icon, dict) else None,
    )


def extract_instance_domain(actor_id: str) -> str:
    """Extract instance domain from actor ID.

    Args:
        actor_id: Full actor ID URL (e.g., https://mastodon.social/users/alice)

    Returns:
        Instance domain (e.g., mastodon.social)
    """
    return urlparse(actor_id).netloc
