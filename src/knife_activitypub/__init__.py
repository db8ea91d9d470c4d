"""knife ActivityPub federation engine.

This package implements the federation side of a single-user
microblogging server, letting one local actor exchange posts, follows and
reactions with Mastodon and other Fediverse servers.

Key components:
- activitypub_types: ActivityPub/ActivityStreams protocol types
- config: Pydantic configuration management
- models: SQLAlchemy database models
- stores: Follower, post and profile persistence
- keys: Per-actor RSA key pairs
- signatures: HTTP Signatures
- protocol_mapper: Visibility mapping and Note translation
- resolver: Remote actor resolution with SSRF guard
- delivery: Rate-limited delivery queue and signed POSTs
- dispatcher: Outbound fan-out to followers
- inbox: Inbound activity processing
- identity: Actor document, WebFinger and NodeInfo
- main: HTTP server and command line entry point
"""

__version__ = "0.1.0"

from .activitypub_types import (
    Activity,
    ActivityType,
    Actor,
    ObjectType,
    PublicKey,
)
from .config import (
    DatabaseConfig,
    FederationConfig,
    KnifeConfig,
    ServerConfig,
    load_config,
)
from .delivery import ActivityDeliverer, DeliveryJob, DeliveryQueue
from .dispatcher import OutboundDispatcher
from .errors import (
    CryptoError,
    FetchError,
    KnifeError,
    ParseError,
    ProtocolError,
    SecurityError,
    StorageError,
)
from .identity import IdentityService
from .inbox import InboxProcessor, InboxResult
from .keys import KeyPair, KeyStore
from .models import Follower, KeyRecord, Post, Profile, Visibility, init_db
from .protocol_mapper import ProtocolMapper, from_addressing, strip_html, to_addressing
from .resolver import ActorResolver, validate_iri
from .stores import FollowerStore, PostStore, ProfileStore

__all__ = [
    # Types
    "Activity",
    "ActivityType",
    "Actor",
    "ObjectType",
    "PublicKey",
    # Config
    "DatabaseConfig",
    "FederationConfig",
    "KnifeConfig",
    "ServerConfig",
    "load_config",
    # Errors
    "CryptoError",
    "FetchError",
    "KnifeError",
    "ParseError",
    "ProtocolError",
    "SecurityError",
    "StorageError",
    # Models and stores
    "Follower",
    "FollowerStore",
    "KeyRecord",
    "Post",
    "PostStore",
    "Profile",
    "ProfileStore",
    "Visibility",
    "init_db",
    # Keys
    "KeyPair",
    "KeyStore",
    # Mapper
    "ProtocolMapper",
    "from_addressing",
    "strip_html",
    "to_addressing",
    # Federation
    "ActivityDeliverer",
    "ActorResolver",
    "DeliveryJob",
    "DeliveryQueue",
    "InboxProcessor",
    "InboxResult",
    "OutboundDispatcher",
    "validate_iri",
    # Identity
    "IdentityService",
]
