"""Main entry point for the knife ActivityPub server.

Implements an aiohttp-based HTTP server with:
- WebFinger endpoint (/.well-known/webfinger)
- NodeInfo endpoints (/.well-known/nodeinfo, /nodeinfo/2.1)
- Local actor (/profile) and notes (/notes/{id})
- Shared inbox (/inbox)

and a small command line for setting up the profile, creating the signing
key and publishing or deleting notes.
"""

import argparse
import asyncio
import html
import json
import logging
import signal
import sys

import structlog
from aiohttp import web
from sqlalchemy.ext.asyncio import async_sessionmaker

from .activitypub_types import AP_CONTENT_TYPE
from .config import KnifeConfig, load_config
from .delivery import ActivityDeliverer, DeliveryQueue
from .dispatcher import OutboundDispatcher
from .errors import KnifeError
from .identity import NODEINFO_CONTENT_TYPE, IdentityService
from .inbox import InboxProcessor
from .keys import KeyStore
from .models import Post, Profile, Visibility, init_db
from .protocol_mapper import ProtocolMapper
from .resolver import ActorResolver
from .stores import FollowerStore, PostStore, ProfileStore

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

AP_MEDIA_TYPES = ("application/activity+json", "application/ld+json")


class KnifeServer:
    """Single-user ActivityPub server."""

    def __init__(self, config: KnifeConfig, session_maker: async_sessionmaker | None = None):
        """Initialize server.

        Args:
            config: Server configuration
            session_maker: Existing session maker; the configured database
                is opened during setup() when omitted
        """
        self.config = config
        self.app = web.Application()
        self.session_maker = session_maker
        self.profile_store = None
        self.post_store = None
        self.follower_store = None
        self.key_store = None
        self.mapper = None
        self.resolver = None
        self.deliverer = None
        self.queue = None
        self.dispatcher = None
        self.inbox = None
        self.identity = None

    async def setup(self) -> None:
        """Set up server components."""
        fed = self.config.federation

        if self.session_maker is None:
            self.session_maker = await init_db(self.config.database.url)

        self.profile_store = ProfileStore(self.session_maker)
        self.post_store = PostStore(self.session_maker)
        self.follower_store = FollowerStore(self.session_maker)
        self.key_store = KeyStore(self.session_maker)

        self.mapper = ProtocolMapper(base_url=fed.base_url)

        self.resolver = ActorResolver(
            dev_mode=fed.dev_mode,
            fetch_timeout=fed.fetch_timeout,
            user_agent=fed.user_agent,
        )
        self.deliverer = ActivityDeliverer(
            key_store=self.key_store,
            timeout=fed.delivery_timeout,
            user_agent=fed.user_agent,
            dev_mode=fed.dev_mode,
        )
        self.queue = DeliveryQueue(
            handler=self.deliverer.deliver,
            rate_per_minute=fed.delivery_rate_per_minute,
            capacity=fed.delivery_queue_size,
            max_in_flight=fed.max_concurrent_deliveries,
        )
        self.dispatcher = OutboundDispatcher(
            follower_store=self.follower_store,
            queue=self.queue,
            mapper=self.mapper,
        )
        self.inbox = InboxProcessor(
            resolver=self.resolver,
            follower_store=self.follower_store,
            post_store=self.post_store,
            dispatcher=self.dispatcher,
            mapper=self.mapper,
        )
        self.identity = IdentityService(
            profile_store=self.profile_store,
            key_store=self.key_store,
            post_store=self.post_store,
            config=fed,
        )

        # Set up routes
        self._setup_routes()

        # Store services in app for handlers
        self.app["config"] = self.config
        self.app["identity"] = self.identity
        self.app["inbox"] = self.inbox
        self.app["posts"] = self.post_store
        self.app["mapper"] = self.mapper

        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)

        logger.info(
            "Server setup complete",
            host=fed.host,
            base_url=fed.base_url,
            dev_mode=fed.dev_mode,
        )

    async def cleanup(self) -> None:
        """Clean up server resources."""
        if self.queue:
            await self.queue.stop()
        if self.resolver:
            await self.resolver.close()
        if self.deliverer:
            await self.deliverer.close()

    async def _on_startup(self, app: web.Application) -> None:
        self.queue.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.cleanup()

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get("/.well-known/webfinger", handle_webfinger)
        self.app.router.add_get("/.well-known/nodeinfo", handle_nodeinfo)
        self.app.router.add_get("/nodeinfo/2.1", handle_nodeinfo)

        self.app.router.add_get("/profile", handle_profile)
        self.app.router.add_post("/inbox", handle_inbox)
        self.app.router.add_get("/notes/{id}", handle_note)

        # Health check
        self.app.router.add_get("/health", handle_health)

    async def run(self) -> None:
        """Run the server."""
        await self.setup()

        runner = web.AppRunner(self.app)
        await runner.setup()

        site = web.TCPSite(
            runner,
            self.config.server.host,
            self.config.server.port,
        )

        await site.start()

        logger.info(
            "Server started",
            host=self.config.server.host,
            port=self.config.server.port,
        )

        # Wait for shutdown signal
        stop_event = asyncio.Event()

        def signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        logger.info("Shutting down...")
        # on_cleanup stops the queue and closes client sessions
        await runner.cleanup()


# === Route Handlers ===

def wants_activity_json(request: web.Request) -> bool:
    """Content negotiation between ActivityPub JSON and the HTML fallback."""
    accept = request.headers.get("Accept", "")
    return any(media_type in accept for media_type in AP_MEDIA_TYPES)


async def handle_webfinger(request: web.Request) -> web.Response:
    """Handle WebFinger discovery requests."""
    resource = request.query.get("resource", "")
    if not resource:
        return web.json_response(
            {"error": "Missing resource parameter"},
            status=400,
        )

    result = await request.app["identity"].webfinger_lookup(resource)
    if not result:
        return web.json_response(
            {"error": "Resource not found"},
            status=404,
        )

    return web.json_response(
        result,
        content_type="application/jrd+json",
    )


async def handle_nodeinfo(request: web.Request) -> web.Response:
    """Handle NodeInfo requests."""
    document = await request.app["identity"].nodeinfo()
    # json_response() rejects parameters in content_type
    return web.Response(
        body=json.dumps(document).encode(),
        headers={"Content-Type": NODEINFO_CONTENT_TYPE},
    )


async def handle_profile(request: web.Request) -> web.Response:
    """Handle local actor request."""
    identity = request.app["identity"]

    if not wants_activity_json(request):
        # Return HTML profile page for browsers
        profile = await identity.get_profile()
        if profile is None:
            return web.Response(text="Profile not found", status=404)
        host = request.app["config"].federation.host
        return web.Response(
            text=(
                "<html><body>"
                f"<h1>{html.escape(profile.display_name or profile.finger)}</h1>"
                f"<p>@{html.escape(profile.finger)}@{html.escape(host)}</p>"
                f"<p>{html.escape(profile.bio)}</p>"
                "</body></html>"
            ),
            content_type="text/html",
        )

    document = await identity.build_actor_document()
    if document is None:
        return web.json_response(
            {"error": "Actor not found"},
            status=404,
        )

    return web.json_response(
        document,
        content_type=AP_CONTENT_TYPE,
    )


async def handle_inbox(request: web.Request) -> web.Response:
    """Handle incoming ActivityPub activities."""
    # Parse activity
    try:
        activity_data = await request.json()
    except ValueError:
        return web.json_response(
            {"error": "Invalid JSON"},
            status=400,
        )

    if not isinstance(activity_data, dict) or not isinstance(activity_data.get("type"), str):
        return web.json_response(
            {"error": "Activity must be an object with a type"},
            status=400,
        )

    logger.info(
        "Received inbox activity",
        activity_type=activity_data.get("type"),
        activity_id=activity_data.get("id"),
    )

    try:
        result = await request.app["inbox"].process(activity_data)
    except Exception:
        # Side effects of an accepted activity never fail the response
        logger.exception(
            "Inbox processing error",
            activity_type=activity_data.get("type"),
            activity_id=activity_data.get("id"),
        )
        return web.json_response({"status": "failed"})

    return web.json_response({"status": result.value})


async def handle_note(request: web.Request) -> web.Response:
    """Handle local note request."""
    try:
        post_id = int(request.match_info["id"])
    except ValueError:
        return web.json_response(
            {"error": "Invalid note id"},
            status=400,
        )

    mapper = request.app["mapper"]
    post = await request.app["posts"].get(post_id)
    if post is None or not mapper.is_local(post):
        return web.json_response(
            {"error": "Note not found"},
            status=404,
        )

    if not wants_activity_json(request):
        return web.Response(
            text=f"<html><body><p>{html.escape(post.content)}</p></body></html>",
            content_type="text/html",
        )

    return web.json_response(
        mapper.post_to_note(post),
        content_type=AP_CONTENT_TYPE,
    )


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "ok"})


# === Command line ===

async def setup_profile(config: KnifeConfig, args: argparse.Namespace) -> None:
    """Create or update the local profile."""
    session_maker = await init_db(config.database.url)
    profile = await ProfileStore(session_maker).save(
        Profile(
            finger=args.finger,
            display_name=args.display_name,
            bio=args.bio,
            avatar_url=args.avatar_url,
        )
    )
    logger.info(
        "Profile saved",
        handle=f"{profile.finger}@{config.federation.host}",
        actor=config.federation.actor_iri,
    )


async def init_key(config: KnifeConfig) -> None:
    """Create the local actor's signing key pair if it does not exist."""
    session_maker = await init_db(config.database.url)
    keypair = await KeyStore(session_maker).get_or_create(config.federation.actor_iri)
    logger.info("Key pair ready", key_id=keypair.key_id)


async def publish_post(config: KnifeConfig, args: argparse.Namespace) -> int:
    """Store a local post and deliver it to all followers."""
    server = KnifeServer(config)
    await server.setup()
    try:
        profile = await server.profile_store.get()
        if profile is None:
            logger.error("No profile set up; run the setup command first")
            return 1

        post = await server.post_store.create_local(
            Post(
                content=args.text,
                cw=args.cw,
                host=config.federation.host,
                author_name=profile.display_name,
                author_finger=f"{profile.finger}@{config.federation.host}",
                visibility=Visibility(args.visibility),
            ),
            config.federation.base_url,
        )
        print(json.dumps({"id": post.id, "uri": post.uri}))

        server.queue.start()
        await server.dispatcher.publish_create(post)
        await server.queue.drain()
        return 0
    finally:
        await server.cleanup()


async def delete_post(config: KnifeConfig, args: argparse.Namespace) -> int:
    """Delete a local post and deliver the Delete to all followers."""
    server = KnifeServer(config)
    await server.setup()
    try:
        post = await server.post_store.get(args.id)
        if post is None or not server.mapper.is_local(post):
            logger.error("No such local post", post_id=args.id)
            return 1

        await server.post_store.delete(post.id)

        server.queue.start()
        await server.dispatcher.publish_delete(post)
        await server.queue.drain()
        return 0
    finally:
        await server.cleanup()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knife-activitypub",
        description="Single-user ActivityPub server",
    )
    parser.add_argument("--config", help="YAML configuration file")

    commands = parser.add_subparsers(dest="command")

    commands.add_parser("serve", help="Run the HTTP server (default)")

    setup = commands.add_parser("setup", help="Create or update the local profile")
    setup.add_argument("--finger", required=True, help="Local handle, e.g. alice")
    setup.add_argument("--display-name", default="", help="Display name")
    setup.add_argument("--bio", default="", help="Profile summary")
    setup.add_argument("--avatar-url", default="", help="Avatar image URL")

    commands.add_parser("initkey", help="Create the actor signing key pair")

    post = commands.add_parser("post", help="Publish a note to followers")
    post.add_argument("text", help="Note content")
    post.add_argument(
        "--visibility",
        choices=[v.value for v in Visibility],
        default=Visibility.PUBLIC.value,
    )
    post.add_argument("--cw", default="", help="Content warning")

    delete = commands.add_parser("delete", help="Delete a local note")
    delete.add_argument("id", type=int, help="Note id")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Configure standard logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
    )

    config = KnifeConfig.from_yaml(args.config) if args.config else load_config()

    # Set log level from config
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)

    command = args.command or "serve"
    try:
        if command == "serve":
            asyncio.run(KnifeServer(config).run())
        elif command == "setup":
            asyncio.run(setup_profile(config, args))
        elif command == "initkey":
            asyncio.run(init_key(config))
        elif command == "post":
            sys.exit(asyncio.run(publish_post(config, args)))
        elif command == "delete":
            sys.exit(asyncio.run(delete_post(config, args)))
    except KnifeError as e:
        logger.error("Command failed", command=command, error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
