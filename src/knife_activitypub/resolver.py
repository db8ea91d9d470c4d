"""Remote actor resolution with an SSRF guard.

Activities reference actors either by IRI or by embedding the actor
document. Embedded documents are adopted as-is; IRIs are validated and
fetched. Outside dev mode, an IRI whose host resolves to a loopback,
private, link-local, unspecified, reserved or multicast address is refused
before any request is made.
"""

import asyncio
import ipaddress
import json
import socket
from typing import Any
from urllib.parse import urljoin, urlparse

import aiohttp
import structlog

from .activitypub_types import AP_ACCEPT_HEADER, Actor, is_actor_document, parse_actor
from .errors import FetchError, ParseError, ProtocolError, SecurityError

logger = structlog.get_logger()

ALLOWED_SCHEMES = ("http", "https")

# Each hop is validated again before it is requested
MAX_REDIRECTS = 3


async def resolve_host_addresses(hostname: str) -> list[str]:
    """Resolve a hostname to the IP addresses a connection could reach."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


def is_blocked_address(address: str) -> bool:
    """Whether an IP address points into a network we must not fetch from."""
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
    )


async def validate_iri(iri: str, dev_mode: bool = False) -> None:
    """Check that an IRI is safe to fetch.

    Args:
        iri: Target IRI
        dev_mode: Skip the address checks (scheme is still enforced)

    Raises:
        SecurityError: If the scheme or any resolved address is disallowed
        FetchError: If the host cannot be resolved
    """
    parsed = urlparse(iri)
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise SecurityError(f"Unsupported scheme in {iri!r}")
    hostname = parsed.hostname
    if not hostname:
        raise SecurityError(f"No host in {iri!r}")

    if dev_mode:
        return

    try:
        addresses = await resolve_host_addresses(hostname)
    except (socket.gaierror, UnicodeError) as e:
        raise FetchError(f"Cannot resolve {hostname}: {e}") from e
    if not addresses:
        raise FetchError(f"Cannot resolve {hostname}: no addresses")

    for address in addresses:
        if is_blocked_address(address):
            logger.warning("Refusing fetch to non-public address", iri=iri, address=address)
            raise SecurityError(f"{hostname} resolves to non-public address {address}")


class ActorResolver:
    """Turns actor references found in activities into Actor records."""

    def __init__(
        self,
        http_session: aiohttp.ClientSession | None = None,
        dev_mode: bool = False,
        fetch_timeout: float = 10.0,
        user_agent: str = "knife-activitypub",
    ):
        """Initialize resolver.

        Args:
            http_session: Shared client session (created lazily if omitted)
            dev_mode: Allow fetches to local and private addresses
            fetch_timeout: Seconds allowed per actor fetch
            user_agent: User-Agent header for fetches
        """
        self._http_session = http_session
        self._owns_session = http_session is None
        self.dev_mode = dev_mode
        self.fetch_timeout = fetch_timeout
        self.user_agent = user_agent

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True
        return self._http_session

    async def close(self) -> None:
        """Close HTTP session if this resolver created it."""
        if self._owns_session and self._http_session and not self._http_session.closed:
            await self._http_session.close()

    async def resolve(self, ref: Any) -> Actor:
        """Resolve an actor reference.

        Args:
            ref: Actor IRI, embedded actor document, or {"id": IRI}

        Returns:
            Parsed actor

        Raises:
            SecurityError: If the IRI fails validation
            FetchError: If the actor cannot be fetched
            ParseError: If the reference or fetched document is not an actor
        """
        if isinstance(ref, dict) and is_actor_document(ref):
            actor = parse_actor(ref)
            if actor:
                return actor

        if isinstance(ref, dict):
            ref = ref.get("id")
        if not isinstance(ref, str) or not ref:
            raise ParseError("Actor reference is neither an IRI nor an actor document")

        data = await self._fetch(ref)
        actor = parse_actor(data)
        if actor is None:
            raise ParseError(f"Document at {ref} is not an actor")
        return actor

    async def resolve_inbox_of(self, ref: Any) -> tuple[Actor, str]:
        """Resolve an actor and return it with its inbox IRI.

        The inbox is checked like any fetch target, since deliveries will
        POST to it.

        Raises:
            ProtocolError: If the actor has no inbox
            SecurityError: If the inbox points at a non-public address
        """
        actor = await self.resolve(ref)
        if not actor.inbox:
            raise ProtocolError(f"Actor {actor.id} has no inbox")
        await validate_iri(actor.inbox, dev_mode=self.dev_mode)
        return actor, actor.inbox

    async def _fetch(self, iri: str) -> Any:
        http_session = await self._get_http_session()

        url = iri
        for _ in range(MAX_REDIRECTS + 1):
            await validate_iri(url, dev_mode=self.dev_mode)
            status, location, text = await self._get(http_session, url)
            if not 300 <= status < 400:
                break
            if not location:
                raise FetchError(f"Redirect without Location from {url}", status=status)
            url = urljoin(url, location)
            logger.debug("Following actor redirect", iri=iri, location=url)
        else:
            raise FetchError(f"Too many redirects fetching actor {iri}")

        if not 200 <= status < 300:
            raise FetchError(
                f"Failed to fetch actor {iri}: HTTP {status}",
                status=status,
                body=text[:200],
            )

        try:
            data = json.loads(text)
        except ValueError as e:
            raise ParseError(f"Actor document at {iri} is not JSON") from e

        logger.debug("Fetched actor", iri=iri)
        return data

    async def _get(
        self, http_session: aiohttp.ClientSession, url: str
    ) -> tuple[int, str | None, str]:
        """One GET without following redirects: (status, Location, body)."""
        try:
            async with http_session.get(
                url,
                headers={
                    "Accept": AP_ACCEPT_HEADER,
                    "User-Agent": self.user_agent,
                },
                timeout=aiohttp.ClientTimeout(total=self.fetch_timeout),
                allow_redirects=False,
            ) as response:
                text = await response.text()
                return response.status, response.headers.get("Location"), text
        except asyncio.TimeoutError as e:
            raise FetchError(f"Timed out fetching actor {url}") from e
        except aiohttp.ClientError as e:
            raise FetchError(f"Failed to fetch actor {url}: {e}") from e
