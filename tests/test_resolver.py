"""Tests for actor resolution and the SSRF guard."""

import asyncio
import ipaddress
import json
import socket
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from knife_activitypub.errors import FetchError, ParseError, ProtocolError, SecurityError
from knife_activitypub.resolver import MAX_REDIRECTS, ActorResolver, is_blocked_address, validate_iri

BOB = "https://remote.example/users/bob"


def mock_response(status: int = 200, text: str = "", location: str | None = None) -> MagicMock:
    """Build the async context manager one get() call yields."""
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)
    response.headers = {"Location": location} if location else {}

    request_ctx = MagicMock()
    request_ctx.__aenter__ = AsyncMock(return_value=response)
    request_ctx.__aexit__ = AsyncMock(return_value=False)
    return request_ctx


def mock_http_session(
    status: int = 200,
    text: str = "",
    exc: Exception | None = None,
    responses: list[MagicMock] | None = None,
) -> MagicMock:
    """Build a ClientSession stand-in whose get() yields the given responses."""
    session = MagicMock()
    session.closed = False
    if exc is not None:
        session.get = MagicMock(side_effect=exc)
    elif responses is not None:
        session.get = MagicMock(side_effect=responses)
    else:
        session.get = MagicMock(return_value=mock_response(status, text))
    return session


def public_dns(*addresses: str):
    return patch(
        "knife_activitypub.resolver.resolve_host_addresses",
        AsyncMock(return_value=list(addresses or ["93.184.216.34"])),
    )


def dns_table(table: dict[str, str]):
    """Resolve hosts from a table; IP literals resolve to themselves, anything else looks public."""
    async def lookup(hostname: str) -> list[str]:
        if hostname in table:
            return [table[hostname]]
        try:
            return [str(ipaddress.ip_address(hostname))]
        except ValueError:
            return ["93.184.216.34"]

    return patch("knife_activitypub.resolver.resolve_host_addresses", lookup)


class TestBlockedAddresses:
    """Tests for address classification."""

    @pytest.mark.parametrize(
        "address",
        [
            "127.0.0.1",
            "10.0.0.5",
            "172.16.3.4",
            "192.168.1.1",
            "169.254.169.254",
            "0.0.0.0",
            "224.0.0.1",
            "240.0.0.1",
            "::1",
            "fe80::1",
            "fc00::1",
            "::ffff:127.0.0.1",
        ],
    )
    def test_blocked(self, address):
        assert is_blocked_address(address)

    @pytest.mark.parametrize("address", ["93.184.216.34", "1.1.1.1", "2606:4700:4700::1111"])
    def test_public(self, address):
        assert not is_blocked_address(address)


class TestValidateIri:
    """Tests for validate_iri."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "iri",
        [
            "http://127.0.0.1/actor",
            "http://10.0.0.5/actor",
            "http://169.254.169.254/latest/meta-data",
            "http://[::1]:8080/actor",
        ],
    )
    async def test_non_public_rejected(self, iri):
        """Test literal non-public addresses are refused outside dev mode."""
        with pytest.raises(SecurityError):
            await validate_iri(iri)

    @pytest.mark.asyncio
    async def test_dev_mode_allows_local(self):
        await validate_iri("http://127.0.0.1/actor", dev_mode=True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("iri", ["ftp://remote.example/actor", "file:///etc/passwd", "remote.example/u"])
    async def test_bad_scheme_rejected(self, iri):
        with pytest.raises(SecurityError):
            await validate_iri(iri, dev_mode=True)

    @pytest.mark.asyncio
    async def test_public_address_accepted(self):
        with public_dns("93.184.216.34"):
            await validate_iri(BOB)

    @pytest.mark.asyncio
    async def test_any_private_address_rejects(self):
        """Test a host resolving to both public and private addresses is refused."""
        with public_dns("93.184.216.34", "10.1.2.3"):
            with pytest.raises(SecurityError):
                await validate_iri(BOB)

    @pytest.mark.asyncio
    async def test_dns_failure(self):
        failing = AsyncMock(side_effect=socket.gaierror("Name or service not known"))
        with patch("knife_activitypub.resolver.resolve_host_addresses", failing):
            with pytest.raises(FetchError):
                await validate_iri(BOB)


class TestActorResolver:
    """Tests for ActorResolver."""

    @pytest.mark.asyncio
    async def test_embedded_actor_needs_no_fetch(self, remote_actor_doc):
        http = mock_http_session()
        resolver = ActorResolver(http_session=http)

        actor = await resolver.resolve(remote_actor_doc)

        assert actor.id == BOB
        assert actor.inbox == f"{BOB}/inbox"
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_by_iri(self, remote_actor_doc):
        http = mock_http_session(text=json.dumps(remote_actor_doc))
        resolver = ActorResolver(http_session=http, fetch_timeout=3.0)

        with public_dns():
            actor, inbox = await resolver.resolve_inbox_of(BOB)

        assert actor.handle == "bob@remote.example"
        assert inbox == f"{BOB}/inbox"
        args, kwargs = http.get.call_args
        assert args[0] == BOB
        assert "application/activity+json" in kwargs["headers"]["Accept"]
        assert kwargs["timeout"].total == 3.0
        assert kwargs["allow_redirects"] is False

    @pytest.mark.asyncio
    async def test_id_only_reference_is_fetched(self, remote_actor_doc):
        http = mock_http_session(text=json.dumps(remote_actor_doc))
        resolver = ActorResolver(http_session=http, dev_mode=True)

        actor = await resolver.resolve({"id": BOB})

        assert actor.id == BOB
        http.get.assert_called_once()

    @pytest.mark.asyncio
    async def test_private_iri_never_fetched(self):
        http = mock_http_session()
        resolver = ActorResolver(http_session=http)

        with pytest.raises(SecurityError):
            await resolver.resolve("http://127.0.0.1/users/bob")
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        http = mock_http_session(status=410, text="Gone" * 100)
        resolver = ActorResolver(http_session=http, dev_mode=True)

        with pytest.raises(FetchError) as exc_info:
            await resolver.resolve(BOB)

        assert exc_info.value.status == 410
        assert len(exc_info.value.body) == 200

    @pytest.mark.asyncio
    async def test_transport_error(self):
        http = mock_http_session(exc=aiohttp.ClientConnectionError("refused"))
        resolver = ActorResolver(http_session=http, dev_mode=True)

        with pytest.raises(FetchError):
            await resolver.resolve(BOB)

    @pytest.mark.asyncio
    async def test_timeout(self):
        http = mock_http_session(exc=asyncio.TimeoutError())
        resolver = ActorResolver(http_session=http, dev_mode=True)

        with pytest.raises(FetchError):
            await resolver.resolve(BOB)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        http = mock_http_session(text="<html>not json</html>")
        resolver = ActorResolver(http_session=http, dev_mode=True)

        with pytest.raises(ParseError):
            await resolver.resolve(BOB)

    @pytest.mark.asyncio
    async def test_not_an_actor(self):
        http = mock_http_session(text=json.dumps({"id": BOB, "type": "Note"}))
        resolver = ActorResolver(http_session=http, dev_mode=True)

        with pytest.raises(ParseError):
            await resolver.resolve(BOB)

    @pytest.mark.asyncio
    async def test_missing_inbox(self):
        http = mock_http_session(text=json.dumps({"id": BOB, "type": "Person"}))
        resolver = ActorResolver(http_session=http, dev_mode=True)

        with pytest.raises(ProtocolError):
            await resolver.resolve_inbox_of(BOB)

    @pytest.mark.asyncio
    async def test_unusable_reference(self):
        resolver = ActorResolver(http_session=mock_http_session())

        with pytest.raises(ParseError):
            await resolver.resolve(42)

    @pytest.mark.asyncio
    async def test_close_leaves_shared_session_open(self):
        http = mock_http_session()
        http.close = AsyncMock()
        resolver = ActorResolver(http_session=http)

        await resolver.close()

        http.close.assert_not_called()


class TestRedirects:
    """Tests for redirects during actor fetches."""

    @pytest.mark.asyncio
    async def test_redirect_to_metadata_address_refused(self, remote_actor_doc):
        http = mock_http_session(responses=[
            mock_response(302, location="http://169.254.169.254/latest/meta-data"),
            mock_response(200, json.dumps(remote_actor_doc)),
        ])
        resolver = ActorResolver(http_session=http)

        with dns_table({}):
            with pytest.raises(SecurityError):
                await resolver.resolve(BOB)

        assert http.get.call_count == 1

    @pytest.mark.asyncio
    async def test_redirect_to_host_with_private_address_refused(self, remote_actor_doc):
        http = mock_http_session(responses=[
            mock_response(301, location="https://intranet.remote.example/actor"),
            mock_response(200, json.dumps(remote_actor_doc)),
        ])
        resolver = ActorResolver(http_session=http)

        with dns_table({"intranet.remote.example": "10.0.0.7"}):
            with pytest.raises(SecurityError):
                await resolver.resolve(BOB)

        assert http.get.call_count == 1

    @pytest.mark.asyncio
    async def test_public_redirect_followed(self, remote_actor_doc):
        """Test a relative Location is resolved against the current URL and fetched."""
        http = mock_http_session(responses=[
            mock_response(302, location="/users/bob.json"),
            mock_response(200, json.dumps(remote_actor_doc)),
        ])
        resolver = ActorResolver(http_session=http)

        with dns_table({}):
            actor = await resolver.resolve(BOB)

        assert actor.id == BOB
        urls = [call.args[0] for call in http.get.call_args_list]
        assert urls == [BOB, "https://remote.example/users/bob.json"]
        assert all(call.kwargs["allow_redirects"] is False for call in http.get.call_args_list)

    @pytest.mark.asyncio
    async def test_too_many_redirects(self):
        http = mock_http_session(responses=[
            mock_response(302, location=f"https://remote.example/hop/{n}")
            for n in range(MAX_REDIRECTS + 1)
        ])
        resolver = ActorResolver(http_session=http)

        with dns_table({}):
            with pytest.raises(FetchError):
                await resolver.resolve(BOB)

        assert http.get.call_count == MAX_REDIRECTS + 1

    @pytest.mark.asyncio
    async def test_redirect_without_location(self):
        http = mock_http_session(responses=[mock_response(302)])
        resolver = ActorResolver(http_session=http, dev_mode=True)

        with pytest.raises(FetchError) as exc_info:
            await resolver.resolve(BOB)

        assert exc_info.value.status == 302


class TestInboxValidation:
    """Tests for the inbox check in resolve_inbox_of."""

    @pytest.mark.asyncio
    async def test_embedded_actor_with_metadata_inbox_refused(self, remote_actor_doc):
        remote_actor_doc["inbox"] = "http://169.254.169.254/latest/meta-data"
        http = mock_http_session()
        resolver = ActorResolver(http_session=http)

        with pytest.raises(SecurityError):
            await resolver.resolve_inbox_of(remote_actor_doc)
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_inbox_with_bad_scheme_refused(self, remote_actor_doc):
        remote_actor_doc["inbox"] = "file:///etc/passwd"
        resolver = ActorResolver(http_session=mock_http_session(), dev_mode=True)

        with pytest.raises(SecurityError):
            await resolver.resolve_inbox_of(remote_actor_doc)

    @pytest.mark.asyncio
    async def test_dev_mode_allows_local_inbox(self, remote_actor_doc):
        remote_actor_doc["inbox"] = "http://127.0.0.1:8080/inbox"
        resolver = ActorResolver(http_session=mock_http_session(), dev_mode=True)

        actor, inbox = await resolver.resolve_inbox_of(remote_actor_doc)

        assert inbox == "http://127.0.0.1:8080/inbox"
