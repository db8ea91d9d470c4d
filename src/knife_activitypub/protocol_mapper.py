"""Protocol mapper between knife posts and ActivityPub documents.

Visibility mapping:
| Visibility | to | cc |
|------------|----|----|
| PUBLIC | [as:Public] | [] |
| UNLISTED | [] | [as:Public] |
| FOLLOWERS | [] | [{base}/followers] |
| PRIVATE | [{base}/profile] | [] |

The reverse direction only recognises the public collection; followers-only
addressing cannot be told apart from direct addressing, so it maps to
PRIVATE.
"""

import html
import re
import time
from datetime import datetime, timezone
from typing import Any

import structlog

from .activitypub_types import (
    AS_PUBLIC,
    AS_PUBLIC_ALIASES,
    Activity,
    ActivityType,
    Actor,
    JsonDict,
    ObjectType,
    as_list,
    format_published,
)
from .models import Post, Visibility

logger = structlog.get_logger()

_SCRIPT_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLOCK_BREAK = re.compile(r"<br\s*/?>|</?(p|div)\b[^>]*>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def to_addressing(visibility: Visibility, base_url: str) -> tuple[list[str], list[str]]:
    """Translate a post visibility into ActivityPub (to, cc) lists."""
    base_url = base_url.rstrip("/")
    if visibility == Visibility.PUBLIC:
        return [AS_PUBLIC], []
    if visibility == Visibility.FOLLOWERS:
        return [], [f"{base_url}/followers"]
    if visibility == Visibility.UNLISTED:
        return [], [AS_PUBLIC]
    # PRIVATE, and anything unknown
    return [f"{base_url}/profile"], []


def from_addressing(to: Any, cc: Any) -> Visibility:
    """Infer a post visibility from ActivityPub (to, cc) fields."""
    if any(iri in AS_PUBLIC_ALIASES for iri in as_list(to)):
        return Visibility.PUBLIC
    if any(iri in AS_PUBLIC_ALIASES for iri in as_list(cc)):
        return Visibility.UNLISTED
    return Visibility.PRIVATE


def strip_html(content: str) -> str:
    """Reduce HTML content to plain text.

    Script and style bodies are dropped, paragraph/div/br boundaries become
    spaces, entities are unescaped and runs of whitespace collapsed.
    """
    if "<" not in content:
        return content
    text = _SCRIPT_STYLE.sub("", content)
    text = _BLOCK_BREAK.sub(" ", text)
    text = _TAG.sub("", text)
    text = html.unescape(text)
    return _WHITESPACE.sub(" ", text).strip()


class ProtocolMapper:
    """Builds outgoing documents and maps incoming Notes to posts."""

    def __init__(self, base_url: str):
        """Initialize mapper.

        Args:
            base_url: Canonical site base URL (e.g., https://knife.example)
        """
        self.base_url = base_url.rstrip("/")

    @property
    def actor_iri(self) -> str:
        return f"{self.base_url}/profile"

    def note_iri(self, post: Post) -> str:
        """Canonical IRI of a local post; federated posts keep their own URI."""
        if post.id is not None and self.is_local(post):
            return f"{self.base_url}/notes/{post.id}"
        return post.uri or ""

    def is_local(self, post: Post) -> bool:
        return not post.uri or post.uri.startswith(f"{self.base_url}/")

    # === knife -> ActivityPub ===

    def post_to_note(self, post: Post) -> JsonDict:
        """Build the ActivityPub Note document for a post."""
        to, cc = to_addressing(post.visibility, self.base_url)

        note: JsonDict = {
            "@context": "https://www.w3.org/ns/activitystreams",
            "id": self.note_iri(post),
            "type": ObjectType.NOTE.value,
            "published": format_published(post.created_at),
            "attributedTo": self.actor_iri,
            "content": post.content,
            "to": to,
            "cc": cc,
        }

        if post.cw:
            note["sensitive"] = True
            note["summary"] = post.cw

        return note

    def create_activity(self, post: Post) -> Activity:
        """Wrap a post's Note in a Create from the local actor."""
        note = self.post_to_note(post)
        note.pop("@context", None)
        return Activity(
            id=f"{note['id']}/activity",
            type=ActivityType.CREATE,
            actor=self.actor_iri,
            object=note,
            to=note["to"],
            cc=note["cc"],
            published=note["published"],
        )

    def delete_activity(self, post: Post) -> Activity:
        """Minimal Delete referencing the post URI."""
        uri = self.note_iri(post)
        return Activity(
            id=f"{uri}#delete-{int(time.time())}",
            type=ActivityType.DELETE,
            actor=self.actor_iri,
            object=uri,
        )

    def accept_activity(self, follow: JsonDict, inbox: str) -> Activity:
        """Accept answering a Follow, addressed to the follower's inbox."""
        return Activity(
            id=f"{self.base_url}/activities/accept-{time.time_ns()}",
            type=ActivityType.ACCEPT,
            actor=self.actor_iri,
            object=follow,
            to=[inbox],
        )

    # === ActivityPub -> knife ===

    def note_to_post(self, note: JsonDict, actor: Actor) -> Post:
        """Map an embedded Note to a federated post keyed by the Note's id."""
        content = note.get("content") or ""
        if isinstance(content, list):
            content = content[0] if content else ""
        summary = note.get("summary")

        return Post(
            uri=note["id"],
            cw=summary if isinstance(summary, str) and note.get("sensitive") else "",
            content=strip_html(content if isinstance(content, str) else ""),
            author_name=actor.name,
            author_finger=actor.handle,
            host=actor.host,
            visibility=from_addressing(note.get("to"), note.get("cc")),
            created_at=_parse_published(note.get("published")),
        )


def _parse_published(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable published timestamp", value=value)
    return datetime.now(timezone.utc)
