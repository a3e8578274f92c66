"""Data models for users, grants, validation tokens, entries, and tags."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format datetime as ISO 8601 with timezone."""
    return dt.isoformat(timespec='milliseconds')


def parse_timestamp(s: str) -> datetime:
    """Parse ISO 8601 timestamp string."""
    return datetime.fromisoformat(s)


@dataclass
class User:
    """A journal owner, identified by email."""
    id: int
    email: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class Grant:
    """An OAuth authorization grant, possibly not yet bound to a user.

    ``grant_user_id`` is the placeholder identity handed to the OAuth
    provider when the grant was issued; ``owner_user_id`` is the real
    user once the grant has been claimed.
    """
    id: str
    grant_user_id: str
    created_at: datetime
    owner_user_id: Optional[int] = None

    @property
    def is_claimed(self) -> bool:
        return self.owner_user_id is not None


@dataclass
class ValidationToken:
    """A single-use emailed code that claims a grant."""
    email: str
    grant_id: str
    code: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class Tag:
    """A user-defined tag."""
    id: int
    user_id: int
    name: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    def to_ref(self) -> dict[str, Any]:
        """Short form used in entry listings and sampling context."""
        return {"id": self.id, "name": self.name}


@dataclass
class Entry:
    """A journal entry with its applied tags."""
    id: int
    user_id: int
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
    mood: Optional[str] = None
    location: Optional[str] = None
    weather: Optional[str] = None
    is_private: bool = True
    is_favorite: bool = False
    tags: list[dict[str, Any]] = field(default_factory=list)  # [{id, name}]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "mood": self.mood,
            "location": self.location,
            "weather": self.weather,
            "is_private": self.is_private,
            "is_favorite": self.is_favorite,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "tags": list(self.tags),
        }


@dataclass
class EntrySummary:
    """Listing row for an entry."""
    id: int
    title: str
    tag_count: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "tag_count": self.tag_count,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class EntryTag:
    """Link between an entry and a tag."""
    id: int
    entry_id: int
    tag_id: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "tag_id": self.tag_id,
            "created_at": format_timestamp(self.created_at),
        }


def new_tag_key(name: str) -> str:
    """Form field key for a proposed tag. Distinct names never share a key."""
    return "new_" + hashlib.sha1(name.encode("utf-8")).hexdigest()[:12]


# Tag suggestions are validated from model output, so they are pydantic
# models rather than dataclasses.

class ExistingTagSuggestion(BaseModel):
    """Suggestion to apply a tag that already exists."""
    model_config = ConfigDict(frozen=True)

    id: StrictInt
    confidence: float = Field(ge=0.0, le=1.0, strict=True)
    reasoning: str

    @property
    def key(self) -> str:
        return f"tag_{self.id}"


class NewTagSuggestion(BaseModel):
    """Suggestion to create a new tag and apply it."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0, strict=True)
    reasoning: str

    @property
    def key(self) -> str:
        return new_tag_key(self.name)


TagSuggestion = Union[ExistingTagSuggestion, NewTagSuggestion]
