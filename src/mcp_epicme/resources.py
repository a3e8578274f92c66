"""MCP resource definitions for the journal.

Static resources:
    epicme://credits         Who created the project (text)
    epicme://users/current   The signed-in user
    epicme://tags            All of the user's tags

Templates, listed once per record and completed by id:
    epicme://entries/{id}    A journal entry
    epicme://tags/{id}       A tag
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from .availability import Audience, Operation
from .errors import NotFoundError
from .session import JournalSession

JSON_MIME = "application/json"

CREDITS = "EpicMe was created by Kent C. Dodds"


def make_resources() -> dict[str, dict]:
    """Create static MCP resource definitions, keyed by name."""
    return {
        "credits": {
            "name": "credits",
            "uri": "epicme://credits",
            "description": "Who created the EpicMe project?",
            "mimeType": "text/plain",
            "audience": Audience.AUTHENTICATED,
        },
        "user": {
            "name": "user",
            "uri": "epicme://users/current",
            "description": "The currently logged in user",
            "mimeType": JSON_MIME,
            "audience": Audience.AUTHENTICATED,
        },
        "tags": {
            "name": "tags",
            "uri": "epicme://tags",
            "description": "All tags",
            "mimeType": JSON_MIME,
            "audience": Audience.AUTHENTICATED,
        },
    }


def make_resource_templates() -> dict[str, dict]:
    """Create MCP resource template definitions, keyed by name."""
    return {
        "entry": {
            "name": "entry",
            "uriTemplate": "epicme://entries/{id}",
            "description": "A journal entry",
            "mimeType": JSON_MIME,
            "audience": Audience.AUTHENTICATED,
        },
        "tag": {
            "name": "tag",
            "uriTemplate": "epicme://tags/{id}",
            "description": "A journal tag",
            "mimeType": JSON_MIME,
            "audience": Audience.AUTHENTICATED,
        },
    }


def make_operations() -> list[Operation]:
    defs = {**make_resources(), **make_resource_templates()}
    return [Operation(name, d["audience"], kind="resource") for name, d in defs.items()]


def _template_pattern(uri_template: str) -> re.Pattern:
    return re.compile("^" + re.escape(uri_template).replace(r"\{id\}", r"(?P<id>\d+)") + "$")


def match_uri(uri: str) -> tuple[str, Optional[int]]:
    """Resolve a resource URI to ``(name, id)``. Static resources have no id.

    Raises:
        NotFoundError: The URI names no resource
    """
    for name, resource in make_resources().items():
        if resource["uri"] == uri:
            return name, None
    for name, template in make_resource_templates().items():
        match = _template_pattern(template["uriTemplate"]).match(uri)
        if match:
            return name, int(match.group("id"))
    raise NotFoundError(f"Unknown resource: {uri}")


def list_resources(session: JournalSession) -> list[dict[str, Any]]:
    """Enabled static resources, then one resource per entry and per tag.

    Records are only listed once the grant has been claimed.
    """
    enabled = set(session.gate.enabled_of_kind("resource"))
    listed = [
        {k: r[k] for k in ("name", "uri", "description", "mimeType")}
        for name, r in make_resources().items()
        if name in enabled
    ]

    user = session.bridge.current_user(session.grant_id)
    if user is None:
        return listed
    if "entry" in enabled:
        for entry in session.store.get_entries(user.id):
            listed.append({"name": entry.title, "uri": f"epicme://entries/{entry.id}", "mimeType": JSON_MIME})
    if "tag" in enabled:
        for tag in session.store.get_tags(user.id):
            listed.append({"name": tag.name, "uri": f"epicme://tags/{tag.id}", "mimeType": JSON_MIME})
    return listed


def list_resource_templates(session: JournalSession) -> list[dict[str, Any]]:
    enabled = set(session.gate.enabled_of_kind("resource"))
    return [
        {k: t[k] for k in ("name", "uriTemplate", "description", "mimeType")}
        for name, t in make_resource_templates().items()
        if name in enabled
    ]


def read_resource(session: JournalSession, uri: str) -> tuple[str, str]:
    """Read a resource.

    Returns:
        Tuple of ``(text, mime_type)``

    Raises:
        AuthError: The session is not authenticated
        NotFoundError: Unknown URI, or no such entry or tag
    """
    name, record_id = match_uri(uri)
    if not session.gate.is_enabled(name):
        raise NotFoundError(f"Unknown resource: {uri}")

    if name == "credits":
        return CREDITS, "text/plain"

    user = session.require_user()
    store = session.store

    if name == "user":
        payload: Any = user.to_dict()
    elif name == "tags":
        payload = [t.to_dict() for t in store.get_tags(user.id)]
    elif name == "entry":
        entry = store.get_entry(user.id, record_id)
        if entry is None:
            raise NotFoundError(f'Entry with ID "{record_id}" not found')
        payload = entry.to_dict()
    else:
        tag = store.get_tag(user.id, record_id)
        if tag is None:
            raise NotFoundError(f'Tag with ID "{record_id}" not found')
        payload = tag.to_dict()

    return json.dumps(payload), JSON_MIME


def complete_id(session: JournalSession, uri_template: str, value: str) -> list[str]:
    """Ids of the user's records for a template whose id contains ``value``."""
    templates = {t["uriTemplate"]: name for name, t in make_resource_templates().items()}
    name = templates.get(uri_template)
    if name is None or not session.gate.is_enabled(name):
        return []

    user = session.require_user()
    if name == "entry":
        ids = [str(e.id) for e in session.store.get_entries(user.id)]
    else:
        ids = [str(t.id) for t in session.store.get_tags(user.id)]
    return [i for i in ids if value in i]
