"""MCP prompt definitions for the journal."""

from __future__ import annotations

import json
from typing import Any, Optional

from .availability import Audience, Operation
from .errors import NotFoundError
from .host import is_level_enabled
from .session import JournalSession


def make_prompts() -> dict[str, dict]:
    """Create MCP prompt definitions."""
    return {
        "suggest_tags": {
            "name": "suggest_tags",
            "description": "Suggest tags for a journal entry",
            "audience": Audience.AUTHENTICATED,
            "arguments": [
                {
                    "name": "entryId",
                    "description": "The ID of the journal entry to suggest tags for",
                    "required": True,
                },
            ],
        },
        "summarize_journal_entries": {
            "name": "summarize_journal_entries",
            "description": "Summarize your past journal entries, optionally filtered by tags or date range.",
            "audience": Audience.AUTHENTICATED,
            "arguments": [
                {"name": "tagIds", "description": "Optional comma-separated tag IDs to filter by", "required": False},
                {"name": "from", "description": "Optional start date (YYYY-MM-DD)", "required": False},
                {"name": "to", "description": "Optional end date (YYYY-MM-DD)", "required": False},
            ],
        },
    }


def make_operations() -> list[Operation]:
    return [Operation(name, p["audience"], kind="prompt") for name, p in make_prompts().items()]


def _text(role: str, text: str) -> dict[str, Any]:
    return {"role": role, "content": {"type": "text", "text": text}}


def _resource(uri: str, payload: Any) -> dict[str, Any]:
    return {
        "role": "user",
        "content": {
            "type": "resource",
            "resource": {"uri": uri, "mimeType": "application/json", "text": json.dumps(payload)},
        },
    }


async def get_prompt(session: JournalSession, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Render a prompt.

    Returns:
        Dict with ``description`` and a list of ``messages``

    Raises:
        AuthError: The session is not authenticated
        NotFoundError: Unknown prompt or entry
        ValueError: Malformed arguments
    """
    prompts = make_prompts()
    if name not in prompts or not session.gate.is_enabled(name):
        raise NotFoundError(f"Unknown prompt: {name}")
    session.require_user()

    if name == "suggest_tags":
        entry_id_arg = arguments.get("entryId")
        if not entry_id_arg:
            raise ValueError("entryId is required")
        try:
            entry_id = int(entry_id_arg)
        except ValueError:
            raise ValueError("entryId must be a valid number")
        messages = suggest_tags_messages(session, entry_id)

    else:
        tag_ids = None
        if arguments.get("tagIds"):
            try:
                tag_ids = [int(part) for part in arguments["tagIds"].split(",") if part.strip()]
            except ValueError:
                raise ValueError("tagIds must be a comma-separated list of numbers")
        messages = await summarize_entries_messages(
            session, tag_ids, arguments.get("from"), arguments.get("to")
        )

    return {"description": prompts[name]["description"], "messages": messages}


def suggest_tags_messages(session: JournalSession, entry_id: int) -> list[dict[str, Any]]:
    """Messages asking the model to suggest tags for one entry."""
    user = session.require_user()
    entry = session.store.get_entry(user.id, entry_id)
    if entry is None:
        raise NotFoundError(f'entry with the ID "{entry_id}" not found')
    tags = session.store.get_tags(user.id)

    return [
        _text("user", (
            f'Below is my EpicMe journal entry with ID "{entry_id}" and the tags I have available.\n\n'
            "Please suggest some tags to add to it. Feel free to suggest new tags I don't have yet.\n\n"
            'For each tag I approve, if it does not yet exist, create it with the "create_tag" tool. '
            'Then add approved tags to the entry with the "add_tag_to_entry" tool.'
        )),
        _resource("epicme://tags", [t.to_dict() for t in tags]),
        _resource(f"epicme://entries/{entry_id}", entry.to_dict()),
    ]


async def summarize_entries_messages(
    session: JournalSession,
    tag_ids: Optional[list[int]] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Messages asking the model to summarize the matching entries."""
    user = session.require_user()
    entries = session.store.get_entries(user.id, tag_ids=tag_ids, date_from=date_from, date_to=date_to)
    if not entries:
        return [_text("assistant", "You have no journal entries yet. Would you like to create one?")]

    if is_level_enabled(session.state.logging_level, "info"):
        await session.peer.send_log("info", f"Summarizing {len(entries)} journal entries")

    lines = [
        f'- "{e.title}" (ID: {e.id})' + (f" - {e.tag_count} tags" if e.tag_count else "")
        for e in entries
    ]
    return [
        _text("user", "Here are my journal entries:\n\n" + "\n".join(lines) + "\n\nCan you please summarize them for me?"),
    ]
