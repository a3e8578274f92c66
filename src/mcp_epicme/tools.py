"""MCP tool definitions wrapping a journal session."""

from __future__ import annotations

import logging
from typing import Any

from .availability import Audience, Operation
from .errors import (
    DuplicateTagError,
    EmailDispatchFailure,
    EpicMeError,
    GrantNotClaimed,
    GrantNotFound,
    InvalidEmail,
    InvalidToken,
    NotFoundError,
    TokenNotFound,
    Unauthenticated,
)
from .prompts import suggest_tags_messages, summarize_entries_messages
from .session import JournalSession

logger = logging.getLogger(__name__)

AUTHENTICATE_SUGGESTION = (
    'Ask the user for their email address and invoke the "authenticate" tool, '
    'then submit the emailed code with the "validate_token" tool.'
)

ENTRY_PROPERTIES = {
    "title": {"type": "string", "description": "The title of the entry"},
    "content": {"type": "string", "description": "The content of the entry"},
    "mood": {"type": "string", "description": "The mood of the entry (e.g. 'happy', 'sad')"},
    "location": {"type": "string", "description": "Where the entry was written"},
    "weather": {"type": "string", "description": "The weather when the entry was written"},
    "is_private": {"type": "boolean", "description": "Whether the entry is private (default true)"},
    "is_favorite": {"type": "boolean", "description": "Whether the entry is a favorite (default false)"},
}

ID_SCHEMA = {
    "type": "object",
    "properties": {"id": {"type": "integer", "description": "The ID of the record"}},
    "required": ["id"],
}


def make_tools() -> dict[str, dict]:
    """Create MCP tool definitions.

    Returns:
        Dict mapping tool names to their definitions. Each definition carries
        an ``audience`` used to build the availability catalog.
    """

    tools = {}

    # ========== session / auth ==========
    tools["get_logging_level"] = {
        "name": "get_logging_level",
        "description": "Get the current logging level",
        "audience": Audience.ALWAYS,
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["authenticate"] = {
        "name": "authenticate",
        "description": (
            "Authenticate to your account or create a new account. Ask for the user's "
            "email address before authenticating. Only do this when explicitly told to do so."
        ),
        "audience": Audience.UNAUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "email": {
                    "type": "string",
                    "format": "email",
                    "description": (
                        "The user's email address for their account. Ask them explicitly "
                        "for their email address and don't just guess."
                    ),
                },
            },
            "required": ["email"],
        },
    }

    tools["validate_token"] = {
        "name": "validate_token",
        "description": "Validate a token which was emailed",
        "audience": Audience.UNAUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "validationToken": {
                    "type": "string",
                    "description": "The validation token the user received in their email from the authenticate tool",
                },
            },
            "required": ["validationToken"],
        },
    }

    tools["whoami"] = {
        "name": "whoami",
        "description": "Get information about the currently logged in user",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["logout"] = {
        "name": "logout",
        "description": "Remove authentication information",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {"type": "object", "properties": {}},
    }

    # ========== entries ==========
    tools["create_entry"] = {
        "name": "create_entry",
        "description": "Create a new journal entry. Relevant tags may be suggested and applied afterwards.",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                **ENTRY_PROPERTIES,
                "tags": {
                    "type": "array",
                    "items": {"type": "integer"},
                    "description": "IDs of tags to apply to the entry",
                },
            },
            "required": ["title", "content"],
        },
    }

    tools["get_entry"] = {
        "name": "get_entry",
        "description": "Get a journal entry by ID",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": ID_SCHEMA,
    }

    tools["list_entries"] = {
        "name": "list_entries",
        "description": "List all journal entries",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "tag_ids": {
                    "type": "array",
                    "items": {"type": "integer"},
                    "description": "Optional tag IDs to filter entries by",
                },
                "date_from": {"type": "string", "description": "Start date (YYYY-MM-DD)"},
                "date_to": {"type": "string", "description": "End date (YYYY-MM-DD)"},
            },
        },
    }

    tools["update_entry"] = {
        "name": "update_entry",
        "description": (
            "Update a journal entry. Fields that are not provided will not be updated."
        ),
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "integer", "description": "The ID of the entry"},
                **ENTRY_PROPERTIES,
            },
            "required": ["id"],
        },
    }

    tools["delete_entry"] = {
        "name": "delete_entry",
        "description": "Delete a journal entry",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": ID_SCHEMA,
    }

    # ========== tags ==========
    tools["create_tag"] = {
        "name": "create_tag",
        "description": "Create a new tag",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "The name of the tag"},
                "description": {"type": "string", "description": "The description of the tag"},
            },
            "required": ["name"],
        },
    }

    tools["get_tag"] = {
        "name": "get_tag",
        "description": "Get a tag by ID",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": ID_SCHEMA,
    }

    tools["list_tags"] = {
        "name": "list_tags",
        "description": "List all tags",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["update_tag"] = {
        "name": "update_tag",
        "description": "Update a tag",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "integer", "description": "The ID of the tag"},
                "name": {"type": "string", "description": "The name of the tag"},
                "description": {"type": "string", "description": "The description of the tag"},
            },
            "required": ["id"],
        },
    }

    tools["delete_tag"] = {
        "name": "delete_tag",
        "description": "Delete a tag",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": ID_SCHEMA,
    }

    tools["add_tag_to_entry"] = {
        "name": "add_tag_to_entry",
        "description": "Add a tag to an entry",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "entry_id": {"type": "integer", "description": "The ID of the entry"},
                "tag_id": {"type": "integer", "description": "The ID of the tag"},
            },
            "required": ["entry_id", "tag_id"],
        },
    }

    # ========== prompt instructions ==========
    tools["get_tag_suggestions_instructions"] = {
        "name": "get_tag_suggestions_instructions",
        "description": "Get instructions on how to suggest tags for a journal entry",
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "entryId": {
                    "type": "integer",
                    "description": "The ID of the journal entry to get tag suggestions for",
                },
            },
            "required": ["entryId"],
        },
    }

    tools["get_journal_insights_instructions"] = {
        "name": "get_journal_insights_instructions",
        "description": (
            "Get instructions for how to summarize journal entries, "
            "optionally filtered by tags or date range"
        ),
        "audience": Audience.AUTHENTICATED,
        "inputSchema": {
            "type": "object",
            "properties": {
                "tagIds": {
                    "type": "array",
                    "items": {"type": "integer"},
                    "description": "Optional: filter entries by specific tag IDs",
                },
                "from": {"type": "string", "description": "Optional: start date in YYYY-MM-DD format"},
                "to": {"type": "string", "description": "Optional: end date in YYYY-MM-DD format"},
            },
        },
    }

    return tools


def make_operations() -> list[Operation]:
    """Availability catalog entries for every tool."""
    return [Operation(name, tool["audience"], kind="tool") for name, tool in make_tools().items()]


async def confirm_action(session: JournalSession, message: str) -> bool:
    """Ask the user to confirm. Clients without elicitation confirm implicitly."""
    if not session.peer.capabilities().elicitation:
        return True
    response = await session.peer.elicit(message, {
        "type": "object",
        "properties": {
            "confirmed": {"type": "boolean", "description": "Whether to confirm the action"},
        },
    })
    return response.accepted and (response.content or {}).get("confirmed") is True


def _entry_fields(arguments: dict[str, Any]) -> dict[str, Any]:
    return {k: arguments[k] for k in ENTRY_PROPERTIES if k in arguments}


async def execute_tool(session: JournalSession, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Execute a tool and return result."""

    store = session.store

    if name in session.gate.catalog_names() and not session.gate.is_enabled(name):
        return {
            "success": False,
            "error": f"Tool {name} is not available right now",
            "error_type": "unavailable",
        }

    try:
        if name == "get_logging_level":
            return {"success": True, "logging_level": session.state.logging_level}

        elif name == "authenticate":
            email = arguments["email"].strip()
            await session.authenticate(email)
            return {
                "success": True,
                "message": (
                    f"The user has been sent an email to {email} with a validation token. "
                    "Please have the user submit that token using the validate_token tool."
                ),
            }

        elif name == "validate_token":
            user = await session.validate_token(str(arguments["validationToken"]))
            return {
                "success": True,
                "user": user.to_dict(),
                "message": (
                    f'The user\'s token has been validated as the owner of the account '
                    f'"{user.email}" (ID: {user.id}). The user can now execute authenticated tools.'
                ),
            }

        elif name == "whoami":
            user = session.require_user()
            return {"success": True, "user": user.to_dict()}

        elif name == "logout":
            await session.logout()
            return {"success": True, "message": "Logout successful"}

        elif name == "create_entry":
            user = session.require_user()
            entry = store.create_entry(user.id, _entry_fields(arguments), arguments.get("tags"))
            session.schedule_tag_suggestions(user.id, entry.id)
            return {
                "success": True,
                "entry": entry.to_dict(),
                "message": f'Entry "{entry.title}" created successfully with ID "{entry.id}"',
            }

        elif name == "get_entry":
            user = session.require_user()
            entry = store.get_entry(user.id, arguments["id"])
            if entry is None:
                raise NotFoundError(f'Entry with ID "{arguments["id"]}" not found')
            return {"success": True, "entry": entry.to_dict()}

        elif name == "list_entries":
            user = session.require_user()
            entries = store.get_entries(
                user.id,
                tag_ids=arguments.get("tag_ids"),
                date_from=arguments.get("date_from"),
                date_to=arguments.get("date_to"),
            )
            return {
                "success": True,
                "count": len(entries),
                "entries": [e.to_dict() for e in entries],
            }

        elif name == "update_entry":
            user = session.require_user()
            entry = store.update_entry(user.id, arguments["id"], _entry_fields(arguments))
            return {
                "success": True,
                "entry": entry.to_dict(),
                "message": f'Entry "{entry.title}" (ID: {entry.id}) updated successfully',
            }

        elif name == "delete_entry":
            user = session.require_user()
            entry = store.get_entry(user.id, arguments["id"])
            if entry is None:
                raise NotFoundError(f'Entry with ID "{arguments["id"]}" not found')
            if not await confirm_action(session, "Are you sure you want to delete this entry?"):
                return {"success": False, "message": "Entry deletion cancelled"}
            store.delete_entry(user.id, entry.id)
            return {
                "success": True,
                "entry": entry.to_dict(),
                "message": f'Entry "{entry.title}" (ID: {entry.id}) deleted successfully',
            }

        elif name == "create_tag":
            user = session.require_user()
            tag = store.create_tag(user.id, arguments["name"], arguments.get("description"))
            return {
                "success": True,
                "tag": tag.to_dict(),
                "message": f'Tag "{tag.name}" created successfully with ID "{tag.id}"',
            }

        elif name == "get_tag":
            user = session.require_user()
            tag = store.get_tag(user.id, arguments["id"])
            if tag is None:
                raise NotFoundError(f'Tag ID "{arguments["id"]}" not found')
            return {"success": True, "tag": tag.to_dict()}

        elif name == "list_tags":
            user = session.require_user()
            tags = store.get_tags(user.id)
            return {"success": True, "count": len(tags), "tags": [t.to_dict() for t in tags]}

        elif name == "update_tag":
            user = session.require_user()
            updates = {k: arguments[k] for k in ("name", "description") if k in arguments}
            tag = store.update_tag(user.id, arguments["id"], updates)
            return {
                "success": True,
                "tag": tag.to_dict(),
                "message": f'Tag "{tag.name}" (ID: {tag.id}) updated successfully',
            }

        elif name == "delete_tag":
            user = session.require_user()
            tag = store.get_tag(user.id, arguments["id"])
            if tag is None:
                raise NotFoundError(f'Tag ID "{arguments["id"]}" not found')
            confirmed = await confirm_action(
                session, f'Are you sure you want to delete tag "{tag.name}" (ID: {tag.id})?'
            )
            if not confirmed:
                return {
                    "success": False,
                    "tag": tag.to_dict(),
                    "message": f'Deleting tag "{tag.name}" (ID: {tag.id}) rejected by the user.',
                }
            store.delete_tag(user.id, tag.id)
            return {
                "success": True,
                "tag": tag.to_dict(),
                "message": f'Tag "{tag.name}" (ID: {tag.id}) deleted successfully',
            }

        elif name == "add_tag_to_entry":
            user = session.require_user()
            entry_tag = store.add_tag_to_entry(user.id, arguments["entry_id"], arguments["tag_id"])
            return {
                "success": True,
                "entry_tag": entry_tag.to_dict(),
                "message": (
                    f"Tag {entry_tag.tag_id} added to entry {entry_tag.entry_id} successfully"
                ),
            }

        elif name == "get_tag_suggestions_instructions":
            messages = suggest_tags_messages(session, arguments["entryId"])
            return {"success": True, "messages": messages}

        elif name == "get_journal_insights_instructions":
            messages = await summarize_entries_messages(
                session, arguments.get("tagIds"), arguments.get("from"), arguments.get("to")
            )
            return {"success": True, "messages": messages}

        else:
            return {
                "success": False,
                "error": f"Unknown tool: {name}",
            }

    except (Unauthenticated, GrantNotClaimed) as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "unauthenticated" if isinstance(e, Unauthenticated) else "grant_not_claimed",
            "suggestion": AUTHENTICATE_SUGGESTION,
        }

    except GrantNotFound as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "grant_not_found",
            "suggestion": "Reconnect to obtain a new authorization grant",
        }

    except TokenNotFound as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "token_not_found",
            "suggestion": 'Invoke the "authenticate" tool to send a new code',
        }

    except InvalidEmail as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "invalid_email",
            "suggestion": "Ask the user for their email address again",
        }

    except InvalidToken as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "invalid_token",
        }

    except EmailDispatchFailure as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "email_dispatch_failure",
        }

    except NotFoundError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "not_found",
        }

    except DuplicateTagError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "duplicate_tag",
            "suggestion": "Use list_tags to find the existing tag",
        }

    except KeyError as e:
        return {
            "success": False,
            "error": f"Missing required argument: {e.args[0]}",
            "error_type": "invalid_arguments",
        }

    except (EpicMeError, ValueError) as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "epicme_error",
        }

    except Exception as e:
        logger.exception("Tool %s failed", name)
        return {
            "success": False,
            "error": str(e),
            "error_type": "unexpected_error",
        }
