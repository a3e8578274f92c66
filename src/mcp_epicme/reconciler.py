"""AI tag suggestions for journal entries.

A reconciliation pass asks the client's model (via MCP sampling) for tag
suggestions, reconciles them against the user's tags, applies confident
ones straight away and asks the user (via MCP elicitation) about the rest.

Suggestions are an enhancement: nothing in here may make the entry
operation that triggered it fail.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from pydantic import ValidationError

from .errors import DuplicateTagError, NotFoundError, SuggestionParseFailure
from .host import ElicitResponse, Peer, is_level_enabled
from .models import (
    Entry,
    ExistingTagSuggestion,
    NewTagSuggestion,
    Tag,
    TagSuggestion,
)
from .store import JournalStore

if TYPE_CHECKING:
    from .session import BackgroundTasks

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.7
MAX_SUGGESTIONS = 5
SAMPLING_MAX_TOKENS = 100

SYSTEM_PROMPT = """
You suggest tags for journal entries so they are easier to organize and find again.

## Task
Read the journal entry and suggest tags from the user's existing tags, or propose new ones.

## Rules
- Suggest between 0 and 5 tags (no suggestions is fine)
- Never suggest a tag that is already applied to the entry
- Prefer existing tags whenever one fits
- Propose a new tag only when it adds real value

## Response format
Respond with a JSON array and nothing else. Numbers must be plain JSON numbers.

No suggestions: []
Existing tag: {"id": 1, "confidence": 0.9, "reasoning": "Entry talks about work meetings"}
New tag: {"name": "Work Project", "description": "Professional work content", "confidence": 0.8, "reasoning": "Mentions deadlines"}

## Guidelines
- Tags should capture main themes: emotions, activities, people, places, topics
- Prefer broad, reusable tags over very specific ones
- New tag names are 1-3 words; descriptions are at most 2 sentences
- Confidence is between 0.0 and 1.0
- Reasoning says why the tag fits this entry
""".strip()

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class Reconciliation:
    """Outcome of one reconciliation pass."""
    entry_id: int
    auto_applied: list[TagSuggestion] = field(default_factory=list)
    deferred: list[TagSuggestion] = field(default_factory=list)
    applied_tags: list[Tag] = field(default_factory=list)


def parse_suggestions(text: str, max_suggestions: int = MAX_SUGGESTIONS) -> list[TagSuggestion]:
    """Parse the model's reply into validated suggestions.

    Raises:
        SuggestionParseFailure: Not a JSON array of valid suggestion objects
    """
    body = text.strip()
    match = _FENCE.match(body)
    if match:
        body = match.group(1)

    try:
        raw = json.loads(body)
    except json.JSONDecodeError as e:
        raise SuggestionParseFailure(f"Suggestion response is not JSON: {e}") from e

    if not isinstance(raw, list):
        raise SuggestionParseFailure("Suggestion response is not a JSON array")

    suggestions: list[TagSuggestion] = []
    for item in raw:
        if not isinstance(item, dict):
            raise SuggestionParseFailure(f"Suggestion is not an object: {item!r}")
        model = ExistingTagSuggestion if "id" in item else NewTagSuggestion
        try:
            suggestions.append(model.model_validate(item))
        except ValidationError as e:
            raise SuggestionParseFailure(f"Invalid suggestion {item!r}: {e}") from e

    if len(suggestions) > max_suggestions:
        logger.info("Model returned %d suggestions, keeping %d", len(suggestions), max_suggestions)
        suggestions = suggestions[:max_suggestions]
    return suggestions


def resolve_name_collisions(
    suggestions: list[TagSuggestion],
    existing_tags: list[Tag],
) -> list[TagSuggestion]:
    """Turn new-tag suggestions that name an existing tag into id suggestions.

    The original confidence and reasoning are kept.
    """
    by_name = {tag.name: tag for tag in existing_tags}
    resolved: list[TagSuggestion] = []
    for suggestion in suggestions:
        if isinstance(suggestion, NewTagSuggestion) and suggestion.name in by_name:
            resolved.append(ExistingTagSuggestion(
                id=by_name[suggestion.name].id,
                confidence=suggestion.confidence,
                reasoning=suggestion.reasoning,
            ))
        else:
            resolved.append(suggestion)
    return resolved


def classify(
    suggestions: list[TagSuggestion],
    existing_tags: list[Tag],
    current_tags: list[Tag],
) -> list[TagSuggestion]:
    """Drop suggestions that cannot or should not be applied.

    Removes unknown tag ids, tags already on the entry, and new tags whose
    name is taken. Repeated references keep the most confident suggestion.
    """
    existing_ids = {tag.id for tag in existing_tags}
    existing_names = {tag.name for tag in existing_tags}
    current_ids = {tag.id for tag in current_tags}

    kept: dict[str, TagSuggestion] = {}
    for suggestion in suggestions:
        if isinstance(suggestion, ExistingTagSuggestion):
            if suggestion.id not in existing_ids or suggestion.id in current_ids:
                continue
        elif suggestion.name in existing_names or not suggestion.name.strip():
            continue

        previous = kept.get(suggestion.key)
        if previous is None or suggestion.confidence > previous.confidence:
            kept[suggestion.key] = suggestion
    return list(kept.values())


def partition_by_confidence(
    suggestions: list[TagSuggestion],
    threshold: float = CONFIDENCE_THRESHOLD,
) -> tuple[list[TagSuggestion], list[TagSuggestion]]:
    """Split into (auto-apply, ask-user). The threshold itself auto-applies."""
    high = [s for s in suggestions if s.confidence >= threshold]
    low = [s for s in suggestions if s.confidence < threshold]
    return high, low


def suggestion_label(suggestion: TagSuggestion, tags_by_id: dict[int, Tag]) -> str:
    if isinstance(suggestion, ExistingTagSuggestion):
        tag = tags_by_id.get(suggestion.id)
        return tag.name if tag else f"Unknown Tag (ID: {suggestion.id})"
    return suggestion.name


def build_confirmation_schema(
    suggestions: list[TagSuggestion],
    existing_tags: list[Tag],
) -> dict[str, Any]:
    """Elicitation schema with one yes/no field per suggestion.

    Fields are keyed by suggestion identity, not list position.
    """
    tags_by_id = {tag.id: tag for tag in existing_tags}
    properties = {}
    for suggestion in suggestions:
        name = suggestion_label(suggestion, tags_by_id)
        if isinstance(suggestion, ExistingTagSuggestion):
            action = f'Apply tag "{name}"'
        else:
            action = f'Create and apply new tag "{name}"'
        properties[suggestion.key] = {
            "type": "boolean",
            "title": name,
            "description": f"{action} (confidence: {suggestion.confidence}): {suggestion.reasoning}",
            "default": False,
        }
    return {"type": "object", "properties": properties}


def read_confirmation(
    response: ElicitResponse,
    suggestions: list[TagSuggestion],
) -> list[tuple[TagSuggestion, bool]]:
    """Pair each suggestion with the user's answer. Anything but ``true`` is no."""
    content = (response.content or {}) if response.accepted else {}
    return [(s, content.get(s.key) is True) for s in suggestions]


class TagReconciler:
    """Runs reconciliation passes for one session."""

    def __init__(
        self,
        store: JournalStore,
        peer: Peer,
        tasks: Optional["BackgroundTasks"] = None,
        threshold: float = CONFIDENCE_THRESHOLD,
        max_suggestions: int = MAX_SUGGESTIONS,
        max_tokens: int = SAMPLING_MAX_TOKENS,
        logging_level: Callable[[], str] = lambda: "info",
    ):
        self.store = store
        self.peer = peer
        self.tasks = tasks
        self.threshold = threshold
        self.max_suggestions = max_suggestions
        self.max_tokens = max_tokens
        self._logging_level = logging_level

    async def reconcile(self, user_id: int, entry_id: int) -> Optional[Reconciliation]:
        """Suggest and apply tags for an entry.

        Returns None when the pass was skipped or aborted; errors are logged.
        """
        if not self.peer.capabilities().sampling:
            logger.info("Client does not support sampling, skipping tag suggestions")
            return None

        try:
            return await self._reconcile(user_id, entry_id)
        except SuggestionParseFailure as e:
            logger.warning("Discarding tag suggestions for entry %s: %s", entry_id, e)
        except Exception:
            logger.exception("Tag suggestion failed for entry %s", entry_id)
        return None

    async def _reconcile(self, user_id: int, entry_id: int) -> Reconciliation:
        entry = self.store.get_entry(user_id, entry_id)
        if entry is None:
            raise NotFoundError(f'Entry with ID "{entry_id}" not found')
        existing_tags = self.store.get_tags(user_id)
        current_tags = self.store.get_entry_tags(user_id, entry_id)

        text = await self.peer.create_message(
            system_prompt=SYSTEM_PROMPT,
            messages=[{
                "role": "user",
                "content": {
                    "type": "text",
                    "text": json.dumps({
                        "entry": entry.to_dict(),
                        "currentTags": [t.to_ref() for t in current_tags],
                        "existingTags": [t.to_dict() for t in existing_tags],
                    }),
                },
            }],
            max_tokens=self.max_tokens,
        )

        suggestions = parse_suggestions(text, self.max_suggestions)
        suggestions = resolve_name_collisions(suggestions, existing_tags)
        suggestions = classify(suggestions, existing_tags, current_tags)
        high, low = partition_by_confidence(suggestions, self.threshold)

        result = Reconciliation(entry_id=entry.id, auto_applied=high, deferred=low)
        for suggestion in high:
            result.applied_tags.append(self.apply(user_id, entry.id, suggestion))

        if low and self.peer.capabilities().elicitation:
            confirm = self.confirm_low_confidence(user_id, entry, low)
            if self.tasks is not None:
                self.tasks.spawn(confirm, name=f"confirm-tags-{entry.id}")
            else:
                await confirm

        if is_level_enabled(self._logging_level(), "info"):
            updated = self.store.get_entry(user_id, entry.id)
            await self.peer.send_log("info", {
                "message": "Auto-applied high-confidence tags to entry",
                "addedTags": [t.to_dict() for t in result.applied_tags],
                "entry": updated.to_dict() if updated else None,
                "highConfidenceCount": len(high),
                "lowConfidenceCount": len(low),
            })
        return result

    def apply(self, user_id: int, entry_id: int, suggestion: TagSuggestion) -> Tag:
        """Link the suggested tag, creating it first if it is new."""
        if isinstance(suggestion, ExistingTagSuggestion):
            tag = self.store.get_tag(user_id, suggestion.id)
            if tag is None:
                raise NotFoundError(f'Tag ID "{suggestion.id}" not found')
        else:
            tag = self.store.get_tag_by_name(user_id, suggestion.name)
            if tag is None:
                try:
                    tag = self.store.create_tag(user_id, suggestion.name, suggestion.description)
                except DuplicateTagError:
                    tag = self.store.get_tag_by_name(user_id, suggestion.name)
        self.store.add_tag_to_entry(user_id, entry_id, tag.id)
        return tag

    async def confirm_low_confidence(
        self,
        user_id: int,
        entry: Entry,
        suggestions: list[TagSuggestion],
    ) -> list[Tag]:
        """Ask the user about low-confidence suggestions and apply the accepted ones."""
        applied: list[Tag] = []
        try:
            existing_tags = self.store.get_tags(user_id)
            response = await self.peer.elicit(
                f'I found some tag suggestions for your journal entry "{entry.title}" '
                "that I'm not very confident about.\n\n"
                "Would you like me to apply any of these tags to your entry?",
                build_confirmation_schema(suggestions, existing_tags),
            )
            if not response.accepted:
                logger.info("User dismissed tag suggestions for entry %s", entry.id)
                return applied

            for suggestion, accepted in read_confirmation(response, suggestions):
                if accepted:
                    applied.append(self.apply(user_id, entry.id, suggestion))
        except Exception:
            logger.exception("Low-confidence tag confirmation failed for entry %s", entry.id)
        return applied
