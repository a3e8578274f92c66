"""Property-based tests.

Uses hypothesis to verify algorithmic properties hold for many inputs.
"""

import tempfile
from pathlib import Path

from hypothesis import HealthCheck, given, settings, strategies as st

from mcp_epicme.errors import GrantNotClaimed
from mcp_epicme.host import ElicitResponse
from mcp_epicme.models import ExistingTagSuggestion, NewTagSuggestion, Tag, utc_now
from mcp_epicme.reconciler import (
    classify,
    partition_by_confidence,
    read_confirmation,
    resolve_name_collisions,
)
from mcp_epicme.store import JournalStore

confidences = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)
tag_names = st.text(alphabet="abcdefghij ", min_size=1, max_size=8).filter(lambda s: s.strip())

existing_suggestions = st.builds(
    ExistingTagSuggestion,
    id=st.integers(min_value=1, max_value=10),
    confidence=confidences,
    reasoning=st.just("r"),
)
new_suggestions = st.builds(
    NewTagSuggestion,
    name=tag_names,
    confidence=confidences,
    reasoning=st.just("r"),
)
suggestion_lists = st.lists(st.one_of(existing_suggestions, new_suggestions), max_size=8)


def make_tags(names):
    now = utc_now()
    return [Tag(id=i + 1, user_id=1, name=n, created_at=now, updated_at=now) for i, n in enumerate(names)]


def make_temp_store():
    """Create a fresh store in a temp directory for each hypothesis example."""
    tmpdir = tempfile.mkdtemp()
    return JournalStore(Path(tmpdir) / "epicme.db")


class TestPartitionProperties:
    """Properties of confidence tiering."""

    @given(suggestions=suggestion_lists, threshold=confidences)
    def test_partition_is_exact(self, suggestions, threshold):
        high, low = partition_by_confidence(suggestions, threshold)
        assert len(high) + len(low) == len(suggestions)
        assert all(s.confidence >= threshold for s in high)
        assert all(s.confidence < threshold for s in low)


class TestClassifyProperties:
    """Properties of suggestion classification."""

    @given(
        suggestions=suggestion_lists,
        names=st.lists(tag_names, unique=True, max_size=5),
        applied=st.sets(st.integers(min_value=1, max_value=5)),
    )
    def test_never_duplicates_or_reapplies(self, suggestions, names, applied):
        existing = make_tags(names)
        current = [t for t in existing if t.id in applied]

        kept = classify(resolve_name_collisions(suggestions, existing), existing, current)

        existing_ids = {t.id for t in existing}
        existing_names = {t.name for t in existing}
        for s in kept:
            if isinstance(s, ExistingTagSuggestion):
                assert s.id in existing_ids
                assert s.id not in applied
            else:
                assert s.name not in existing_names
        keys = [s.key for s in kept]
        assert len(keys) == len(set(keys))


class TestConfirmationProperties:
    @given(
        suggestions=suggestion_lists,
        values=st.dictionaries(
            st.text(max_size=12),
            st.one_of(st.booleans(), st.text(max_size=4), st.integers(), st.none()),
        ),
        action=st.sampled_from(["accept", "decline", "cancel"]),
    )
    def test_only_literal_true_accepts(self, suggestions, values, action):
        response = ElicitResponse(action=action, content=values)
        for suggestion, accepted in read_confirmation(response, suggestions):
            if accepted:
                assert action == "accept"
                assert values[suggestion.key] is True


class TestGrantProperties:
    """Grant claim/unclaim sequences."""

    @settings(max_examples=25, suppress_health_check=[HealthCheck.too_slow])
    @given(ops=st.lists(st.sampled_from(["claim", "unclaim"]), max_size=10))
    def test_owner_tracks_last_operation(self, ops):
        store = make_temp_store()
        try:
            grant_id = store.create_unclaimed_grant("candidate")
            user = store.get_or_create_user("a@b.com")
            claimed = False
            for op in ops:
                if op == "claim":
                    store.set_grant_owner(grant_id, user.id)
                    claimed = True
                else:
                    assert store.unclaim_grant(grant_id) is claimed
                    claimed = False

            owner = store.get_user_by_grant_id(grant_id)
            assert (owner is not None) == claimed
        finally:
            store.close()


def test_grant_not_claimed_message_mentions_authenticate():
    assert "authenticate" in str(GrantNotClaimed("g"))
