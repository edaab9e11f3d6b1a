"""
Property-based tests for activation invariants.

Uses Hypothesis to generate books and transcripts and verify that the
engine's guarantees hold regardless of input.
"""

import random

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from lorebook_engine.app.core.Character_Chat.world_info_activation import WorldInfoEngine
from lorebook_engine.app.core.Character_Chat.world_info_models import WorldInfoBook
from lorebook_engine.app.core.config import WorldInfoSettings

pytestmark = pytest.mark.property

VOCAB = ["sword", "dragon", "castle", "gem", "horse", "lance", "river", "king"]
SETTINGS = WorldInfoSettings(
    scan_depth=3,
    recursion_limit=2,
    token_budget=None,
    case_sensitive=False,
    match_whole_words=True,
)
HYPOTHESIS_SETTINGS = settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])


def word_count(text):
    return len(text.split())


@st.composite
def transcript_strategy(draw):
    turns = draw(st.lists(st.lists(st.sampled_from(VOCAB), max_size=4), max_size=5))
    return [" ".join(words) for words in turns]


@st.composite
def entry_strategy(draw, entry_id):
    return {
        "id": entry_id,
        "keys": draw(st.lists(st.sampled_from(VOCAB), min_size=1, max_size=2)),
        "secondary_keys": draw(st.lists(st.sampled_from(VOCAB), max_size=2)),
        "content": " ".join(draw(st.lists(st.sampled_from(VOCAB), min_size=1, max_size=4))),
        "constant": draw(st.booleans()),
        "selective": draw(st.booleans()),
        "insertion_order": draw(st.integers(min_value=0, max_value=5)),
        "extensions": {
            "selectiveLogic": draw(st.integers(min_value=0, max_value=3)),
            "probability": draw(st.sampled_from([0, 25, 50, 100])),
            "useProbability": draw(st.booleans()),
            "group": draw(st.sampled_from(["", "", "a", "b"])),
            "group_override": draw(st.booleans()),
            "position": draw(st.integers(min_value=0, max_value=6)),
            "exclude_recursion": draw(st.booleans()),
            "prevent_recursion": draw(st.booleans()),
        },
    }


@st.composite
def book_strategy(draw):
    count = draw(st.integers(min_value=0, max_value=8))
    entries = [draw(entry_strategy(i)) for i in range(count)]
    return WorldInfoBook.from_dict({"name": "Generated", "entries": entries})


def run(book, transcript, seed, budget=None):
    engine = WorldInfoEngine(settings=SETTINGS, rng=random.Random(seed), size_fn=word_count)
    return engine.activate(transcript, book, budget=budget)


@given(book=book_strategy(), t1=transcript_strategy(), t2=transcript_strategy(), seed=st.integers(0, 1000))
@HYPOTHESIS_SETTINGS
def test_constant_entries_independent_of_window(book, t1, t2, seed):
    constants_only = WorldInfoBook.from_dict({
        "name": "Constants",
        "entries": [e.to_dict() for e in book.entries if e.constant],
    })
    assert run(constants_only, t1, seed) == run(constants_only, t2, seed)


@given(book=book_strategy(), transcript=transcript_strategy(), seed=st.integers(0, 1000), data=st.data())
@HYPOTHESIS_SETTINGS
def test_non_selective_ignores_secondary_settings(book, transcript, seed, data):
    for entry in book.entries:
        entry.update(selective=False)
    before = run(book, transcript, seed)
    for entry in book.entries:
        entry.update(
            secondary_keys=data.draw(st.lists(st.sampled_from(VOCAB), max_size=3)),
            extensions={"selectiveLogic": data.draw(st.sampled_from([0, 1, 2, 3, "garbage"]))},
        )
    assert run(book, transcript, seed) == before


@given(book=book_strategy(), transcript=transcript_strategy(), seed=st.integers(0, 1000))
@HYPOTHESIS_SETTINGS
def test_determinism(book, transcript, seed):
    assert run(book, transcript, seed) == run(book, transcript, seed)


@given(book=book_strategy(), transcript=transcript_strategy(), seed=st.integers(0, 1000))
@HYPOTHESIS_SETTINGS
def test_group_invariant(book, transcript, seed):
    plan = run(book, transcript, seed)
    by_id = {e.entry_id: e for e in book.entries}
    per_group = {}
    for planned in plan.entries:
        group = by_id[planned.entry_id].group
        if group:
            per_group.setdefault(group, []).append(by_id[planned.entry_id])
    for members in per_group.values():
        if len(members) > 1:
            assert all(m.group_override for m in members)


@given(
    book=book_strategy(),
    transcript=transcript_strategy(),
    seed=st.integers(0, 1000),
    budget=st.integers(min_value=0, max_value=20),
)
@HYPOTHESIS_SETTINGS
def test_budget_invariant(book, transcript, seed, budget):
    trimmed = run(book, transcript, seed, budget=budget)
    unlimited = run(book, transcript, seed, budget=None)
    assert sum(word_count(e.content) for e in trimmed.entries) <= budget
    assert trimmed.tokens_used <= budget
    # trimmed plan is a prefix of the unlimited plan
    assert trimmed.entries == unlimited.entries[:len(trimmed.entries)]
