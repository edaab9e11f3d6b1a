"""
Unit tests for card normalization across the v1, v2 and v3 shapes.
"""

import copy

import pytest

from lorebook_engine.app.core.Character_Chat.card_normalizer import (
    CardVersion,
    CharacterCard,
    denormalize,
    detect_card_version,
    normalize,
    validate_card,
)
from lorebook_engine.app.core.Character_Chat.world_info_exceptions import (
    UnrecognizedSchema,
    WorldInfoErrorCode,
)

pytestmark = pytest.mark.unit


V1_DOC = {
    "name": "Seraphina",
    "description": "A guardian of the forest.",
    "personality": "kind, protective",
    "scenario": "You wake in a glade.",
    "first_mes": "Are you hurt?",
    "mes_example": "<START>\n{{char}}: Rest now.",
    "creatorcomment": "Made for testing",
    "tags": ["fantasy", "guardian"],
    "talkativeness": "0.7",
    "fav": True,
    "create_date": "2024-1-1 @12h 0m 0s 0ms",
    "avatar": "seraphina.png",
    "chat": "Seraphina - 2024",
}

V2_DOC = {
    "spec": "chara_card_v2",
    "spec_version": "2.0",
    "data": {
        "name": "Bob",
        "description": "A blacksmith.",
        "personality": "gruff",
        "scenario": "The forge.",
        "first_mes": "What do you want?",
        "mes_example": "",
        "creator_notes": "notes",
        "system_prompt": "You are Bob.",
        "post_history_instructions": "Stay in character.",
        "alternate_greetings": ["Hm?"],
        "tags": ["craft"],
        "creator": "someone",
        "character_version": "1.1",
        "extensions": {"talkativeness": "0.5", "fav": False, "world": "Smithing", "custom_ext": {"a": 1}},
        "character_book": {
            "name": "Bob's Book",
            "entries": [
                {"id": 0, "keys": ["anvil"], "content": "Bob's anvil is old.", "extensions": {"display_index": 0}},
            ],
        },
        "custom_data_field": 42,
    },
    "custom_root_field": "kept",
}


def assert_subset(expected, actual, path="$"):
    """Every key of ``expected`` is present in ``actual`` with an equal value."""
    if isinstance(expected, dict):
        assert isinstance(actual, dict), path
        for key, value in expected.items():
            assert key in actual, f"{path}.{key} missing"
            assert_subset(value, actual[key], f"{path}.{key}")
    else:
        assert expected == actual, path


class TestDetection:
    def test_spec_tag(self):
        assert detect_card_version(V2_DOC) is CardVersion.V2
        assert detect_card_version({"spec": "chara_card_v3", "data": {"name": "x"}}) is CardVersion.V3

    def test_nested_data_without_spec_is_v2(self):
        assert detect_card_version({"data": {"name": "x"}}) is CardVersion.V2

    def test_flat_document_is_v1(self):
        assert detect_card_version(V1_DOC) is CardVersion.V1

    @pytest.mark.parametrize("declared,expected", [
        ("v1", CardVersion.V1), (2, CardVersion.V2), ("3.0", CardVersion.V3), ("chara_card_v2", CardVersion.V2),
    ])
    def test_declared_version_wins(self, declared, expected):
        assert detect_card_version({"data": {"name": "x"}, "name": "x"}, declared) is expected

    @pytest.mark.parametrize("doc", [
        {},
        {"foo": "bar"},
        {"spec": "chara_card_v9", "data": {"name": "x"}},
        ["not", "a", "mapping"],
    ])
    def test_unrecognized(self, doc):
        with pytest.raises(UnrecognizedSchema) as excinfo:
            normalize(doc)
        assert excinfo.value.code is WorldInfoErrorCode.CARD_UNRECOGNIZED_SCHEMA


class TestNormalize:
    def test_v1_fields_mapped(self):
        card = normalize(V1_DOC)
        assert card.source_version is CardVersion.V1
        assert card.creator_notes == "Made for testing"
        assert card.extensions["talkativeness"] == "0.7"
        assert card.extensions["fav"] is True
        assert card.extensions["world"] == ""
        assert card.extensions["depth_prompt"] == {"prompt": "", "depth": 4, "role": "system"}
        assert card.system_prompt == ""
        assert card.extra_fields == {"chat": "Seraphina - 2024"}

    def test_v2_fields_and_book(self):
        card = normalize(V2_DOC)
        assert card.name == "Bob"
        assert card.linked_world == "Smithing"
        assert card.character_book.name == "Bob's Book"
        assert card.character_book.entries[0].keys == ["anvil"]
        assert card.extra_fields == {"custom_root_field": "kept"}
        assert card.extra_data_fields == {"custom_data_field": 42}

    def test_null_fields_become_defaults(self):
        card = normalize({"spec": "chara_card_v2", "data": {"name": "N", "description": None, "tags": None}})
        assert card.description == ""
        assert card.tags == []

    def test_comma_string_tags_split(self):
        card = normalize({"name": "T", "description": "d", "tags": "a, b ,c"})
        assert card.tags == ["a", "b", "c"]

    def test_missing_name_rejected(self):
        with pytest.raises(UnrecognizedSchema):
            normalize({"spec": "chara_card_v2", "data": {"description": "nameless"}})

    def test_bad_character_book_rejected(self):
        doc = copy.deepcopy(V2_DOC)
        doc["data"]["character_book"] = {"entries": "nope"}
        with pytest.raises(UnrecognizedSchema):
            normalize(doc)

    def test_input_not_mutated(self):
        doc = copy.deepcopy(V2_DOC)
        normalize(doc).character_book.entries[0].update(content="changed")
        assert doc == V2_DOC


class TestRoundTrip:
    @pytest.mark.parametrize("doc,version", [(V1_DOC, CardVersion.V1), (V2_DOC, CardVersion.V2)])
    def test_legacy_round_trip_reproduces_every_field(self, doc, version):
        out = denormalize(normalize(doc, version), version)
        assert_subset(doc, out)

    def test_v2_round_trip_is_exact(self):
        out = denormalize(normalize(V2_DOC), CardVersion.V2)
        assert out["data"]["extensions"]["custom_ext"] == {"a": 1}
        assert out["custom_root_field"] == "kept"
        assert out["spec_version"] == "2.0"

    def test_v3_has_root_mirror_and_data(self):
        out = denormalize(normalize(V2_DOC), "v3")
        assert out["spec"] == "chara_card_v3"
        assert out["spec_version"] == "3.0"
        assert out["name"] == "Bob"
        assert out["description"] == "A blacksmith."
        assert out["data"]["group_only_greetings"] == []
        assert out["data"]["character_book"]["entries"][0]["content"] == "Bob's anvil is old."
        back = normalize(out)
        assert back.source_version is CardVersion.V3
        assert back.character_book == normalize(V2_DOC).character_book

    def test_v1_projection_of_nested_card(self):
        out = denormalize(normalize(V2_DOC), CardVersion.V1)
        assert out["creatorcomment"] == "notes"
        assert out["talkativeness"] == "0.5"
        assert "data" not in out
        assert "spec" not in out

    def test_v1_comma_string_tags_kept_on_round_trip(self):
        doc = {"name": "T", "description": "d", "tags": "a, b"}
        card = normalize(doc, CardVersion.V1)
        assert card.tags == ["a", "b"]
        out = denormalize(card, CardVersion.V1)
        assert out["tags"] == "a, b"
        assert_subset(doc, out)

    def test_comma_string_tags_not_leaked_into_other_versions(self):
        card = normalize({"name": "T", "description": "d", "tags": "a, b"}, CardVersion.V1)
        assert denormalize(card, CardVersion.V2)["data"]["tags"] == ["a", "b"]
        out = denormalize(card, CardVersion.V3)
        assert out["tags"] == ["a", "b"]
        assert out["data"]["tags"] == ["a", "b"]

    def test_edited_tags_are_exported_as_list(self):
        card = normalize({"name": "T", "description": "d", "tags": "a, b"}, CardVersion.V1)
        card.tags.append("c")
        assert denormalize(card, CardVersion.V1)["tags"] == ["a", "b", "c"]

    def test_null_character_book_kept_on_round_trip(self):
        doc = {"spec": "chara_card_v2", "spec_version": "2.0", "data": {"name": "N", "character_book": None}}
        card = normalize(doc)
        assert card.character_book is None
        out = denormalize(card, CardVersion.V2)
        assert "character_book" in out["data"]
        assert out["data"]["character_book"] is None
        assert_subset(doc, out)

    def test_absent_character_book_stays_absent(self):
        out = denormalize(normalize({"spec": "chara_card_v2", "data": {"name": "N"}}), CardVersion.V2)
        assert "character_book" not in out["data"]

    def test_every_normalized_card_projects(self):
        card = CharacterCard(name="Minimal")
        for version in CardVersion:
            out = denormalize(card, version)
            assert normalize(out, version).name == "Minimal"


class TestValidateCard:
    def test_valid_v2(self):
        assert validate_card(V2_DOC) == (True, [])

    def test_missing_name(self):
        ok, errors = validate_card({"spec": "chara_card_v3", "data": {"name": ""}})
        assert not ok
        assert "name" in errors[0]

    def test_bad_book_entries(self):
        ok, errors = validate_card({"spec": "chara_card_v2", "data": {"name": "x", "character_book": {"entries": [1]}}})
        assert not ok
        assert errors == ["character_book entry 0 must be a dictionary"]

    def test_unrecognized_is_reported_not_raised(self):
        ok, errors = validate_card({"foo": 1})
        assert not ok and errors
