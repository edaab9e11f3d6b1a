"""
Character card normalizer (V1 flat, V2 nested, V3 current).

Supports cards shaped as:
- V1: flat TavernAI fields (name, description, ..., creatorcomment, talkativeness, fav)
- V2: spec "chara_card_v2", with the payload nested under ``data``
- V3: spec "chara_card_v3", nested payload plus flat mirror fields at the root

Every shape converts into one canonical ``CharacterCard`` and back. Fields a
shape does not carry get their documented defaults; keys nobody knows about are
kept in ``extra_fields`` / ``extra_data_fields`` so a re-export does not lose
creator-added metadata.
"""

import copy
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lorebook_engine.app.core.Character_Chat.world_info_exceptions import UnrecognizedSchema
from lorebook_engine.app.core.Character_Chat.world_info_models import WorldInfoBook


class CardVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"
    V3 = "v3"


SPEC_TAGS: Dict[CardVersion, Tuple[str, str]] = {
    CardVersion.V2: ("chara_card_v2", "2.0"),
    CardVersion.V3: ("chara_card_v3", "3.0"),
}
_SPEC_TO_VERSION = {spec: version for version, (spec, _) in SPEC_TAGS.items()}

V1_FIELDS = (
    "name", "description", "personality", "scenario", "first_mes", "mes_example",
    "creatorcomment", "tags", "talkativeness", "fav", "create_date", "avatar",
)
# Any of these next to "name" marks a flat document as V1
_V1_MARKERS = ("description", "personality", "scenario", "first_mes", "mes_example", "creatorcomment")

V2_DATA_FIELDS = (
    "name", "description", "personality", "scenario", "first_mes", "mes_example",
    "creator_notes", "system_prompt", "post_history_instructions", "alternate_greetings",
    "character_book", "tags", "creator", "character_version", "extensions",
)
V3_DATA_FIELDS = V2_DATA_FIELDS + ("group_only_greetings",)
_NESTED_ROOT_FIELDS = ("spec", "spec_version", "data")
_V3_ROOT_MIRROR = V1_FIELDS + ("creator",)
_LIST_FIELDS = ("alternate_greetings", "group_only_greetings", "tags")

DEFAULT_DEPTH_PROMPT = {"prompt": "", "depth": 4, "role": "system"}
CARD_EXTENSION_DEFAULTS: Dict[str, Any] = {
    "talkativeness": 0.5,
    "fav": False,
    "world": "",
    "depth_prompt": DEFAULT_DEPTH_PROMPT,
}


def _split_list(value: str) -> List[str]:
    return [t.strip() for t in value.split(",") if t.strip()]


class CharacterCard(BaseModel):
    """Canonical card: a superset of every supported shape."""
    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=False)

    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    mes_example: str = ""
    creator_notes: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    alternate_greetings: List[str] = Field(default_factory=list)
    group_only_greetings: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    creator: str = ""
    character_version: str = ""
    create_date: Optional[Union[str, int, float]] = None
    avatar: Optional[str] = None
    character_book: Optional[WorldInfoBook] = None
    extensions: Dict[str, Any] = Field(default_factory=dict, validate_default=True)

    # Passthrough for keys no shape defines (root level / inside "data")
    extra_fields: Dict[str, Any] = Field(default_factory=dict)
    extra_data_fields: Dict[str, Any] = Field(default_factory=dict)
    # Raw values whose shape the canonical fields flatten (comma strings, explicit nulls)
    source_shapes: Dict[str, Any] = Field(default_factory=dict)
    source_version: CardVersion = CardVersion.V3
    source_spec_version: Optional[str] = None

    @field_validator(
        "description", "personality", "scenario", "first_mes", "mes_example", "creator_notes",
        "system_prompt", "post_history_instructions", "creator", "character_version",
        mode="before",
    )
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

    @field_validator("alternate_greetings", "group_only_greetings", "tags", mode="before")
    @classmethod
    def coerce_string_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return _split_list(v)
        return v

    @field_validator("extensions", mode="before")
    @classmethod
    def fill_extension_defaults(cls, v):
        ext = dict(v) if isinstance(v, Mapping) else {}
        for key, default in CARD_EXTENSION_DEFAULTS.items():
            ext.setdefault(key, copy.deepcopy(default))
        return ext

    @property
    def linked_world(self) -> str:
        """Name of the global book this card links through ``extensions.world``."""
        value = self.extensions.get("world")
        return "" if value is None else str(value).strip()

    @property
    def depth_prompt(self) -> Dict[str, Any]:
        value = self.extensions.get("depth_prompt")
        merged = dict(DEFAULT_DEPTH_PROMPT)
        if isinstance(value, Mapping):
            merged.update(value)
        return merged


#######################################################################################################################
#
# Detection

def _parse_declared_version(declared: Union[CardVersion, str, int, float]) -> CardVersion:
    if isinstance(declared, CardVersion):
        return declared
    text = str(declared).strip().lower()
    if text in _SPEC_TO_VERSION:
        return _SPEC_TO_VERSION[text]
    text = text.lstrip("v")
    major = text.split(".", 1)[0]
    for version in CardVersion:
        if version.value == f"v{major}":
            return version
    raise UnrecognizedSchema(f"Unknown declared card version {declared!r}", details={"declared_version": declared})


def detect_card_version(
    raw_document: Any,
    declared_version: Optional[Union[CardVersion, str, int, float]] = None,
) -> CardVersion:
    """
    Classify a card document.

    Detection order: the declared version, then the ``spec`` tag, then structure
    (a nested ``data`` payload means the newer shape).

    Raises:
        UnrecognizedSchema: when nothing matches
    """
    if not isinstance(raw_document, Mapping):
        raise UnrecognizedSchema(
            f"Card document must be an object, got {type(raw_document).__name__}"
        )
    if declared_version is not None:
        return _parse_declared_version(declared_version)

    spec = raw_document.get("spec")
    if isinstance(spec, str) and spec.strip():
        version = _SPEC_TO_VERSION.get(spec.strip().lower())
        if version is None:
            raise UnrecognizedSchema(f"Unknown card spec tag {spec!r}", details={"spec": spec})
        return version

    if isinstance(raw_document.get("data"), Mapping):
        return CardVersion.V2

    if raw_document.get("name") and any(k in raw_document for k in _V1_MARKERS):
        return CardVersion.V1

    raise UnrecognizedSchema(
        "Card document matches no known schema",
        details={"keys": sorted(str(k) for k in raw_document.keys())[:20]},
    )


#######################################################################################################################
#
# Shape -> canonical

def _book_from(value: Any) -> Optional[WorldInfoBook]:
    if value is None:
        return None
    try:
        return WorldInfoBook.from_dict(value)
    except TypeError as e:
        raise UnrecognizedSchema(f"Invalid character_book: {e}", cause=e)


def _build_card(fields: Dict[str, Any]) -> CharacterCard:
    try:
        return CharacterCard(**fields)
    except ValidationError as e:
        raise UnrecognizedSchema(
            f"Card fields failed validation: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False)},
            cause=e,
        )


def _from_v1(doc: Mapping[str, Any]) -> CharacterCard:
    if not doc.get("name"):
        raise UnrecognizedSchema("V1 card is missing 'name'")
    extensions: Dict[str, Any] = {}
    if "talkativeness" in doc:
        extensions["talkativeness"] = copy.deepcopy(doc["talkativeness"])
    if "fav" in doc:
        extensions["fav"] = copy.deepcopy(doc["fav"])
    fields = {
        "name": doc.get("name"),
        "description": doc.get("description"),
        "personality": doc.get("personality"),
        "scenario": doc.get("scenario"),
        "first_mes": doc.get("first_mes"),
        "mes_example": doc.get("mes_example"),
        "creator_notes": doc.get("creatorcomment"),
        "tags": copy.deepcopy(doc.get("tags")),
        "create_date": doc.get("create_date"),
        "avatar": doc.get("avatar"),
        "extensions": extensions,
        "extra_fields": {k: copy.deepcopy(v) for k, v in doc.items() if k not in V1_FIELDS},
        "source_shapes": _source_shapes(doc, ("tags",)),
        "source_version": CardVersion.V1,
    }
    return _build_card(fields)


def _source_shapes(raw: Mapping[str, Any], keys: Tuple[str, ...]) -> Dict[str, Any]:
    shapes: Dict[str, Any] = {}
    for key in keys:
        if key not in raw:
            continue
        value = raw[key]
        if key == "character_book":
            if value is None:
                shapes[key] = None
        elif isinstance(value, str):
            shapes[key] = value
    return shapes


def _nested_fields(data: Mapping[str, Any], known: Tuple[str, ...]) -> Dict[str, Any]:
    if not data.get("name"):
        raise UnrecognizedSchema("Card 'data' is missing 'name'")
    return {
        "name": data.get("name"),
        "description": data.get("description"),
        "personality": data.get("personality"),
        "scenario": data.get("scenario"),
        "first_mes": data.get("first_mes"),
        "mes_example": data.get("mes_example"),
        "creator_notes": data.get("creator_notes"),
        "system_prompt": data.get("system_prompt"),
        "post_history_instructions": data.get("post_history_instructions"),
        "alternate_greetings": copy.deepcopy(data.get("alternate_greetings")),
        "group_only_greetings": copy.deepcopy(data.get("group_only_greetings")),
        "tags": copy.deepcopy(data.get("tags")),
        "creator": data.get("creator"),
        "character_version": data.get("character_version"),
        "character_book": _book_from(data.get("character_book")),
        "extensions": copy.deepcopy(data.get("extensions")),
        "extra_data_fields": {k: copy.deepcopy(v) for k, v in data.items() if k not in known},
        "source_shapes": _source_shapes(data, _LIST_FIELDS + ("character_book",)),
    }


def _nested_data(doc: Mapping[str, Any]) -> Mapping[str, Any]:
    data = doc.get("data")
    if not isinstance(data, Mapping):
        raise UnrecognizedSchema("Nested card is missing its 'data' object")
    return data


def _from_v2(doc: Mapping[str, Any]) -> CharacterCard:
    fields = _nested_fields(_nested_data(doc), V2_DATA_FIELDS)
    # group_only_greetings is not a V2 field: it also stays in the passthrough bag
    # so an empty list is re-emitted on V2 export
    fields["extra_fields"] = {
        k: copy.deepcopy(v) for k, v in doc.items() if k not in _NESTED_ROOT_FIELDS
    }
    fields["source_version"] = CardVersion.V2
    fields["source_spec_version"] = doc.get("spec_version")
    return _build_card(fields)


def _from_v3(doc: Mapping[str, Any]) -> CharacterCard:
    fields = _nested_fields(_nested_data(doc), V3_DATA_FIELDS)
    # Root mirror fields are regenerated on export; only root-only metadata is read
    fields["create_date"] = doc.get("create_date")
    fields["avatar"] = doc.get("avatar")
    fields["extra_fields"] = {
        k: copy.deepcopy(v) for k, v in doc.items()
        if k not in _NESTED_ROOT_FIELDS and k not in _V3_ROOT_MIRROR
    }
    fields["source_version"] = CardVersion.V3
    fields["source_spec_version"] = doc.get("spec_version")
    return _build_card(fields)


#######################################################################################################################
#
# Canonical -> shape

def _merge_extras(out: Dict[str, Any], extras: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in extras.items():
        if key not in out:
            out[key] = copy.deepcopy(value)
    return out


def _restore_shapes(out: Dict[str, Any], card: CharacterCard, target: CardVersion) -> Dict[str, Any]:
    """Re-emit source shapes when exporting to the source version and the value is unchanged."""
    if card.source_version != target:
        return out
    for key, raw in card.source_shapes.items():
        if key == "character_book":
            if card.character_book is None:
                out[key] = None
        elif list(getattr(card, key)) == _split_list(raw):
            out[key] = raw
    return out


def _book_dict(card: CharacterCard) -> Optional[Dict[str, Any]]:
    return card.character_book.to_dict() if card.character_book is not None else None


def _to_v1(card: CharacterCard) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "name": card.name,
        "description": card.description,
        "personality": card.personality,
        "scenario": card.scenario,
        "first_mes": card.first_mes,
        "mes_example": card.mes_example,
        "creatorcomment": card.creator_notes,
        "tags": list(card.tags),
        "talkativeness": copy.deepcopy(card.extensions.get("talkativeness")),
        "fav": copy.deepcopy(card.extensions.get("fav")),
    }
    if card.create_date is not None:
        out["create_date"] = card.create_date
    if card.avatar is not None:
        out["avatar"] = card.avatar
    _restore_shapes(out, card, CardVersion.V1)
    return _merge_extras(out, card.extra_fields)


def _data_payload(card: CharacterCard, include_v3: bool) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "name": card.name,
        "description": card.description,
        "personality": card.personality,
        "scenario": card.scenario,
        "first_mes": card.first_mes,
        "mes_example": card.mes_example,
        "creator_notes": card.creator_notes,
        "system_prompt": card.system_prompt,
        "post_history_instructions": card.post_history_instructions,
        "alternate_greetings": list(card.alternate_greetings),
        "tags": list(card.tags),
        "creator": card.creator,
        "character_version": card.character_version,
        "extensions": copy.deepcopy(card.extensions),
    }
    book = _book_dict(card)
    if book is not None:
        data["character_book"] = book
    if include_v3 or card.group_only_greetings:
        data["group_only_greetings"] = list(card.group_only_greetings)
    _restore_shapes(data, card, CardVersion.V3 if include_v3 else CardVersion.V2)
    return _merge_extras(data, card.extra_data_fields)


def _to_v2(card: CharacterCard) -> Dict[str, Any]:
    spec, default_version = SPEC_TAGS[CardVersion.V2]
    spec_version = default_version
    if card.source_version == CardVersion.V2 and card.source_spec_version:
        spec_version = card.source_spec_version
    out: Dict[str, Any] = {
        "spec": spec,
        "spec_version": spec_version,
        "data": _data_payload(card, include_v3=False),
    }
    return _merge_extras(out, card.extra_fields)


def _to_v3(card: CharacterCard) -> Dict[str, Any]:
    spec, default_version = SPEC_TAGS[CardVersion.V3]
    spec_version = default_version
    if card.source_version == CardVersion.V3 and card.source_spec_version:
        spec_version = card.source_spec_version
    out = _to_v1(card)
    for key in list(out.keys()):
        if key not in V1_FIELDS:
            del out[key]
    out["tags"] = list(card.tags)
    out["creator"] = card.creator
    out["spec"] = spec
    out["spec_version"] = spec_version
    out["data"] = _data_payload(card, include_v3=True)
    return _merge_extras(out, card.extra_fields)


_NORMALIZERS: Dict[CardVersion, Callable[[Mapping[str, Any]], CharacterCard]] = {
    CardVersion.V1: _from_v1,
    CardVersion.V2: _from_v2,
    CardVersion.V3: _from_v3,
}

_PROJECTIONS: Dict[CardVersion, Callable[[CharacterCard], Dict[str, Any]]] = {
    CardVersion.V1: _to_v1,
    CardVersion.V2: _to_v2,
    CardVersion.V3: _to_v3,
}


#######################################################################################################################
#
# Public API

def normalize(
    raw_document: Any,
    declared_version: Optional[Union[CardVersion, str, int, float]] = None,
) -> CharacterCard:
    """
    Convert a card document of any supported shape into the canonical card.

    Args:
        raw_document: Parsed card (a mapping)
        declared_version: Optional explicit version ("v1", "2.0", "chara_card_v3", ...)

    Returns:
        CharacterCard

    Raises:
        UnrecognizedSchema: if the document matches none of the known shapes
    """
    version = detect_card_version(raw_document, declared_version)
    card = _NORMALIZERS[version](raw_document)
    logger.debug(
        f"Normalized {version.value} card '{card.name}' "
        f"(book entries: {len(card.character_book) if card.character_book else 0})"
    )
    return card


def denormalize(card: CharacterCard, target_version: Union[CardVersion, str, int, float]) -> Dict[str, Any]:
    """Project a canonical card onto one of the supported shapes."""
    version = _parse_declared_version(target_version)
    return _PROJECTIONS[version](card)


def validate_card(card_data: Any, version: Optional[Union[CardVersion, str, int, float]] = None) -> Tuple[bool, List[str]]:
    """
    Lenient structural check of a card document.

    Returns:
        (is_valid, errors); never raises
    """
    errors: List[str] = []
    try:
        detected = detect_card_version(card_data, version)
    except UnrecognizedSchema as e:
        return False, [e.message]

    if detected == CardVersion.V1:
        payload = card_data
    else:
        payload = card_data.get("data")
        if not isinstance(payload, Mapping):
            return False, [f"'data' node must be a dictionary for {detected.value}"]

    if not payload.get("name"):
        errors.append(f"Missing required field 'name' in {detected.value} card")

    book = payload.get("character_book") if detected != CardVersion.V1 else None
    if book is not None:
        if not isinstance(book, Mapping):
            errors.append("'character_book' must be a dictionary")
        else:
            entries = book.get("entries", [])
            if not isinstance(entries, list):
                errors.append("'character_book.entries' must be a list")
            else:
                for idx, entry in enumerate(entries):
                    if not isinstance(entry, Mapping):
                        errors.append(f"character_book entry {idx} must be a dictionary")
    return (len(errors) == 0), errors


__all__ = [
    "CardVersion",
    "CharacterCard",
    "SPEC_TAGS",
    "detect_card_version",
    "normalize",
    "denormalize",
    "validate_card",
]
