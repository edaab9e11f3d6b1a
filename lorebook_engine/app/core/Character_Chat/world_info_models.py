# world_info_models.py
# Description: World info (lorebook) entries and books, in the shape carried by character cards
#
"""
World Info Model
----------------

A ``WorldInfoEntry`` is one lorebook rule: trigger keys, the content injected
when it fires, and a free-form ``extensions`` bag of tuning knobs. A
``WorldInfoBook`` is a named, ordered collection of entries.

Both classes are backed by the raw dictionary they were loaded from. Unknown
keys (entry level and inside ``extensions``) survive a load/dump cycle in their
original order, and documented defaults are applied when a field is read,
never written back unless ``to_dict(fill_defaults=True)`` is requested.

Keys of the form ``/pattern/flags`` are treated as regular expressions; all
other keys are literal and matched case-insensitively unless overridden.
"""

import copy
import math
import re
from enum import IntEnum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger

EntryId = Union[int, str]


class SelectiveLogic(IntEnum):
    """Combinator between the primary-key match and the secondary keys."""
    AND_ANY = 0
    NOT_ALL = 1
    NOT_ANY = 2
    AND_ALL = 3

    @classmethod
    def parse(cls, value: Any) -> "SelectiveLogic":
        """Accept the numeric card value, its string form, or the member name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"invalid selectiveLogic {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.lstrip("-").isdigit():
                return cls(int(text))
            name = text.upper().replace(" ", "_").replace("-", "_")
            if name in cls.__members__:
                return cls[name]
        raise ValueError(f"invalid selectiveLogic {value!r}")


class WorldInfoPosition(IntEnum):
    """Placement bucket, in the order buckets are emitted into the plan."""
    BEFORE_CHAR = 0
    AFTER_CHAR = 1
    AN_TOP = 2
    AN_BOTTOM = 3
    AT_DEPTH = 4
    EM_TOP = 5
    EM_BOTTOM = 6

    @property
    def label(self) -> str:
        return self.name.lower()


class ExtensionRole(IntEnum):
    """Role an at-depth entry is attributed to."""
    SYSTEM = 0
    USER = 1
    ASSISTANT = 2

    @classmethod
    def parse(cls, value: Any) -> "ExtensionRole":
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool) and value in cls._value2member_map_:
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit() and int(text) in cls._value2member_map_:
                return cls(int(text))
            if text.upper() in cls.__members__:
                return cls[text.upper()]
        return cls.SYSTEM


POSITION_NAMES: Dict[str, WorldInfoPosition] = {
    "before_char": WorldInfoPosition.BEFORE_CHAR,
    "after_char": WorldInfoPosition.AFTER_CHAR,
}

ENTRY_DEFAULTS: Dict[str, Any] = {
    "keys": [],
    "secondary_keys": [],
    "comment": "",
    "content": "",
    "constant": False,
    "selective": False,
    "insertion_order": 100,
    "enabled": True,
    "position": "before_char",
}

EXTENSION_DEFAULTS: Dict[str, Any] = {
    "position": 0,
    "exclude_recursion": False,
    "probability": 100,
    "useProbability": True,
    "depth": 4,
    "selectiveLogic": 0,
    "group": "",
    "group_override": False,
    "prevent_recursion": False,
    "scan_depth": None,
    "match_whole_words": None,
    "case_sensitive": None,
    "role": 0,
    "vectorized": False,
}

_REGEX_KEY = re.compile(r"^/(.+)/([a-z]*)$", re.DOTALL)
_TRUE_STRINGS = {"1", "true", "yes", "on"}


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _as_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value if item is not None]


def parse_regex_key(key: str) -> Optional[re.Pattern]:
    """
    Compile a ``/pattern/flags`` key.

    Returns None for literal keys. Raises re.error when the pattern is malformed.
    """
    match = _REGEX_KEY.match(key.strip())
    if not match:
        return None
    pattern, flag_chars = match.groups()
    flags = 0
    if "i" in flag_chars:
        flags |= re.IGNORECASE
    if "m" in flag_chars:
        flags |= re.MULTILINE
    if "s" in flag_chars:
        flags |= re.DOTALL
    return re.compile(pattern, flags)


def compile_key(key: str, case_sensitive: bool = False, whole_words: bool = False) -> re.Pattern:
    """Build the search pattern for one key."""
    regex = parse_regex_key(key)
    if regex is not None:
        return regex
    escaped = re.escape(key.strip())
    if whole_words:
        # bounded by non-word characters or the string edges
        escaped = r'(?<!\w)' + escaped + r'(?!\w)'
    return re.compile(escaped, 0 if case_sensitive else re.IGNORECASE)


class WorldInfoEntry:
    """
    Individual lorebook entry with keyword matching capabilities.

    Holds no activation state; the engine decides activation per call.
    """

    def __init__(
        self,
        entry_id: Optional[EntryId] = None,
        keys: Optional[Sequence[str]] = None,
        content: str = "",
        secondary_keys: Optional[Sequence[str]] = None,
        comment: str = "",
        constant: bool = False,
        selective: bool = False,
        insertion_order: int = 100,
        enabled: bool = True,
        position: str = "before_char",
        extensions: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize a lorebook entry.

        Args:
            entry_id: Identifier, unique within the owning book
            keys: Primary trigger strings
            content: Text injected when the entry activates
            secondary_keys: Keys evaluated only when ``selective`` is true
            comment: Creator note, never injected
            constant: Activate every turn without scanning
            selective: Require secondary keys per ``extensions.selectiveLogic``
            insertion_order: Lower values are placed first within a bucket
            enabled: Disabled entries are never considered
            position: "before_char" or "after_char"; ``extensions.position`` overrides it
            extensions: Tuning knobs (probability, group, depth, scan_depth, ...)
            extra: Any other card fields to carry along
        """
        data: Dict[str, Any] = {}
        if entry_id is not None:
            data["id"] = entry_id
        data.update({
            "keys": list(keys or []),
            "secondary_keys": list(secondary_keys or []),
            "comment": comment,
            "content": content,
            "constant": constant,
            "selective": selective,
            "insertion_order": insertion_order,
            "enabled": enabled,
            "position": position,
            "extensions": dict(extensions or {}),
        })
        if extra:
            data.update(extra)
        self._data = data
        self._pattern_cache: Dict[Tuple[Tuple[str, ...], bool, bool], List[re.Pattern]] = {}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'WorldInfoEntry':
        """Create an entry from its card dictionary. The dictionary is copied, not validated."""
        if not isinstance(data, Mapping):
            raise TypeError(f"World info entry must be a mapping, got {type(data).__name__}")
        entry = cls.__new__(cls)
        entry._data = copy.deepcopy(dict(data))
        entry._pattern_cache = {}
        return entry

    def to_dict(self, fill_defaults: bool = False) -> Dict[str, Any]:
        """Return the card dictionary; with ``fill_defaults`` every documented field is present."""
        out = copy.deepcopy(self._data)
        if fill_defaults:
            for key, value in ENTRY_DEFAULTS.items():
                out.setdefault(key, copy.deepcopy(value))
            ext = out.get("extensions")
            if not isinstance(ext, dict):
                ext = {}
                out["extensions"] = ext
            for key, value in EXTENSION_DEFAULTS.items():
                ext.setdefault(key, value)
        return out

    def update(self, **changes: Any) -> None:
        """
        Apply field changes in place.

        ``entry_id`` is stored as ``id``; an ``extensions`` mapping is merged into
        the existing bag rather than replacing it.
        """
        for key, value in changes.items():
            if key == "entry_id":
                key = "id"
            if key == "extensions" and isinstance(value, Mapping):
                ext = self._data.get("extensions")
                if not isinstance(ext, dict):
                    ext = {}
                    self._data["extensions"] = ext
                ext.update(value)
                continue
            self._data[key] = value
        self._pattern_cache.clear()

    def _ext(self, key: str) -> Any:
        ext = self._data.get("extensions")
        if isinstance(ext, Mapping) and key in ext:
            return ext[key]
        return EXTENSION_DEFAULTS.get(key)

    # --- Card fields ---

    @property
    def entry_id(self) -> Optional[EntryId]:
        return self._data.get("id")

    @property
    def keys(self) -> List[str]:
        return _string_list(self._data.get("keys"))

    @property
    def secondary_keys(self) -> List[str]:
        return _string_list(self._data.get("secondary_keys"))

    @property
    def primary_keys(self) -> List[str]:
        """Non-blank primary keys."""
        return [k for k in self.keys if k.strip()]

    @property
    def secondary_key_list(self) -> List[str]:
        """Non-blank secondary keys."""
        return [k for k in self.secondary_keys if k.strip()]

    @property
    def content(self) -> str:
        value = self._data.get("content")
        return "" if value is None else str(value)

    @property
    def comment(self) -> str:
        value = self._data.get("comment")
        return "" if value is None else str(value)

    @property
    def constant(self) -> bool:
        return _as_bool(self._data.get("constant"), False)

    @property
    def selective(self) -> bool:
        return _as_bool(self._data.get("selective"), False)

    @property
    def enabled(self) -> bool:
        return _as_bool(self._data.get("enabled"), True)

    @property
    def insertion_order(self) -> int:
        return _as_int(self._data.get("insertion_order"), 100)

    @property
    def extensions(self) -> Dict[str, Any]:
        """A copy of the extensions bag, defaults not applied."""
        ext = self._data.get("extensions")
        return dict(ext) if isinstance(ext, Mapping) else {}

    # --- Extension knobs ---

    @property
    def position(self) -> WorldInfoPosition:
        """Effective bucket: ``extensions.position`` when valid, else the top-level name."""
        ext = self._data.get("extensions")
        if isinstance(ext, Mapping) and ext.get("position") is not None:
            raw = ext.get("position")
            value = _as_int(raw, -1)
            if value in WorldInfoPosition._value2member_map_:
                return WorldInfoPosition(value)
            logger.debug(f"Entry {self.entry_id!r}: unknown extensions.position {raw!r}; using top-level position")
        name = self._data.get("position")
        if isinstance(name, str) and name.strip().lower() in POSITION_NAMES:
            return POSITION_NAMES[name.strip().lower()]
        return WorldInfoPosition.BEFORE_CHAR

    @property
    def depth(self) -> int:
        return max(0, _as_int(self._ext("depth"), 4))

    @property
    def role(self) -> ExtensionRole:
        return ExtensionRole.parse(self._ext("role"))

    @property
    def probability(self) -> float:
        """Activation chance in percent. Raises ValueError for non-numeric values."""
        raw = self._ext("probability")
        if raw is None:
            return 100.0
        if isinstance(raw, bool):
            raise ValueError(f"invalid probability {raw!r}")
        return float(raw)

    @property
    def use_probability(self) -> bool:
        return _as_bool(self._ext("useProbability"), True)

    @property
    def selective_logic(self) -> SelectiveLogic:
        """Raises ValueError for malformed values."""
        raw = self._ext("selectiveLogic")
        return SelectiveLogic.parse(0 if raw is None else raw)

    @property
    def group(self) -> str:
        raw = self._ext("group")
        return "" if raw is None else str(raw).strip()

    @property
    def group_override(self) -> bool:
        return _as_bool(self._ext("group_override"), False)

    @property
    def exclude_recursion(self) -> bool:
        return _as_bool(self._ext("exclude_recursion"), False)

    @property
    def prevent_recursion(self) -> bool:
        return _as_bool(self._ext("prevent_recursion"), False)

    @property
    def vectorized(self) -> bool:
        return _as_bool(self._ext("vectorized"), False)

    @property
    def scan_depth(self) -> Optional[int]:
        """Per-entry scan window override; None inherits the global depth."""
        raw = self._ext("scan_depth")
        if raw is None or isinstance(raw, bool):
            return None
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return None
        return value if value >= 0 else None

    @property
    def case_sensitive(self) -> Optional[bool]:
        raw = self._ext("case_sensitive")
        if raw is None:
            # v2 cards carry it at the entry's top level
            raw = self._data.get("case_sensitive")
        return None if raw is None else _as_bool(raw, False)

    @property
    def match_whole_words(self) -> Optional[bool]:
        raw = self._ext("match_whole_words")
        return None if raw is None else _as_bool(raw, False)

    def effective_case_sensitive(self, default: bool) -> bool:
        value = self.case_sensitive
        return default if value is None else value

    def effective_match_whole_words(self, default: bool) -> bool:
        value = self.match_whole_words
        return default if value is None else value

    # --- Matching ---

    def _patterns_for(self, keys: Sequence[str], case_sensitive: bool, whole_words: bool) -> List[re.Pattern]:
        cache_key = (tuple(keys), case_sensitive, whole_words)
        patterns = self._pattern_cache.get(cache_key)
        if patterns is None:
            patterns = [compile_key(k, case_sensitive, whole_words) for k in keys]
            self._pattern_cache[cache_key] = patterns
        return patterns

    def match_keys(self, keys: Sequence[str], text: str, case_sensitive: bool, whole_words: bool) -> List[bool]:
        """
        Test each key against the text.

        Returns:
            One flag per key, in key order
        """
        if not keys:
            return []
        return [p.search(text) is not None for p in self._patterns_for(keys, case_sensitive, whole_words)]

    def validation_errors(self) -> List[str]:
        """
        Problems that make this entry unmatchable.

        Constant entries never scan, and vectorized entries are decided by the
        similarity subsystem, so neither has its keys or selective settings checked.
        """
        errors: List[str] = []
        if self.constant or self.vectorized:
            return errors

        if not self.primary_keys:
            errors.append("no primary keys on a non-constant entry")

        keys_to_check = list(self.primary_keys)
        if self.selective:
            try:
                self.selective_logic
            except ValueError:
                errors.append(f"malformed selectiveLogic {self._ext('selectiveLogic')!r}")
            keys_to_check.extend(self.secondary_key_list)

        for key in keys_to_check:
            try:
                parse_regex_key(key)
            except re.error as e:
                errors.append(f"invalid regex key {key!r}: {e}")

        if self.use_probability:
            try:
                if not math.isfinite(self.probability):
                    errors.append(f"non-finite probability {self._ext('probability')!r}")
            except (TypeError, ValueError):
                errors.append(f"non-numeric probability {self._ext('probability')!r}")

        raw_depth = self._ext("scan_depth")
        if raw_depth is not None and self.scan_depth is None:
            errors.append(f"invalid scan_depth {raw_depth!r}")

        return errors

    def __eq__(self, other):
        if isinstance(other, WorldInfoEntry):
            return self._data == other._data
        return NotImplemented

    def __repr__(self):
        return f"WorldInfoEntry(id={self.entry_id!r}, keys={self.keys!r}, constant={self.constant})"


class WorldInfoBook:
    """A named, ordered collection of entries. Entry ids are unique within one book."""

    def __init__(
        self,
        name: str = "",
        entries: Optional[Sequence[Union[WorldInfoEntry, Mapping[str, Any]]]] = None,
        description: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        data: Dict[str, Any] = {"name": name}
        if description is not None:
            data["description"] = description
        if extensions is not None:
            data["extensions"] = dict(extensions)
        if extra:
            data.update(extra)
        self._data = data
        self.entries: List[WorldInfoEntry] = [
            e if isinstance(e, WorldInfoEntry) else WorldInfoEntry.from_dict(e)
            for e in (entries or [])
        ]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], name: Optional[str] = None) -> 'WorldInfoBook':
        """Create a book from a card's ``character_book`` dictionary."""
        if not isinstance(data, Mapping):
            raise TypeError(f"World info book must be a mapping, got {type(data).__name__}")
        raw_entries = data.get("entries")
        if raw_entries is None:
            raw_entries = []
        if not isinstance(raw_entries, (list, tuple)):
            raise TypeError("World info book 'entries' must be a list")
        book = cls.__new__(cls)
        book._data = {k: copy.deepcopy(v) for k, v in data.items() if k != "entries"}
        if name is not None and not book._data.get("name"):
            book._data["name"] = name
        book.entries = [WorldInfoEntry.from_dict(e) for e in raw_entries]
        return book

    def to_dict(self, fill_defaults: bool = False) -> Dict[str, Any]:
        out = copy.deepcopy(self._data)
        if fill_defaults:
            out.setdefault("name", "")
            out.setdefault("extensions", {})
        out["entries"] = [e.to_dict(fill_defaults=fill_defaults) for e in self.entries]
        return out

    @property
    def name(self) -> str:
        value = self._data.get("name")
        return "" if value is None else str(value)

    @name.setter
    def name(self, value: str) -> None:
        self._data["name"] = value

    @property
    def description(self) -> Optional[str]:
        return self._data.get("description")

    @property
    def scan_depth(self) -> Optional[int]:
        value = self._data.get("scan_depth")
        return None if value is None else _as_int(value, 0)

    @property
    def token_budget(self) -> Optional[int]:
        value = self._data.get("token_budget")
        return None if value is None else _as_int(value, 0)

    @property
    def recursive_scanning(self) -> bool:
        return _as_bool(self._data.get("recursive_scanning"), False)

    @property
    def extensions(self) -> Dict[str, Any]:
        ext = self._data.get("extensions")
        return dict(ext) if isinstance(ext, Mapping) else {}

    def entry_ids(self) -> List[Optional[EntryId]]:
        return [e.entry_id for e in self.entries]

    def get_entry(self, entry_id: EntryId) -> Optional[WorldInfoEntry]:
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    def next_entry_id(self) -> int:
        """Smallest integer id greater than every integer id in the book."""
        int_ids = [i for i in self.entry_ids() if isinstance(i, int) and not isinstance(i, bool)]
        return max(int_ids) + 1 if int_ids else len(self.entries)

    def __len__(self):
        return len(self.entries)

    def __eq__(self, other):
        if isinstance(other, WorldInfoBook):
            return self._data == other._data and self.entries == other.entries
        return NotImplemented

    def __repr__(self):
        return f"WorldInfoBook(name={self.name!r}, entries={len(self.entries)})"


__all__ = [
    "EntryId",
    "SelectiveLogic",
    "WorldInfoPosition",
    "ExtensionRole",
    "ENTRY_DEFAULTS",
    "EXTENSION_DEFAULTS",
    "parse_regex_key",
    "compile_key",
    "WorldInfoEntry",
    "WorldInfoBook",
]
