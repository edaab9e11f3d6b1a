# world_book_manager.py
# Description: In-memory world book store: scoped books, character attachments, snapshot reads
#
"""
World Book Store
----------------

Holds the world info books the activation engine reads from. Books live in
one of two scopes:

- ``global``: selectable per conversation, also reachable through a card's
  ``extensions.world`` link
- ``character``: attached to one or more characters by name

All edits are copy-on-write under a re-entrant lock: the stored book object is
replaced, never mutated, so a reader holding a snapshot never sees a half-applied
edit. Every read hands out deep copies.
"""

import copy
import threading
from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger

from lorebook_engine.app.core.Character_Chat.card_normalizer import CharacterCard
from lorebook_engine.app.core.Character_Chat.world_info_exceptions import (
    BookConflictError,
    BookNotFoundError,
    DuplicateEntryError,
    EntryNotFoundError,
    InvalidEntry,
)
from lorebook_engine.app.core.Character_Chat.world_info_models import (
    EntryId,
    WorldInfoBook,
    WorldInfoEntry,
)
from lorebook_engine.app.core.config import WorldInfoSettings, load_world_info_config
from lorebook_engine.app.core.Utils.tokenizer import count_tokens


class BookScope(str, Enum):
    GLOBAL = "global"
    CHARACTER = "character"


BookKey = Tuple[BookScope, str]
BookSource = Union[WorldInfoBook, Mapping[str, Any]]
CharacterRef = Union[CharacterCard, str]


def _scope(value: Union[BookScope, str]) -> BookScope:
    return value if isinstance(value, BookScope) else BookScope(str(value).lower())


def _character_name(character: CharacterRef) -> str:
    return character.name if isinstance(character, CharacterCard) else str(character)


def _duplicate_ids(book: WorldInfoBook) -> List[EntryId]:
    seen = set()
    dupes: List[EntryId] = []
    for entry_id in book.entry_ids():
        if entry_id is None:
            continue
        key = (type(entry_id).__name__, entry_id)
        if key in seen:
            dupes.append(entry_id)
        seen.add(key)
    return dupes


def assign_missing_ids(book: WorldInfoBook) -> int:
    """
    Give every id-less entry an id: its list index when free, else the next free integer.

    Returns:
        Number of ids assigned
    """
    taken = {i for i in book.entry_ids() if i is not None}
    assigned = 0
    for index, entry in enumerate(book.entries):
        if entry.entry_id is not None:
            continue
        new_id = index if index not in taken else book.next_entry_id()
        while new_id in taken:
            new_id += 1
        entry.update(entry_id=new_id)
        taken.add(new_id)
        assigned += 1
    return assigned


def collect_vectorized_entries(books: Iterable[WorldInfoBook]) -> List[Tuple[str, WorldInfoEntry]]:
    """
    Enabled, non-constant entries flagged ``vectorized``.

    Keyword scanning skips them; they are handed to the external similarity
    subsystem as (book name, entry) pairs.
    """
    found: List[Tuple[str, WorldInfoEntry]] = []
    for book in books:
        for entry in book.entries:
            if entry.enabled and entry.vectorized and not entry.constant:
                found.append((book.name, entry))
    return found


class _Attachment:
    __slots__ = ("scope", "name", "enabled", "priority", "seq")

    def __init__(self, scope: BookScope, name: str, enabled: bool, priority: int, seq: int):
        self.scope = scope
        self.name = name
        self.enabled = enabled
        self.priority = priority
        self.seq = seq

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "scope": self.scope.value,
            "enabled": self.enabled,
            "priority": self.priority,
        }


class WorldBookStore:
    """
    Thread-safe in-memory holder of world books.

    Books are identified by (scope, name). Entry ids are unique within a book;
    the same id in two books never conflicts.
    """

    def __init__(self, settings: Optional[WorldInfoSettings] = None):
        """
        Initialize an empty store.

        Args:
            settings: World-info settings; loaded from configuration when omitted
        """
        self.settings = settings or load_world_info_config()
        self._lock = threading.RLock()
        self._books: "OrderedDict[BookKey, WorldInfoBook]" = OrderedDict()
        self._attachments: Dict[str, List[_Attachment]] = {}
        self._attach_seq = 0

    # --- Internal helpers ---

    def _require(self, name: str, scope: BookScope) -> WorldInfoBook:
        book = self._books.get((scope, name))
        if book is None:
            raise BookNotFoundError(name, scope.value)
        return book

    def _commit(self, scope: BookScope, book: WorldInfoBook) -> None:
        self._books[(scope, book.name)] = book

    @staticmethod
    def _coerce_book(book: BookSource, name: Optional[str] = None) -> WorldInfoBook:
        if isinstance(book, WorldInfoBook):
            result = copy.deepcopy(book)
            if name:
                result.name = name
            return result
        return WorldInfoBook.from_dict(book, name=name)

    # --- Book operations ---

    def add_book(
        self,
        book: BookSource,
        scope: Union[BookScope, str] = BookScope.GLOBAL,
        replace: bool = False,
        name: Optional[str] = None,
    ) -> WorldInfoBook:
        """
        Store a book.

        Entries without an id get one. Duplicate ids inside the imported book
        are kept as-is and reported; activation uses only the first of them.

        Args:
            book: WorldInfoBook or its dictionary form
            scope: "global" or "character"
            replace: Overwrite an existing book of the same name
            name: Name to use when the book carries none

        Returns:
            A copy of the stored book

        Raises:
            ValueError: if the book has no name
            BookConflictError: if the name is taken and ``replace`` is False
        """
        scope = _scope(scope)
        stored = self._coerce_book(book, name)
        if not stored.name.strip():
            raise ValueError("World book must have a name")

        assigned = assign_missing_ids(stored)
        if assigned:
            logger.debug(f"Assigned {assigned} missing entry id(s) in book '{stored.name}'")
        for dupe in _duplicate_ids(stored):
            InvalidEntry(
                f"Duplicate entry id {dupe!r} in book '{stored.name}'; later entries are ignored",
                entry_id=dupe,
                book=stored.name,
                reasons=["duplicate id"],
            ).log("warning")

        with self._lock:
            if (scope, stored.name) in self._books and not replace:
                raise BookConflictError(stored.name, scope.value)
            self._commit(scope, stored)
        logger.info(f"Stored {scope.value} world book '{stored.name}' with {len(stored)} entries")
        return copy.deepcopy(stored)

    def remove_book(self, name: str, scope: Union[BookScope, str] = BookScope.GLOBAL) -> None:
        """Remove a book and every character attachment pointing at it."""
        scope = _scope(scope)
        with self._lock:
            self._require(name, scope)
            del self._books[(scope, name)]
            for links in self._attachments.values():
                links[:] = [a for a in links if not (a.scope == scope and a.name == name)]
        logger.info(f"Removed {scope.value} world book '{name}'")

    def get_book(self, name: str, scope: Union[BookScope, str] = BookScope.GLOBAL) -> Optional[WorldInfoBook]:
        """Return a deep copy of the named book, or None."""
        scope = _scope(scope)
        with self._lock:
            book = self._books.get((scope, name))
            return copy.deepcopy(book) if book is not None else None

    def list_books(self, scope: Optional[Union[BookScope, str]] = None) -> List[Dict[str, Any]]:
        """Summaries of stored books in insertion order, optionally filtered by scope."""
        wanted = _scope(scope) if scope is not None else None
        with self._lock:
            return [
                {
                    "name": book.name,
                    "scope": book_scope.value,
                    "description": book.description,
                    "entry_count": len(book),
                }
                for (book_scope, _), book in self._books.items()
                if wanted is None or book_scope == wanted
            ]

    # --- Entry operations ---

    def add_entry(
        self,
        book_name: str,
        entry: Union[WorldInfoEntry, Mapping[str, Any]],
        scope: Union[BookScope, str] = BookScope.GLOBAL,
    ) -> WorldInfoEntry:
        """
        Append an entry to a book. A missing id is assigned.

        Raises:
            BookNotFoundError: if the book does not exist
            DuplicateEntryError: if the entry id is already used in the book
        """
        scope = _scope(scope)
        new_entry = copy.deepcopy(entry) if isinstance(entry, WorldInfoEntry) else WorldInfoEntry.from_dict(entry)
        with self._lock:
            book = copy.deepcopy(self._require(book_name, scope))
            if new_entry.entry_id is None:
                new_entry.update(entry_id=book.next_entry_id())
            elif book.get_entry(new_entry.entry_id) is not None:
                raise DuplicateEntryError(book_name, new_entry.entry_id)
            book.entries.append(new_entry)
            self._commit(scope, book)
        logger.debug(f"Added entry {new_entry.entry_id!r} to book '{book_name}'")
        return copy.deepcopy(new_entry)

    def update_entry(
        self,
        book_name: str,
        entry_id: EntryId,
        scope: Union[BookScope, str] = BookScope.GLOBAL,
        **changes: Any,
    ) -> WorldInfoEntry:
        """
        Change fields of one entry. ``extensions`` changes are merged.

        Raises:
            BookNotFoundError, EntryNotFoundError
            DuplicateEntryError: if the change renames the entry onto an existing id
        """
        scope = _scope(scope)
        with self._lock:
            book = copy.deepcopy(self._require(book_name, scope))
            target = book.get_entry(entry_id)
            if target is None:
                raise EntryNotFoundError(book_name, entry_id)
            new_id = changes.get("entry_id", changes.get("id", entry_id))
            if new_id != entry_id and book.get_entry(new_id) is not None:
                raise DuplicateEntryError(book_name, new_id)
            target.update(**changes)
            self._commit(scope, book)
        logger.debug(f"Updated entry {entry_id!r} in book '{book_name}': {sorted(changes)}")
        return copy.deepcopy(target)

    def delete_entry(self, book_name: str, entry_id: EntryId, scope: Union[BookScope, str] = BookScope.GLOBAL) -> None:
        scope = _scope(scope)
        with self._lock:
            book = copy.deepcopy(self._require(book_name, scope))
            target = book.get_entry(entry_id)
            if target is None:
                raise EntryNotFoundError(book_name, entry_id)
            book.entries.remove(target)
            self._commit(scope, book)
        logger.debug(f"Deleted entry {entry_id!r} from book '{book_name}'")

    def toggle_entry_enabled(
        self,
        book_name: str,
        entry_id: EntryId,
        scope: Union[BookScope, str] = BookScope.GLOBAL,
    ) -> bool:
        """Flip an entry's ``enabled`` flag and return the new value."""
        scope = _scope(scope)
        with self._lock:
            book = self._require(book_name, scope)
            target = book.get_entry(entry_id)
            if target is None:
                raise EntryNotFoundError(book_name, entry_id)
            new_state = not target.enabled
            self.update_entry(book_name, entry_id, scope, enabled=new_state)
        return new_state

    # --- Character attachments ---

    def attach_to_character(
        self,
        book_name: str,
        character: CharacterRef,
        scope: Union[BookScope, str] = BookScope.CHARACTER,
        enabled: bool = True,
        priority: int = 0,
    ) -> None:
        """
        Attach a stored book to a character. Re-attaching updates ``enabled`` and ``priority``.

        Args:
            book_name: Name of a stored book
            character: Card or character name
            scope: Scope the book is stored under
            enabled: Whether the attachment is active
            priority: Higher priority books are resolved first
        """
        scope = _scope(scope)
        char_name = _character_name(character)
        with self._lock:
            self._require(book_name, scope)
            links = self._attachments.setdefault(char_name, [])
            for link in links:
                if link.scope == scope and link.name == book_name:
                    link.enabled = bool(enabled)
                    link.priority = int(priority)
                    break
            else:
                self._attach_seq += 1
                links.append(_Attachment(scope, book_name, bool(enabled), int(priority), self._attach_seq))
        logger.info(f"Attached {scope.value} world book '{book_name}' to character '{char_name}'")

    def detach_from_character(
        self,
        book_name: str,
        character: CharacterRef,
        scope: Union[BookScope, str] = BookScope.CHARACTER,
    ) -> bool:
        """Returns True if an attachment was removed."""
        scope = _scope(scope)
        char_name = _character_name(character)
        with self._lock:
            links = self._attachments.get(char_name, [])
            before = len(links)
            links[:] = [a for a in links if not (a.scope == scope and a.name == book_name)]
            removed = len(links) < before
        if removed:
            logger.info(f"Detached world book '{book_name}' from character '{char_name}'")
        return removed

    def get_character_world_books(self, character: CharacterRef, enabled_only: bool = True) -> List[Dict[str, Any]]:
        """Attachments of a character, highest priority first."""
        char_name = _character_name(character)
        with self._lock:
            links = sorted(self._attachments.get(char_name, []), key=lambda a: (-a.priority, a.seq))
            return [a.to_dict() for a in links if a.enabled or not enabled_only]

    # --- Reads used by activation ---

    def resolve_active_books(
        self,
        character: Optional[CharacterRef] = None,
        global_selection: Optional[Sequence[str]] = None,
    ) -> List[WorldInfoBook]:
        """
        Books that apply to one activation call, as deep copies.

        Global books come from ``global_selection`` (in that order; None selects
        every global book). Character books are the character's enabled
        attachments, the card's embedded ``character_book`` and the global book
        named by ``extensions.world``. ``book_order`` decides which group comes
        first. A book reached twice is used once.
        """
        with self._lock:
            global_keys: List[BookKey] = []
            if global_selection is None:
                global_keys = [k for k in self._books if k[0] == BookScope.GLOBAL]
            else:
                for name in global_selection:
                    key = (BookScope.GLOBAL, name)
                    if key in self._books:
                        global_keys.append(key)
                    else:
                        logger.warning(f"Selected global world book '{name}' does not exist; skipping")

            character_books: List[Tuple[Any, WorldInfoBook]] = []
            if character is not None:
                char_name = _character_name(character)
                links = sorted(self._attachments.get(char_name, []), key=lambda a: (-a.priority, a.seq))
                for link in links:
                    if link.enabled and (link.scope, link.name) in self._books:
                        key = (link.scope, link.name)
                        character_books.append((key, self._books[key]))
                if isinstance(character, CharacterCard):
                    if character.character_book is not None:
                        embedded = copy.deepcopy(character.character_book)
                        if not embedded.name:
                            embedded.name = f"{character.name} (embedded)"
                        assign_missing_ids(embedded)
                        character_books.append((("embedded", char_name), embedded))
                    linked = character.linked_world
                    if linked:
                        key = (BookScope.GLOBAL, linked)
                        if key in self._books:
                            character_books.append((key, self._books[key]))
                        else:
                            logger.warning(f"Character '{char_name}' links missing world book '{linked}'")

            global_books = [(k, self._books[k]) for k in global_keys]
            if self.settings.book_order == "character_first":
                ordered = character_books + global_books
            else:
                ordered = global_books + character_books

            seen = set()
            result: List[WorldInfoBook] = []
            for key, book in ordered:
                if key in seen:
                    continue
                seen.add(key)
                result.append(copy.deepcopy(book))
        logger.debug(f"Resolved {len(result)} active world book(s): {[b.name for b in result]}")
        return result

    def snapshot(self) -> Dict[str, List[WorldInfoBook]]:
        """Deep copies of every stored book, grouped by scope value."""
        with self._lock:
            out: Dict[str, List[WorldInfoBook]] = {s.value: [] for s in BookScope}
            for (scope, _), book in self._books.items():
                out[scope.value].append(copy.deepcopy(book))
            return out

    # --- Import / export ---

    def export_world_book(self, name: str, scope: Union[BookScope, str] = BookScope.GLOBAL) -> Dict[str, Any]:
        """Export a book in its card dictionary form."""
        scope = _scope(scope)
        with self._lock:
            return self._require(name, scope).to_dict()

    def import_world_book(
        self,
        data: Mapping[str, Any],
        scope: Union[BookScope, str] = BookScope.GLOBAL,
        merge_on_conflict: bool = False,
    ) -> str:
        """
        Import a book from its dictionary form.

        Accepts the flat card shape and the nested ``{"world_book": {...}, "entries": [...]}`` shape.

        Args:
            data: Book dictionary
            scope: Target scope
            merge_on_conflict: Append entries to an existing book of the same name,
                renumbering ids that collide

        Returns:
            Name of the imported (or merged) book

        Raises:
            ValueError: if the book has no name
            BookConflictError: if the name is taken and merging is off
        """
        scope = _scope(scope)
        if isinstance(data.get("world_book"), Mapping):
            book_data = dict(data["world_book"])
            book_data["entries"] = data.get("entries", [])
        else:
            book_data = dict(data)
        incoming = WorldInfoBook.from_dict(book_data)
        if not incoming.name.strip():
            raise ValueError("World book must have a name")

        with self._lock:
            existing = self._books.get((scope, incoming.name))
            if existing is None:
                self.add_book(incoming, scope)
                return incoming.name
            if not merge_on_conflict:
                raise BookConflictError(incoming.name, scope.value)

            merged = copy.deepcopy(existing)
            for entry in incoming.entries:
                if entry.entry_id is None or merged.get_entry(entry.entry_id) is not None:
                    entry.update(entry_id=merged.next_entry_id())
                merged.entries.append(entry)
            self._commit(scope, merged)
        logger.info(f"Merged {len(incoming)} entries into world book '{incoming.name}'")
        return incoming.name

    def get_statistics(self, name: Optional[str] = None, scope: Union[BookScope, str] = BookScope.GLOBAL) -> Dict[str, Any]:
        """
        Book statistics.

        With ``name``: entry counts, keyword count, average insertion order and
        estimated tokens of one book. Without: store-wide totals.
        """
        scope = _scope(scope)
        with self._lock:
            if name is not None:
                book = self._require(name, scope)
                entries = book.entries
                return {
                    "total_entries": len(entries),
                    "enabled_entries": sum(1 for e in entries if e.enabled),
                    "constant_entries": sum(1 for e in entries if e.constant),
                    "vectorized_entries": sum(1 for e in entries if e.vectorized),
                    "total_keywords": sum(len(e.primary_keys) + len(e.secondary_key_list) for e in entries),
                    "avg_insertion_order": (
                        sum(e.insertion_order for e in entries) / len(entries) if entries else 0.0
                    ),
                    "estimated_tokens": sum(count_tokens(e.content) for e in entries),
                }

            total_books = len(self._books)
            total_entries = sum(len(b) for b in self._books.values())
            return {
                "total_world_books": total_books,
                "global_world_books": sum(1 for k in self._books if k[0] == BookScope.GLOBAL),
                "character_world_books": sum(1 for k in self._books if k[0] == BookScope.CHARACTER),
                "total_entries": total_entries,
                "total_character_attachments": sum(1 for links in self._attachments.values() if links),
                "average_entries_per_world_book": total_entries / total_books if total_books else 0,
            }


__all__ = [
    "BookScope",
    "WorldBookStore",
    "assign_missing_ids",
    "collect_vectorized_entries",
]
