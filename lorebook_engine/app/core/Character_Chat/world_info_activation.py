# world_info_activation.py
# Description: Decide which world info entries activate for a conversation turn
#
"""
World Info Activation
---------------------

Per turn, the engine walks the active books and produces an ``ActivationPlan``:

1. constant entries activate (round 0)
2. primary scan of every other enabled, non-vectorized entry against its own
   scan window (round 1), with the selective filter on secondary keys
3. recursive rounds: content of scan-activated entries is appended to a buffer
   and re-scanned for entries not yet active, up to ``recursion_limit`` rounds
4. probability gate (constants exempt)
5. group resolution: one winner per group unless override members exist
6. ordering by position bucket, insertion order, id, then book order
7. first-fit budget trim

Bad entries are neutralized and reported on the plan; nothing here raises for
entry-level problems.
"""

import random
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field

from lorebook_engine.app.core.Character_Chat.card_normalizer import CharacterCard
from lorebook_engine.app.core.Character_Chat.scan_window import ScanWindowCache, Turn
from lorebook_engine.app.core.Character_Chat.world_book_manager import (
    WorldBookStore,
    collect_vectorized_entries,
)
from lorebook_engine.app.core.Character_Chat.world_info_exceptions import (
    InvalidEntry,
    RecursionLimitReached,
)
from lorebook_engine.app.core.Character_Chat.world_info_models import (
    EntryId,
    ExtensionRole,
    SelectiveLogic,
    WorldInfoBook,
    WorldInfoEntry,
    WorldInfoPosition,
)
from lorebook_engine.app.core.config import WorldInfoSettings, load_world_info_config
from lorebook_engine.app.core.Logging.log_context import log_context, new_activation_id
from lorebook_engine.app.core.Utils.tokenizer import count_tokens

EntrySource = Union[WorldBookStore, WorldInfoBook, Sequence[WorldInfoBook]]

# Marks "argument not given" where None already means "unlimited"
_DEFAULT: Any = object()

CONSTANT_ROUND = 0
PRIMARY_ROUND = 1


#######################################################################################################################
#
# Plan types

class EntryRef(BaseModel):
    book: str
    entry_id: Optional[EntryId] = None


class PlanWarning(BaseModel):
    kind: str
    message: str
    book: Optional[str] = None
    entry_id: Optional[EntryId] = None
    reasons: List[str] = Field(default_factory=list)


class PlannedEntry(BaseModel):
    """One activated entry, in placement order."""
    entry_id: Optional[EntryId] = None
    book: str
    position: WorldInfoPosition
    depth: Optional[int] = None
    role: Optional[ExtensionRole] = None
    content: str
    insertion_order: int
    activation_round: int
    tokens: int = 0


class ActivationPlan(BaseModel):
    entries: List[PlannedEntry] = Field(default_factory=list)
    budget: Optional[int] = None
    tokens_used: int = 0
    rounds_run: int = 0
    recursion_limit_reached: bool = False
    trimmed_entry_ids: List[EntryRef] = Field(default_factory=list)
    vectorized_entries: List[EntryRef] = Field(default_factory=list)
    warnings: List[PlanWarning] = Field(default_factory=list)

    def entry_ids(self) -> List[Optional[EntryId]]:
        return [e.entry_id for e in self.entries]

    def by_position(self) -> Dict[WorldInfoPosition, List[PlannedEntry]]:
        """Planned entries grouped by bucket, buckets in emission order."""
        grouped: Dict[WorldInfoPosition, List[PlannedEntry]] = {}
        for entry in self.entries:
            grouped.setdefault(entry.position, []).append(entry)
        return grouped

    def content_for(self, position: Union[WorldInfoPosition, int], separator: str = "\n") -> str:
        """Joined content of one bucket, for callers that want the flat text."""
        bucket = WorldInfoPosition(position)
        return separator.join(e.content for e in self.entries if e.position == bucket)


#######################################################################################################################
#
# Engine internals

class _Candidate:
    """An entry plus where it came from and when it activated."""
    __slots__ = ("book_index", "entry_index", "book_name", "entry", "activation_round")

    def __init__(self, book_index: int, entry_index: int, book_name: str, entry: WorldInfoEntry):
        self.book_index = book_index
        self.entry_index = entry_index
        self.book_name = book_name
        self.entry = entry
        self.activation_round: Optional[int] = None

    @property
    def ref(self) -> EntryRef:
        return EntryRef(book=self.book_name, entry_id=self.entry.entry_id)

    def id_sort_key(self) -> Tuple[int, Any]:
        entry_id = self.entry.entry_id
        if isinstance(entry_id, int) and not isinstance(entry_id, bool):
            return (0, entry_id)
        return (1, "" if entry_id is None else str(entry_id))

    def priority_key(self) -> Tuple[int, Tuple[int, Any], int, int]:
        return (self.entry.insertion_order, self.id_sort_key(), self.book_index, self.entry_index)

    def placement_key(self) -> Tuple[int, int, Tuple[int, Any], int, int]:
        return (int(self.entry.position),) + self.priority_key()

    def activation_key(self) -> Tuple[int, int, int]:
        return (self.activation_round or 0, self.book_index, self.entry_index)


def _resolve_books(
    entry_store: EntrySource,
    character: Optional[Union[CharacterCard, str]],
    global_selection: Optional[Sequence[str]],
) -> List[WorldInfoBook]:
    if isinstance(entry_store, WorldBookStore):
        return entry_store.resolve_active_books(character, global_selection)
    if isinstance(entry_store, WorldInfoBook):
        return [entry_store]
    return list(entry_store)


class WorldInfoEngine:
    """
    Activation service.

    Holds configuration defaults and the random source; carries no state
    between calls, so one engine can serve independent conversations.
    """

    def __init__(
        self,
        settings: Optional[WorldInfoSettings] = None,
        rng: Optional[Any] = None,
        size_fn: Optional[Callable[[str], int]] = None,
    ):
        """
        Args:
            settings: Defaults for depth, recursion, budget and matching; loaded from config when omitted
            rng: Object with ``random() -> float in [0, 1)``; a fresh ``random.Random`` when omitted
            size_fn: Content size measure for the budget; the configured token estimator when omitted
        """
        self.settings = settings or load_world_info_config()
        self.rng = rng if rng is not None else random.Random()
        self.size_fn = size_fn or count_tokens

    def activate(
        self,
        transcript: Sequence[Turn],
        entry_store: EntrySource,
        budget: Optional[int] = _DEFAULT,
        global_scan_depth: Optional[int] = None,
        recursion_limit: Optional[int] = None,
        *,
        character: Optional[Union[CharacterCard, str]] = None,
        global_selection: Optional[Sequence[str]] = None,
        rng: Optional[Any] = None,
        conversation_id: Optional[str] = None,
    ) -> ActivationPlan:
        """
        Compute the activation plan for the turn that follows ``transcript``.

        Args:
            transcript: Prior turns, oldest first
            entry_store: A WorldBookStore, a single book, or a list of books
            budget: Size cap on injected content; None for unlimited, omitted for the configured value
            global_scan_depth: Turns scanned by entries without their own scan_depth
            recursion_limit: Recursive rounds after the primary scan; 0 disables recursion
            character: Card or name used to resolve character books from a store
            global_selection: Global book names for this conversation (store only)
            rng: Random source for this call only
            conversation_id: Attached to log records

        Returns:
            ActivationPlan
        """
        budget = self.settings.token_budget if budget is _DEFAULT else budget
        depth = self.settings.scan_depth if global_scan_depth is None else global_scan_depth
        limit = self.settings.recursion_limit if recursion_limit is None else max(0, recursion_limit)
        source = rng if rng is not None else self.rng

        with log_context(activation_id=new_activation_id(), conversation_id=conversation_id) as log:
            books = _resolve_books(entry_store, character, global_selection)
            plan = _run_activation(
                transcript=transcript,
                books=books,
                budget=budget,
                global_scan_depth=depth,
                recursion_limit=limit,
                rng=source,
                case_sensitive=self.settings.case_sensitive,
                match_whole_words=self.settings.match_whole_words,
                size_fn=self.size_fn,
            )
            log.info(
                f"World info activation: {len(plan.entries)} entries planned from {len(books)} book(s), "
                f"{plan.tokens_used}/{plan.budget if plan.budget is not None else 'unlimited'} tokens, "
                f"{plan.rounds_run} scan round(s), {len(plan.warnings)} warning(s)"
            )
            return plan


def activate(
    transcript: Sequence[Turn],
    entry_store: EntrySource,
    budget: Optional[int],
    global_scan_depth: int,
    recursion_limit: int,
    *,
    rng: Optional[Any] = None,
    character: Optional[Union[CharacterCard, str]] = None,
    global_selection: Optional[Sequence[str]] = None,
    case_sensitive: Optional[bool] = None,
    match_whole_words: Optional[bool] = None,
    size_fn: Optional[Callable[[str], int]] = None,
) -> ActivationPlan:
    """
    Functional entry point with every engine knob explicit.

    Matching defaults not given here come from configuration.
    """
    settings = load_world_info_config()
    with log_context(activation_id=new_activation_id()):
        books = _resolve_books(entry_store, character, global_selection)
        return _run_activation(
            transcript=transcript,
            books=books,
            budget=budget,
            global_scan_depth=global_scan_depth,
            recursion_limit=max(0, recursion_limit),
            rng=rng if rng is not None else random.Random(),
            case_sensitive=settings.case_sensitive if case_sensitive is None else case_sensitive,
            match_whole_words=settings.match_whole_words if match_whole_words is None else match_whole_words,
            size_fn=size_fn or count_tokens,
        )


#######################################################################################################################
#
# Passes

def _collect_candidates(books: Sequence[WorldInfoBook], plan: ActivationPlan) -> List[_Candidate]:
    """Enabled, valid entries of every book. Invalid ones are reported and dropped."""
    candidates: List[_Candidate] = []
    for book_index, book in enumerate(books):
        seen_ids = set()
        for entry_index, entry in enumerate(book.entries):
            if not entry.enabled:
                continue
            reasons = entry.validation_errors()
            entry_id = entry.entry_id
            if entry_id is not None:
                id_key = (type(entry_id).__name__, entry_id)
                if id_key in seen_ids:
                    reasons.append(f"duplicate id {entry_id!r} in book")
                seen_ids.add(id_key)
            if reasons:
                err = InvalidEntry(
                    f"Entry {entry_id!r} in book '{book.name}' cannot activate: {'; '.join(reasons)}",
                    entry_id=entry_id,
                    book=book.name,
                    reasons=reasons,
                )
                err.log("warning")
                plan.warnings.append(PlanWarning(
                    kind="invalid_entry",
                    message=err.message,
                    book=book.name,
                    entry_id=entry_id,
                    reasons=reasons,
                ))
                continue
            candidates.append(_Candidate(book_index, entry_index, book.name, entry))
    return candidates


def _selective_passes(entry: WorldInfoEntry, text: str, case_sensitive: bool, whole_words: bool) -> bool:
    secondary = entry.secondary_key_list
    if not secondary:
        return True
    hits = entry.match_keys(secondary, text, case_sensitive, whole_words)
    logic = entry.selective_logic
    if logic == SelectiveLogic.AND_ANY:
        return any(hits)
    if logic == SelectiveLogic.AND_ALL:
        return all(hits)
    if logic == SelectiveLogic.NOT_ANY:
        return not any(hits)
    return not all(hits)


def _entry_matches(entry: WorldInfoEntry, text: str, case_default: bool, whole_default: bool) -> bool:
    if not text:
        return False
    case_sensitive = entry.effective_case_sensitive(case_default)
    whole_words = entry.effective_match_whole_words(whole_default)
    if not any(entry.match_keys(entry.primary_keys, text, case_sensitive, whole_words)):
        return False
    if entry.selective:
        return _selective_passes(entry, text, case_sensitive, whole_words)
    return True


def _scan_round(
    pending: List[_Candidate],
    windows: ScanWindowCache,
    buffer: str,
    round_number: int,
    case_sensitive: bool,
    match_whole_words: bool,
) -> List[_Candidate]:
    activated: List[_Candidate] = []
    for cand in pending:
        text = windows.window_for(cand.entry.scan_depth)
        if buffer:
            text = f"{text}\n{buffer}" if text else buffer
        if _entry_matches(cand.entry, text, case_sensitive, match_whole_words):
            cand.activation_round = round_number
            activated.append(cand)
            logger.debug(f"Entry {cand.entry.entry_id!r} ('{cand.book_name}') activated in round {round_number}")
    return activated


def _pending_for_recursion(scannable: Sequence[_Candidate], activated: Sequence[_Candidate]) -> List[_Candidate]:
    active_ids = {id(c) for c in activated}
    return [c for c in scannable if id(c) not in active_ids and not c.entry.prevent_recursion]


def _recursion_contributions(activated: Sequence[_Candidate]) -> List[str]:
    return [c.entry.content for c in activated if not c.entry.exclude_recursion and c.entry.content]


def _probability_gate(activated: List[_Candidate], rng: Any) -> List[_Candidate]:
    kept: List[_Candidate] = []
    for cand in sorted(activated, key=_Candidate.activation_key):
        entry = cand.entry
        if entry.constant or not entry.use_probability:
            kept.append(cand)
            continue
        draw = rng.random() * 100
        if draw >= entry.probability:
            logger.debug(
                f"Entry {entry.entry_id!r} ('{cand.book_name}') dropped by probability "
                f"(draw {draw:.2f} >= {entry.probability})"
            )
            continue
        kept.append(cand)
    return kept


def _resolve_groups(activated: List[_Candidate]) -> List[_Candidate]:
    groups: Dict[str, List[_Candidate]] = {}
    for cand in activated:
        if cand.entry.group:
            groups.setdefault(cand.entry.group, []).append(cand)

    losers = set()
    for name, members in groups.items():
        if len(members) < 2:
            continue
        overrides = [m for m in members if m.entry.group_override]
        # Every override member survives; the priority tie-break only picks a single winner
        if overrides:
            winners = overrides
        else:
            winners = [min(members, key=_Candidate.priority_key)]
        winner_ids = {id(w) for w in winners}
        for member in members:
            if id(member) not in winner_ids:
                losers.add(id(member))
        logger.debug(
            f"Group '{name}': kept {[w.entry.entry_id for w in winners]} of {[m.entry.entry_id for m in members]}"
        )
    return [c for c in activated if id(c) not in losers]


def _to_planned(cand: _Candidate, tokens: int) -> PlannedEntry:
    entry = cand.entry
    at_depth = entry.position == WorldInfoPosition.AT_DEPTH
    return PlannedEntry(
        entry_id=entry.entry_id,
        book=cand.book_name,
        position=entry.position,
        depth=entry.depth if at_depth else None,
        role=entry.role if at_depth else None,
        content=entry.content,
        insertion_order=entry.insertion_order,
        activation_round=cand.activation_round or 0,
        tokens=tokens,
    )


def _run_activation(
    transcript: Sequence[Turn],
    books: Sequence[WorldInfoBook],
    budget: Optional[int],
    global_scan_depth: int,
    recursion_limit: int,
    rng: Any,
    case_sensitive: bool,
    match_whole_words: bool,
    size_fn: Callable[[str], int],
) -> ActivationPlan:
    plan = ActivationPlan(budget=budget)
    candidates = _collect_candidates(books, plan)
    plan.vectorized_entries = [
        EntryRef(book=name, entry_id=entry.entry_id) for name, entry in collect_vectorized_entries(books)
    ]

    # Round 0: constants, including vectorized ones
    activated: List[_Candidate] = []
    for cand in candidates:
        if cand.entry.constant:
            cand.activation_round = CONSTANT_ROUND
            activated.append(cand)

    # Round 1: primary scan
    windows = ScanWindowCache(transcript, global_scan_depth)
    scannable = [c for c in candidates if not c.entry.constant and not c.entry.vectorized]
    found = _scan_round(scannable, windows, "", PRIMARY_ROUND, case_sensitive, match_whole_words)
    activated.extend(found)
    plan.rounds_run = PRIMARY_ROUND

    # Recursive rounds
    buffer_parts: List[str] = []
    contributions = _recursion_contributions(found)
    recursive_rounds = 0
    while contributions and recursive_rounds < recursion_limit:
        pending = _pending_for_recursion(scannable, activated)
        if not pending:
            contributions = []
            break
        recursive_rounds += 1
        buffer_parts.extend(contributions)
        found = _scan_round(
            pending, windows, "\n".join(buffer_parts), PRIMARY_ROUND + recursive_rounds,
            case_sensitive, match_whole_words,
        )
        activated.extend(found)
        plan.rounds_run = PRIMARY_ROUND + recursive_rounds
        contributions = _recursion_contributions(found)

    if contributions and recursion_limit > 0 and _pending_for_recursion(scannable, activated):
        notice = RecursionLimitReached(recursion_limit, plan.rounds_run)
        plan.recursion_limit_reached = True
        plan.warnings.append(PlanWarning(kind="recursion_limit", message=str(notice)))
        logger.info(str(notice))

    activated = _probability_gate(activated, rng)
    activated = _resolve_groups(activated)
    activated.sort(key=_Candidate.placement_key)

    # First-fit budget trim in placement order
    used = 0
    for index, cand in enumerate(activated):
        size = size_fn(cand.entry.content)
        if budget is not None and used + size > budget:
            plan.trimmed_entry_ids = [c.ref for c in activated[index:]]
            logger.debug(f"Budget {budget} reached at {used} tokens; trimmed {len(plan.trimmed_entry_ids)} entries")
            break
        used += size
        plan.entries.append(_to_planned(cand, size))
    plan.tokens_used = used
    return plan


__all__ = [
    "ActivationPlan",
    "EntryRef",
    "PlanWarning",
    "PlannedEntry",
    "WorldInfoEngine",
    "activate",
]
