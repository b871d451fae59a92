"""Resolve free-text service and staff names against a tenant's catalog.

The model writes names the way the customer said them ("haircut",
"Маша", "маникюр с покрытием"). Matching goes from strict to loose:
exact id, exact title, substring, then shared words. A single best
candidate wins; several equally good ones become a clarification
question listing them.
"""

import re
from typing import Callable, List, Optional, Sequence, TypeVar

from adminbot.services.booking.base import CatalogService, StaffMember
from adminbot.services.result import ClarificationNeeded

T = TypeVar("T")

MAX_OPTIONS = 5
ANY_STAFF_VALUES = {"", "0", "any", "anyone", "любой", "любого", "не важно", "неважно"}
STOP_WORDS = {"a", "an", "the", "for", "with", "and", "на", "с", "и", "для", "в"}


def normalize_text(value: str) -> str:
    value = (value or "").lower().replace("ё", "е")
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s]", " ", value)).strip()


def _words(value: str) -> set:
    return {word for word in normalize_text(value).split() if word not in STOP_WORDS and len(word) > 1}


def _word_overlap(query_words: set, candidate: str) -> int:
    score = 0
    for candidate_word in _words(candidate):
        for query_word in query_words:
            # Stem-ish match so "стрижку" finds "стрижка" and "haircuts" finds "haircut".
            if candidate_word == query_word or (
                min(len(candidate_word), len(query_word)) >= 4 and candidate_word[:4] == query_word[:4]
            ):
                score += 1
                break
    return score


def match_one(
    query: str,
    items: Sequence[T],
    *,
    get_id: Callable[[T], str],
    get_name: Callable[[T], str],
    what: str,
) -> T:
    """Return the single catalog item matching ``query`` or raise ClarificationNeeded."""
    query = (query or "").strip()
    if not items:
        raise ClarificationNeeded(f"I couldn't load the list of {what}s right now. Which {what} did you mean?", field=what)
    if not query:
        raise ClarificationNeeded(
            f"Which {what} would you like?",
            options=[get_name(item) for item in items[:MAX_OPTIONS]],
            field=what,
        )

    for item in items:
        if get_id(item) == query:
            return item

    normalized = normalize_text(query)
    exact = [item for item in items if normalize_text(get_name(item)) == normalized]
    if len(exact) == 1:
        return exact[0]

    candidates = exact
    if not candidates and normalized:
        for item in items:
            name = normalize_text(get_name(item))
            if name and (normalized in name or name in normalized):
                candidates.append(item)
    if not candidates:
        query_words = _words(query)
        scored = [(item, _word_overlap(query_words, get_name(item))) for item in items] if query_words else []
        best = max((score for _, score in scored), default=0)
        candidates = [item for item, score in scored if score == best and best > 0]

    if len(candidates) == 1:
        return candidates[0]

    if not candidates:
        raise ClarificationNeeded(
            f"I couldn't find the {what} \"{query}\". Which one did you mean?",
            options=[get_name(item) for item in items[:MAX_OPTIONS]],
            field=what,
        )

    raise ClarificationNeeded(
        f"Which {what} exactly did you mean by \"{query}\"?",
        options=[get_name(item) for item in candidates[:MAX_OPTIONS]],
        field=what,
    )


def match_service(query: str, services: List[CatalogService]) -> CatalogService:
    return match_one(query, services, get_id=lambda s: s.id, get_name=lambda s: s.title, what="service")


def is_any_staff(query: Optional[str]) -> bool:
    return normalize_text(query or "") in ANY_STAFF_VALUES


def match_staff(query: Optional[str], staff: List[StaffMember]) -> Optional[StaffMember]:
    """None means any master."""
    if is_any_staff(query):
        return None
    return match_one(query, staff, get_id=lambda s: s.id, get_name=lambda s: s.name, what="master")


def filter_services(query: Optional[str], services: List[CatalogService]) -> List[CatalogService]:
    """Loose filter for listings: category or title match, everything when nothing matches."""
    if not query:
        return list(services)
    normalized = normalize_text(query)
    query_words = _words(query)
    matched = [
        service
        for service in services
        if normalized in normalize_text(service.title)
        or (service.category and normalized in normalize_text(service.category))
        or (query_words and _word_overlap(query_words, f"{service.title} {service.category or ''}") > 0)
    ]
    return matched or list(services)
