"""Map generator-produced titles back to the stories and tasks they came from."""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from app.api.schemas.session import StoryMappingEntry
from app.services.duration_rules import DURATION_RULES, DurationRules

logger = logging.getLogger(__name__)

# Fuzzy matching thresholds. A candidate needs at least MIN_TOKEN_MATCHES matching
# tokens and at least TOKEN_MATCH_RATIO of the search title's tokens.
MIN_TOKEN_MATCHES = 2
TOKEN_MATCH_RATIO = 0.5

CONTINUED_SUFFIX = " (continued)"
PART_SUFFIX_RE = re.compile(r"\s*\(part \d+ of \d+\)\s*$", re.IGNORECASE)
CONTINUED_SUFFIX_RE = re.compile(r"\s*\(continued\)\s*$", re.IGNORECASE)
BREAK_WORD_RE = re.compile(r"\bbreak\b", re.IGNORECASE)
AUTO_BLOCK_RE = re.compile(r"^(auto-generated block|story block) \d+$", re.IGNORECASE)


class MatchStrategy(str, Enum):
    MAPPING = "mapping"
    EXACT = "exact"
    PART_BASE = "part_base"
    FUZZY = "fuzzy"
    SENTINEL = "sentinel"


@dataclass(frozen=True)
class ReconciliationMatch:
    title: str
    strategy: MatchStrategy
    original_title: Optional[str] = None
    original_index: Optional[int] = None
    default_duration: int = 0

    @property
    def is_sentinel(self) -> bool:
        return self.strategy is MatchStrategy.SENTINEL


def normalize_title(title: str) -> str:
    return " ".join(title.lower().split())


def strip_part_suffix(title: str) -> str:
    """Drop a trailing "(Part X of Y)" and any "(continued)" marker."""
    stripped = CONTINUED_SUFFIX_RE.sub("", title)
    return PART_SUFFIX_RE.sub("", stripped).strip()


def has_part_suffix(title: str) -> bool:
    return bool(PART_SUFFIX_RE.search(title) or CONTINUED_SUFFIX_RE.search(title))


def is_break_title(title: str) -> bool:
    return bool(BREAK_WORD_RE.search(title))


def is_sentinel_title(title: str) -> bool:
    normalized = normalize_title(title)
    return is_break_title(normalized) or bool(AUTO_BLOCK_RE.match(normalized))


def required_token_matches(search_token_count: int) -> int:
    return max(MIN_TOKEN_MATCHES, math.ceil(search_token_count * TOKEN_MATCH_RATIO))


def token_overlap_score(search_title: str, candidate_title: str) -> int:
    """Count search tokens that occur inside some token of the candidate title."""
    candidate_tokens = normalize_title(candidate_title).split()
    return sum(
        1
        for token in normalize_title(search_title).split()
        if any(token in candidate for candidate in candidate_tokens)
    )


class TitleReconciler:
    """
    Resolve a scheduled title against a fixed list of original titles.

    Strategies run in order: caller mapping, exact, part base title, token overlap,
    then sentinel placeholders. The first hit wins and ties keep input order.
    """

    def __init__(
        self,
        original_titles: Sequence[str],
        mapping: Optional[Iterable[StoryMappingEntry | Tuple[str, str]]] = None,
        rules: DurationRules = DURATION_RULES,
    ) -> None:
        self.original_titles: List[str] = list(original_titles)
        self._normalized = [normalize_title(title) for title in self.original_titles]
        self._rules = rules
        self._mapping: List[Tuple[str, str]] = []
        for entry in mapping or []:
            if isinstance(entry, StoryMappingEntry):
                possible, original = entry.possible_title, entry.original_title
            else:
                possible, original = entry
            self._mapping.append((normalize_title(possible), normalize_title(original)))

    def match(self, title: str) -> Optional[ReconciliationMatch]:
        normalized = normalize_title(title)
        for strategy, finder in (
            (MatchStrategy.MAPPING, self._match_mapping),
            (MatchStrategy.EXACT, self._match_exact),
            (MatchStrategy.PART_BASE, self._match_part_base),
            (MatchStrategy.FUZZY, self._match_fuzzy),
        ):
            index = finder(normalized)
            if index is not None:
                return ReconciliationMatch(
                    title=title,
                    strategy=strategy,
                    original_title=self.original_titles[index],
                    original_index=index,
                )

        if is_sentinel_title(title):
            default = self._rules.short_break if is_break_title(normalized) else 0
            return ReconciliationMatch(title=title, strategy=MatchStrategy.SENTINEL, default_duration=default)

        logger.debug("No original title matched %r", title)
        return None

    def _index_of(self, normalized: str) -> Optional[int]:
        for index, original in enumerate(self._normalized):
            if original == normalized:
                return index
        return None

    def _match_mapping(self, normalized: str) -> Optional[int]:
        for possible, original in self._mapping:
            if possible == normalized:
                index = self._index_of(original)
                if index is not None:
                    return index
        return None

    def _match_exact(self, normalized: str) -> Optional[int]:
        return self._index_of(normalized)

    def _match_part_base(self, normalized: str) -> Optional[int]:
        if not has_part_suffix(normalized):
            return None
        index = self._index_of(CONTINUED_SUFFIX_RE.sub("", normalized).strip())
        if index is not None:
            return index
        base = strip_part_suffix(normalized)
        if not base:
            return None
        index = self._index_of(base)
        if index is not None:
            return index
        for index, original in enumerate(self._normalized):
            if base in original or original in base:
                return index
        return None

    def _match_fuzzy(self, normalized: str) -> Optional[int]:
        token_count = len(normalized.split())
        if token_count == 0:
            return None
        needed = required_token_matches(token_count)
        best_index: Optional[int] = None
        best_score = 0
        for index, original in enumerate(self._normalized):
            score = token_overlap_score(normalized, original)
            if score >= needed and score > best_score:
                best_index, best_score = index, score
        return best_index
