"""Identity matching between incoming game records and the local catalog.

Matching is two-tiered.  An owned-library app id is authoritative: when an
incoming record carries one and a catalog game has the same id, that game is
the match regardless of title (confidence ``None``).  Otherwise titles are
normalized and scored:

* equal normalized titles score 100;
* everything else scores ``(1 - distance / max_len) * 100`` rounded half up, using
  the Levenshtein edit distance, plus a +10 bonus (capped at 100) when both
  release years are known and equal.

Only the single best candidate is considered and it must reach the acceptance
threshold (60 by default).  Merging records into the catalog additionally
requires :func:`titles_match`, a stricter number/substring/word-overlap test,
because a wrong merge is worse than a duplicate entry.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from rapidfuzz.distance import Levenshtein

from config import MATCH_CONFIDENCE_THRESHOLD
from helpers import coerce_int, extract_release_year, round_half_up

DEFAULT_THRESHOLD = MATCH_CONFIDENCE_THRESHOLD
YEAR_BONUS = 10

_POSSESSIVE_RE = re.compile(r"(\w)['’]s\b")
_APOSTROPHE_RE = re.compile(r"['’`]")
_TRADEMARK_RE = re.compile(r"[®™©]")
_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_NUMBER_RE = re.compile(r"\d+")


def _strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_title(title: Any) -> str:
    """Lowercase ``title`` and drop diacritics, possessives and punctuation."""

    if title is None:
        return ""
    # NFKD would expand "™" into "TM", so trademarks go first.
    text = _TRADEMARK_RE.sub("", str(title))
    text = _strip_diacritics(text).lower()
    text = _POSSESSIVE_RE.sub(r"\1", text)
    text = _APOSTROPHE_RE.sub("", text)
    text = _PUNCTUATION_RE.sub(" ", text)
    return " ".join(text.split())


def similarity(left: Any, right: Any) -> int:
    """Return the 0-100 similarity of two titles after normalization."""

    a = normalize_title(left)
    b = normalize_title(right)
    if a == b:
        return 100 if a else 0
    longest = max(len(a), len(b))
    distance = Levenshtein.distance(a, b)
    return round_half_up((1 - distance / longest) * 100)


def score_candidate(
    title: Any,
    candidate_title: Any,
    *,
    release_year: int | None = None,
    candidate_year: int | None = None,
) -> int:
    score = similarity(title, candidate_title)
    if release_year is not None and candidate_year is not None and release_year == candidate_year:
        score = min(score + YEAR_BONUS, 100)
    return score


def _word_set(normalized: str) -> set[str]:
    return {word for word in normalized.split(" ") if len(word) > 2 or word.isdigit()}


def titles_match(left: Any, right: Any) -> bool:
    """Strict same-product test used before merging two records.

    Sequels and yearly releases must share a number ("Madden NFL 24" never
    matches "Madden NFL 26"), containment only counts when the shorter title
    is at least 40% of the longer one, and otherwise at least 60% of the
    significant words must overlap.
    """

    a = normalize_title(left)
    b = normalize_title(right)
    if not a or not b:
        return False
    if a == b:
        return True

    numbers_a = set(_NUMBER_RE.findall(a))
    numbers_b = set(_NUMBER_RE.findall(b))
    if numbers_a and numbers_b and not numbers_a & numbers_b:
        return False

    if a in b or b in a:
        shorter, longer = sorted((a, b), key=len)
        if len(shorter) / len(longer) >= 0.4:
            return True

    words_a = _word_set(a)
    words_b = _word_set(b)
    if not words_a or not words_b:
        return False
    overlap = len(words_a & words_b) / max(len(words_a), len(words_b))
    return overlap >= 0.6


@dataclass(frozen=True)
class MatchResult:
    game: dict[str, Any]
    confidence: int | None

    @property
    def authoritative(self) -> bool:
        return self.confidence is None

    def to_dict(self) -> dict[str, Any]:
        return {"gameId": self.game.get("id"), "confidence": self.confidence}


class IdentityMatcher:
    """Resolve ``(title, external id)`` pairs against known catalog games.

    ``games`` are mappings with ``id``, ``title`` and optionally
    ``steam_app_id`` and ``release_date``/``release_year``.
    """

    def __init__(
        self,
        games: Iterable[Mapping[str, Any]] = (),
        *,
        threshold: int = DEFAULT_THRESHOLD,
    ) -> None:
        self.threshold = int(threshold)
        self._games: list[dict[str, Any]] = []
        self._by_id: dict[int, dict[str, Any]] = {}
        self._by_external_id: dict[int, dict[str, Any]] = {}
        self._by_normalized: dict[str, dict[str, Any]] = {}
        for game in games:
            self.add(game)

    def __len__(self) -> int:
        return len(self._games)

    def add(self, game: Mapping[str, Any]) -> None:
        """Index ``game`` so later lookups in the same batch can find it."""

        entry = dict(game)
        entry["_normalized"] = normalize_title(entry.get("title"))
        if entry.get("release_year") is None:
            entry["release_year"] = extract_release_year(entry.get("release_date"))
        self._games.append(entry)
        game_id = coerce_int(entry.get("id"))
        if game_id is not None:
            self._by_id[game_id] = entry
        external_id = coerce_int(entry.get("steam_app_id"))
        if external_id is not None:
            self._by_external_id.setdefault(external_id, entry)
        if entry["_normalized"]:
            self._by_normalized.setdefault(entry["_normalized"], entry)

    def assign_external_id(self, game_id: Any, external_id: Any) -> None:
        """Record that ``game_id`` now carries ``external_id``.

        Later title matches against that game then see the conflicting id, and
        lookups by ``external_id`` resolve to it authoritatively.
        """

        entry = self._by_id.get(coerce_int(game_id))
        key = coerce_int(external_id)
        if entry is None or key is None:
            return
        entry["steam_app_id"] = key
        self._by_external_id.setdefault(key, entry)

    @staticmethod
    def _public(entry: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in entry.items() if not key.startswith("_")}

    def match_external_id(self, external_id: Any) -> MatchResult | None:
        key = coerce_int(external_id)
        if key is None:
            return None
        entry = self._by_external_id.get(key)
        if entry is None:
            return None
        return MatchResult(self._public(entry), None)

    def best_candidate(
        self, title: Any, *, release_year: int | None = None
    ) -> tuple[dict[str, Any], int] | None:
        """Return the highest-scoring game and its score, ignoring the threshold."""

        normalized = normalize_title(title)
        if not normalized:
            return None
        exact = self._by_normalized.get(normalized)
        if exact is not None:
            return exact, 100

        best: tuple[dict[str, Any], int] | None = None
        for entry in self._games:
            if not entry["_normalized"]:
                continue
            score = score_candidate(
                normalized,
                entry["_normalized"],
                release_year=release_year,
                candidate_year=entry.get("release_year"),
            )
            if best is None or score > best[1]:
                best = (entry, score)
        return best

    def match(
        self,
        title: Any,
        external_id: Any = None,
        *,
        release_year: int | None = None,
    ) -> MatchResult | None:
        by_id = self.match_external_id(external_id)
        if by_id is not None:
            return by_id
        best = self.best_candidate(title, release_year=release_year)
        if best is None or best[1] < self.threshold:
            return None
        return MatchResult(self._public(best[0]), best[1])

    def match_for_merge(
        self,
        title: Any,
        external_id: Any = None,
        *,
        release_year: int | None = None,
    ) -> MatchResult | None:
        """Like :meth:`match`, but title matches must also pass :func:`titles_match`."""

        result = self.match(title, external_id, release_year=release_year)
        if result is None or result.authoritative:
            return result
        if result.confidence == 100 or titles_match(title, result.game.get("title")):
            return result
        return None


__all__ = [
    "DEFAULT_THRESHOLD",
    "IdentityMatcher",
    "MatchResult",
    "YEAR_BONUS",
    "normalize_title",
    "score_candidate",
    "similarity",
    "titles_match",
]
