"""
Title normalization for cross-venue event matching.

No hardcoded team aliases: titles are lowercased, stripped of venue
boilerplate, tokenized, and filtered against stopword lists. The remaining
tokens (team names, player names) are what matching compares.

Every function here is pure and deterministic.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

GENERIC_STOPWORDS = frozenset({
    # Separators and common words
    "vs", "v", "versus", "at", "the", "a", "an", "and", "or", "of", "for", "to", "in", "on",
    # Generic event terms
    "game", "match", "live", "today", "tonight", "tomorrow", "now",
    "round", "week", "day", "final", "finals", "semifinal", "quarterfinal",
    "series", "season", "regular", "playoff", "playoffs", "postseason",
    "championship", "tournament", "cup", "bowl",
    # Betting/market terms
    "moneyline", "spread", "total", "over", "under", "prop", "props",
    "winner", "win", "wins", "will", "beat", "beats", "defeat", "defeats",
    "points", "goals", "score", "scores", "line", "odds", "bet", "betting",
    "picks", "pick", "prediction", "predictions",
    # Periods
    "first", "second", "third", "fourth", "half", "quarter", "period",
    "inning", "innings", "set", "sets", "games",
    # Modifiers
    "home", "away", "most", "least", "any", "all", "each", "every",
})

SPORT_KEYWORDS = frozenset({
    "nba", "nfl", "nhl", "mlb", "mls",
    "epl", "laliga", "bundesliga", "seriea", "ligue1", "ucl", "uefa",
    "ncaa", "college", "cfp", "cfb", "cbb",
    "basketball", "football", "hockey", "baseball", "soccer", "futbol",
    "tennis", "golf", "boxing", "mma", "ufc", "wrestling",
    "esports", "esport", "gaming",
    "cs2", "csgo", "dota", "dota2", "valorant", "lol", "overwatch",
    "league", "legends",
    "sports", "sport", "athletic", "athletics",
})

SPORT_SPECIFIC_STOPWORDS: dict[str, frozenset[str]] = {
    "EPL": frozenset({"fc", "sc", "cf", "afc", "united", "city", "club", "town", "wanderers", "rovers", "athletic"}),
    "LALIGA": frozenset({"fc", "cf", "real", "atletico", "deportivo", "club"}),
    "BUNDESLIGA": frozenset({"fc", "sc", "sv", "vfb", "tsg", "rb", "bvb", "borussia"}),
    "SERIEA": frozenset({"fc", "ac", "as", "ss", "us", "inter", "juventus", "roma", "napoli", "milan"}),
    "UCL": frozenset({"fc", "cf", "sc", "ac", "club"}),
    "MLS": frozenset({"fc", "sc", "cf", "united", "city", "real", "inter", "sporting"}),
    "NCAA_FB": frozenset({"state", "university", "college", "tech", "institute", "am"}),
    "NCAA_BB": frozenset({"state", "university", "college", "tech", "institute", "am"}),
}

# Applied in order to the lowercased title
_BOILERPLATE = (
    re.compile(r"\s*\(moneyline\)$"),
    re.compile(r"\s*\(spread\)$"),
    re.compile(r"\s*\(total[^)]*\)$"),
    re.compile(r"\s*\(over/under[^)]*\)$"),
    re.compile(r"\s*-\s*moneyline$"),
    re.compile(r"\s*-\s*spread$"),
    re.compile(r"\s*-\s*total$"),
    re.compile(r"\s*\(\d{1,2}/\d{1,2}(/\d{2,4})?\)$"),
    re.compile(r"\s*-\s*\d{1,2}/\d{1,2}(/\d{2,4})?$"),
    re.compile(r"\s*@\s*\d{1,2}:\d{2}\s*(am|pm|et|pt|ct)?$"),
    re.compile(r"\s*-\s*game\s*\d+$"),
    re.compile(r"\s*\bgame\s*\d+$"),
)
_SEPARATORS = re.compile(r"\s*[@/]\s*")
_PUNCTUATION = re.compile(r"[\W_]+")
_AT_SPLIT = re.compile(r"\s+(?:@|at)\s+", re.IGNORECASE)
_VS_SPLIT = re.compile(r"(.+?)\s+(?:vs\.?|v\.?|versus)\s+(.+)", re.IGNORECASE)


@dataclass(frozen=True)
class NormalizedTitle:
    normalized_title: str
    tokens: tuple[str, ...]


@dataclass(frozen=True)
class OverlapScore:
    overlap: int
    coverage: float  # overlap / min(|A|, |B|)
    jaccard: float  # overlap / |A u B|


def normalize_title(
    raw_title: str,
    sport: str | None = None,
    min_token_length: int = 2,
    remove_sport_keywords: bool = True,
    extra_stopwords: Iterable[str] = (),
) -> NormalizedTitle:
    """
    Normalize a vendor title into a canonical string and token list.

    Hyphens count as separators, so "Celtics-Lakers" yields two tokens.
    Token order follows the title; duplicates are kept once.
    """
    text = (raw_title or "").lower().strip()
    for pattern in _BOILERPLATE:
        text = pattern.sub("", text)
    text = _SEPARATORS.sub(" ", text)
    text = _PUNCTUATION.sub(" ", text)

    extra = {s.lower() for s in extra_stopwords}
    sport_stops = SPORT_SPECIFIC_STOPWORDS.get((sport or "").upper(), frozenset())
    tokens: list[str] = []
    for token in text.split():
        if len(token) < min_token_length:
            continue
        if token in GENERIC_STOPWORDS:
            continue
        if remove_sport_keywords and token in SPORT_KEYWORDS:
            continue
        if token in sport_stops or token in extra:
            continue
        if token not in tokens:
            tokens.append(token)
    return NormalizedTitle(normalized_title=" ".join(tokens), tokens=tuple(tokens))


def score_token_overlap(tokens_a: Iterable[str], tokens_b: Iterable[str]) -> OverlapScore:
    """Set-based overlap, coverage and Jaccard index of two token collections."""
    set_a, set_b = set(tokens_a), set(tokens_b)
    overlap = len(set_a & set_b)
    min_len = min(len(set_a), len(set_b))
    union = len(set_a) + len(set_b) - overlap
    return OverlapScore(
        overlap=overlap,
        coverage=overlap / min_len if min_len else 0.0,
        jaccard=overlap / union if union else 0.0,
    )


def tokens_match(
    tokens_a: Iterable[str],
    tokens_b: Iterable[str],
    min_overlap: int,
    min_coverage: float,
) -> bool:
    score = score_token_overlap(tokens_a, tokens_b)
    return score.overlap >= min_overlap and score.coverage >= min_coverage


def time_bucket(ts: float, tolerance: float) -> int:
    """Bucket index; same units for both arguments."""
    return round(ts / tolerance)


def time_buckets_match(bucket_a: int, bucket_b: int) -> bool:
    """Same or adjacent bucket."""
    return abs(bucket_a - bucket_b) <= 1


def common_tokens(token_sets: Iterable[Iterable[str]]) -> list[str]:
    """Sorted tokens present in a strict majority of the given sets."""
    sets = [set(tokens) for tokens in token_sets]
    if not sets:
        return []
    if len(sets) == 1:
        return sorted(sets[0])
    counts: dict[str, int] = {}
    for tokens in sets:
        for token in tokens:
            counts[token] = counts.get(token, 0) + 1
    threshold = len(sets) / 2
    return sorted(token for token, count in counts.items() if count > threshold)


def tokens_to_slug(tokens: Iterable[str], max_tokens: int = 4) -> str:
    return "_".join(list(tokens)[:max_tokens])


def parse_teams(raw_title: str, sport: str | None = None) -> tuple[str, str]:
    """
    (home, away) from "Away @ Home" / "Away at Home", or "Home vs Away".
    Empty strings when the title has no recognizable separator.
    """
    title = raw_title or ""
    parts = _AT_SPLIT.split(title, maxsplit=1)
    if len(parts) == 2:
        away = normalize_title(parts[0], sport).normalized_title
        home = normalize_title(parts[1], sport).normalized_title
        return home, away
    vs = _VS_SPLIT.match(title)
    if vs:
        home = normalize_title(vs.group(1), sport).normalized_title
        away = normalize_title(vs.group(2), sport).normalized_title
        return home, away
    return "", ""


class Proposition(Enum):
    """What a binary market settles on. Only like propositions hedge each other."""

    MONEYLINE = "moneyline"
    SPREAD = "spread"
    TOTAL = "total"
    PROP = "prop"


_SPREAD_WORDS = re.compile(r"\b(?:spread|handicap|line)\b")
_TOTAL_WORDS = re.compile(r"\b(?:over|under|totals?|o/u)\b")
_PROP_WORDS = re.compile(r"\b(?:prop|player|first|last|most)\b")
# A signed handicap such as "-5.5" or "(+3)", not a date fragment like "01-15"
_SIGNED_LINE = re.compile(r"(?:^|[\s(])([+-]\d{1,3}(?:\.\d+)?)(?![\w.])")
_DECIMAL_LINE = re.compile(r"(?<![\w.])(\d{1,3}\.\d+)(?![\w.])")
_KEYWORD_LINE = re.compile(r"\b(?:over|under|o/u|totals?|spread)\s+(\d{1,3}(?:\.\d+)?)(?![\w.])")
_TICKER_KINDS = (("SPREAD", Proposition.SPREAD), ("TOTAL", Proposition.TOTAL))


def _line_value(text: str, signed: bool) -> float | None:
    match = _SIGNED_LINE.search(text)
    if match:
        value = float(match.group(1))
        return value if signed else abs(value)
    for pattern in (_DECIMAL_LINE, _KEYWORD_LINE):
        match = pattern.search(text)
        if match:
            return float(match.group(1))
    return None


def proposition(title: str, ticker: str = "") -> tuple[Proposition, float | None]:
    """
    (kind, line) for a market. Spreads keep the line's sign, totals its
    magnitude. Titles with no line markers are winner markets.
    """
    text = (title or "").lower()
    upper_ticker = (ticker or "").upper()
    for marker, kind in _TICKER_KINDS:
        if marker in upper_ticker:
            return kind, _line_value(text, kind is Proposition.SPREAD)
    if _SPREAD_WORDS.search(text):
        return Proposition.SPREAD, _line_value(text, True)
    if _TOTAL_WORDS.search(text):
        return Proposition.TOTAL, _line_value(text, False)
    if _PROP_WORDS.search(text):
        return Proposition.PROP, _line_value(text, False)
    if _SIGNED_LINE.search(text):
        return Proposition.SPREAD, _line_value(text, True)
    return Proposition.MONEYLINE, None


def same_proposition(title_a: str, title_b: str, ticker_a: str = "", ticker_b: str = "") -> bool:
    """Both markets settle on the same kind of outcome at the same line."""
    kind_a, line_a = proposition(title_a, ticker_a)
    kind_b, line_b = proposition(title_b, ticker_b)
    if kind_a is not kind_b:
        return False
    if kind_a is Proposition.MONEYLINE:
        return True
    return line_a is not None and line_a == line_b
