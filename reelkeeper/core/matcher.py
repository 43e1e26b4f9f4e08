# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import re
import time
import unicodedata
from typing import Callable, List, Optional
from pypinyin import lazy_pinyin
from rapidfuzz import fuzz
from .cache import TTLCache
from .errors import ProviderError, ProviderUnavailableError, RateLimitedError
from .models import MatchResult, MatchStatus, MediaKind, ProviderCandidate, ScoredCandidate, TitleGuess
from .provider import MetadataProvider

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 0.8
YEAR_BONUS = 0.1
KIND_BONUS = 0.1

CJK_RE = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff]")


def normalize_title(text: str) -> str:
    text = unicodedata.normalize("NFKC", text or "").lower()
    text = text.replace("&", " and ")
    text = re.sub(r"[^\w\s]", " ", text)
    text = text.replace("_", " ")
    return re.sub(r"\s+", " ", text).strip()


def title_similarity(a: str, b: str) -> float:
    """
    Normalised edit-distance similarity in [0, 1]. CJK titles are also
    compared in pinyin and the better of the two is kept.
    """
    na, nb = normalize_title(a), normalize_title(b)
    if not na or not nb:
        return 0.0
    best = fuzz.ratio(na, nb) / 100.0
    if CJK_RE.search(na) or CJK_RE.search(nb):
        pa = " ".join(lazy_pinyin(na))
        pb = " ".join(lazy_pinyin(nb))
        best = max(best, fuzz.ratio(pa, pb) / 100.0)
    return best


class Matcher:
    """
    Resolves a TitleGuess against a MetadataProvider.
    """

    def __init__(self, provider: MetadataProvider,
                 high_confidence: float = 0.85,
                 low_confidence: float = 0.6,
                 ambiguity_margin: float = 0.05,
                 cache: Optional[TTLCache] = None,
                 max_attempts: int = 5,
                 backoff_base: float = 1.0,
                 backoff_max: float = 32.0,
                 fetch_episode_titles: bool = True,
                 sleep: Callable[[float], None] = time.sleep):
        self.provider = provider
        self.high_confidence = high_confidence
        self.low_confidence = low_confidence
        self.ambiguity_margin = ambiguity_margin
        self.cache = cache if cache is not None else TTLCache()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.fetch_episode_titles = fetch_episode_titles
        self._sleep = sleep

    @classmethod
    def from_config(cls, provider: MetadataProvider, config, cache: Optional[TTLCache] = None,
                    sleep: Callable[[float], None] = time.sleep) -> "Matcher":
        return cls(
            provider,
            high_confidence=config.high_confidence,
            low_confidence=config.low_confidence,
            ambiguity_margin=config.ambiguity_margin,
            cache=cache if cache is not None else TTLCache(config.cache_ttl_seconds),
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            sleep=sleep,
        )

    def _call(self, description: str, func: Callable, *args):
        """
        Calls the provider, backing off on rate limits and outages.
        Re-raises the last error once max_attempts calls have failed.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return func(*args)
            except (RateLimitedError, ProviderUnavailableError) as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description}: giving up after {attempt} attempts: {e}")
                    raise
                delay = min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)
                if isinstance(e, RateLimitedError) and e.retry_after:
                    delay = max(delay, e.retry_after)
                logger.warning(f"{description}: {e}. Retrying in {delay:.1f}s ({attempt}/{self.max_attempts})")
                self._sleep(delay)

    def _search(self, title: str, year: Optional[int], kind: MediaKind) -> List[ProviderCandidate]:
        key = ("search", normalize_title(title), year, kind.value)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        results = self._call(f"Search '{title}' ({year})", self.provider.search, title, year, kind)
        self.cache.set(key, results)
        return results

    def score(self, guess: TitleGuess, candidate: ProviderCandidate, kind: MediaKind) -> float:
        similarity = title_similarity(guess.cleaned_name, candidate.title)
        if candidate.original_title:
            similarity = max(similarity, title_similarity(guess.cleaned_name, candidate.original_title))
        value = TITLE_WEIGHT * similarity
        if guess.year is not None and candidate.year == guess.year:
            value += YEAR_BONUS
        if candidate.kind == kind:
            value += KIND_BONUS
        return min(1.0, value)

    def rank(self, guess: TitleGuess, candidates: List[ProviderCandidate], kind: MediaKind) -> List[ScoredCandidate]:
        scored = [ScoredCandidate(candidate=c, score=round(self.score(guess, c, kind), 6)) for c in candidates]
        # Provider order breaks ties
        return sorted(scored, key=lambda s: -s.score)

    def classify(self, ranked: List[ScoredCandidate]) -> MatchResult:
        if not ranked:
            return MatchResult.unmatched("No results from provider")
        best = ranked[0]
        if best.score >= self.high_confidence:
            if len(ranked) > 1 and best.score - ranked[1].score <= self.ambiguity_margin:
                return MatchResult.ambiguous(ranked, reason="Several candidates score alike")
            return MatchResult.matched(best, ranked)
        if best.score >= self.low_confidence:
            return MatchResult.ambiguous(ranked, reason="Best candidate below confidence threshold")
        return MatchResult.unmatched("No candidate scored high enough", ranked=ranked)

    def match(self, guess: TitleGuess) -> MatchResult:
        if not guess.cleaned_name:
            return MatchResult.unmatched("Empty title")

        kind = MediaKind.SHOW if guess.kind == MediaKind.EPISODE else MediaKind.MOVIE
        try:
            candidates = self._search(guess.cleaned_name, guess.year, kind)
            if not candidates and guess.year is not None:
                logger.debug(f"No results for '{guess.cleaned_name}' ({guess.year}), retrying without year")
                candidates = self._search(guess.cleaned_name, None, kind)
        except ProviderError as e:
            return MatchResult.unmatched(f"Provider error: {e}", provider_error=True)

        result = self.classify(self.rank(guess, candidates, kind))
        if result.status == MatchStatus.MATCHED:
            logger.debug(f"Matched '{guess.cleaned_name}' -> {result.candidate.title} ({result.confidence:.2f})")
            if guess.kind == MediaKind.EPISODE and guess.episode is not None and self.fetch_episode_titles:
                result.episode_title = self.episode_title(result.candidate.provider_id, guess.season or 1, guess.episode)
        return result

    def episode_title(self, show_id: str, season: int, episode: int) -> Optional[str]:
        """
        Best-effort episode title. Never fails the match.
        """
        key = ("episode", show_id, season, episode)
        cached = self.cache.get(key)
        if cached is not None:
            return cached or None
        try:
            details = self._call(f"Episode {show_id} S{season:02d}E{episode:02d}",
                                 self.provider.episode_details, show_id, season, episode)
        except ProviderError as e:
            logger.warning(f"Episode details unavailable for {show_id} S{season}E{episode}: {e}")
            return None
        title = details.title if details else ""
        self.cache.set(key, title)
        return title or None
