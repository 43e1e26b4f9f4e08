# Copyright (c) 2025 Trae AI. All rights reserved.

import pytest
from conftest import FakeProvider, movie, show
from reelkeeper.core.errors import ProviderUnavailableError, RateLimitedError
from reelkeeper.core.matcher import Matcher, title_similarity
from reelkeeper.core.models import MatchStatus, MediaKind, TitleGuess


def movie_guess(title, year=None):
    return TitleGuess(raw_name=f"{title}.mkv", cleaned_name=title, kind=MediaKind.MOVIE, year=year)


def episode_guess(title, season=1, episode=1, year=None):
    return TitleGuess(raw_name=f"{title}.mkv", cleaned_name=title, kind=MediaKind.EPISODE,
                      season=season, episode=episode, year=year)


@pytest.fixture
def sleeps():
    return []


def make_matcher(provider, sleeps, **kwargs):
    return Matcher(provider, sleep=sleeps.append, **kwargs)


def test_exact_match_with_year(sleeps):
    provider = FakeProvider({
        ("the matrix", MediaKind.MOVIE): [movie(603, "The Matrix", 1999), movie(604, "The Matrix Reloaded", 2003)],
    })
    result = make_matcher(provider, sleeps).match(movie_guess("The Matrix", 1999))

    assert result.status == MatchStatus.MATCHED
    assert result.candidate.provider_id == "603"
    assert result.confidence == pytest.approx(1.0)


def test_two_equally_plausible_shows_are_ambiguous(sleeps):
    provider = FakeProvider({
        ("show a", MediaKind.SHOW): [show(1, "Show A", 1994), show(2, "Show A", 2020)],
    })
    result = make_matcher(provider, sleeps).match(episode_guess("Show A"))

    assert result.status == MatchStatus.AMBIGUOUS
    assert result.candidate is None
    assert {c.candidate.provider_id for c in result.candidates} == {"1", "2"}


def test_score_between_thresholds_is_ambiguous(sleeps):
    provider = FakeProvider({
        ("matrix", MediaKind.MOVIE): [movie(603, "The Matrix", 1999)],
    })
    result = make_matcher(provider, sleeps).match(movie_guess("Matrix"))

    assert result.status == MatchStatus.AMBIGUOUS
    assert 0.6 <= result.confidence < 0.85


def test_low_score_is_unmatched(sleeps):
    provider = FakeProvider({
        ("zzz", MediaKind.MOVIE): [movie(1, "Completely Different Film", 2001)],
    })
    result = make_matcher(provider, sleeps).match(movie_guess("zzz"))

    assert result.status == MatchStatus.UNMATCHED
    assert not result.provider_error


def test_zero_results_is_unmatched(sleeps):
    result = make_matcher(FakeProvider(), sleeps).match(movie_guess("Nothing Here"))

    assert result.status == MatchStatus.UNMATCHED
    assert result.candidates == []


def test_rate_limited_three_times_then_succeeds(sleeps):
    provider = FakeProvider(
        {("the matrix", MediaKind.MOVIE): [movie(603, "The Matrix", 1999)]},
        errors=[RateLimitedError(), RateLimitedError(), RateLimitedError()],
    )
    matcher = make_matcher(provider, sleeps, max_attempts=5, backoff_base=1.0)

    result = matcher.match(movie_guess("The Matrix", 1999))

    assert result.status == MatchStatus.MATCHED
    assert len(provider.calls) == 4
    assert len(provider.calls) < matcher.max_attempts
    assert sleeps == [1.0, 2.0, 4.0]


def test_retry_after_is_respected_and_backoff_capped(sleeps):
    provider = FakeProvider(
        {("x", MediaKind.MOVIE): [movie(1, "X")]},
        errors=[RateLimitedError(retry_after=10), ProviderUnavailableError("down"), ProviderUnavailableError("down")],
    )
    matcher = make_matcher(provider, sleeps, backoff_base=1.0, backoff_max=3.0)

    matcher.match(movie_guess("X"))

    assert sleeps == [10, 2.0, 3.0]


def test_exhausted_retries_leave_file_unmatched_with_provider_error(sleeps):
    provider = FakeProvider(errors=[ProviderUnavailableError("down")] * 10)
    matcher = make_matcher(provider, sleeps, max_attempts=3)

    result = matcher.match(movie_guess("The Matrix"))

    assert result.status == MatchStatus.UNMATCHED
    assert result.provider_error
    assert "down" in result.reason
    assert len(provider.calls) == 3


def test_responses_are_cached(sleeps):
    provider = FakeProvider({("the matrix", MediaKind.MOVIE): [movie(603, "The Matrix", 1999)]})
    matcher = make_matcher(provider, sleeps)

    matcher.match(movie_guess("The Matrix", 1999))
    matcher.match(movie_guess("the matrix", 1999))

    assert len(provider.calls) == 1


def test_failed_lookups_are_not_cached(sleeps):
    provider = FakeProvider(
        {("the matrix", MediaKind.MOVIE): [movie(603, "The Matrix", 1999)]},
        errors=[ProviderUnavailableError("down")],
    )
    matcher = make_matcher(provider, sleeps, max_attempts=1)

    assert matcher.match(movie_guess("The Matrix", 1999)).provider_error
    assert matcher.match(movie_guess("The Matrix", 1999)).status == MatchStatus.MATCHED


def test_retries_without_year_when_nothing_found(sleeps):
    provider = FakeProvider({("inception", MediaKind.MOVIE): [movie(27205, "Inception", 2010)]})
    result = make_matcher(provider, sleeps).match(movie_guess("Inception", 2011))

    assert [call[1] for call in provider.calls] == [2011, None]
    assert result.status == MatchStatus.MATCHED


def test_episode_title_is_fetched_for_matched_episodes(sleeps):
    provider = FakeProvider(
        {("show a", MediaKind.SHOW): [show(42, "Show A", 2020)]},
        episodes={("42", 1, 2): "The Second One"},
    )
    result = make_matcher(provider, sleeps).match(episode_guess("Show A", season=1, episode=2))

    assert result.status == MatchStatus.MATCHED
    assert result.candidate.provider_id == "42"
    assert result.episode_title == "The Second One"


def test_empty_title_is_unmatched_without_query(sleeps):
    provider = FakeProvider()
    result = make_matcher(provider, sleeps).match(movie_guess(""))

    assert result.status == MatchStatus.UNMATCHED
    assert provider.calls == []


def test_cjk_similarity_uses_pinyin():
    assert title_similarity("权力的游戏", "权利的游戏") == pytest.approx(1.0)
    assert title_similarity("The Matrix", "the matrix!") == pytest.approx(1.0)
