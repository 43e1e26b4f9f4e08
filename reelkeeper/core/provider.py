# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import time
from typing import Callable, Dict, List, Optional
import requests
from .errors import ConfigurationError, ProviderError, ProviderUnavailableError, RateLimitedError
from .models import MediaKind, ProviderCandidate

logger = logging.getLogger(__name__)


class MetadataProvider:
    """
    Remote catalogue the Matcher queries. Implementations raise
    RateLimitedError / ProviderUnavailableError and never retry themselves.
    A missing or rejected credential is a ConfigurationError.
    """

    def search(self, title: str, year: Optional[int], kind: MediaKind) -> List[ProviderCandidate]:
        raise NotImplementedError

    def episode_details(self, show_id: str, season: int, episode: int) -> Optional[ProviderCandidate]:
        return None


class TMDBProvider(MetadataProvider):
    """
    Searches TMDB for movies and TV shows with rate limit support.
    """

    BASE_URL = "https://api.themoviedb.org/3"

    def __init__(self, api_key: str, language: str = "en-US", timeout: float = 10.0,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        if not api_key:
            raise ConfigurationError("No TMDB API key configured (set tmdb_api_key in the config file)")
        self.api_key = api_key
        self.language = language
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    def _handle_rate_limit(self, response: requests.Response):
        """
        Waits for the window to reset when TMDB reports the quota is nearly exhausted.
        """
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset_time = response.headers.get("X-RateLimit-Reset")

        try:
            if remaining is not None and int(remaining) <= 1 and reset_time:
                wait_time = float(reset_time) - time.time()
                if wait_time > 0:
                    logger.info(f"Rate limit reached. Waiting for {wait_time:.2f} seconds...")
                    self._sleep(wait_time + 0.1)
        except ValueError:
            logger.debug(f"Ignoring malformed rate limit headers: {remaining!r} / {reset_time!r}")

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            return None

    def _get(self, path: str, params: Dict) -> Optional[Dict]:
        """
        One GET against the API. Returns None on 404.
        """
        query = {"api_key": self.api_key, "language": self.language}
        query.update(params)
        url = f"{self.BASE_URL}{path}"
        try:
            response = self.session.get(url, params=query, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailableError(f"Request to {path} failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(f"Rate limited on {path}", retry_after=self._retry_after(response))
        if response.status_code == 404:
            logger.debug(f"404 Not Found for {path}")
            return None
        if response.status_code in (401, 403):
            raise ConfigurationError(f"TMDB rejected the API key ({response.status_code})")
        if response.status_code >= 500:
            raise ProviderUnavailableError(f"TMDB returned {response.status_code} for {path}")
        if response.status_code >= 400:
            raise ProviderError(f"TMDB returned {response.status_code} for {path}")

        self._handle_rate_limit(response)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError(f"Invalid JSON from {path}") from e

    @staticmethod
    def _year(date_val: Optional[str]) -> Optional[int]:
        if date_val and len(date_val) >= 4 and date_val[:4].isdigit():
            return int(date_val[:4])
        return None

    def search(self, title: str, year: Optional[int], kind: MediaKind) -> List[ProviderCandidate]:
        is_movie = kind == MediaKind.MOVIE
        tmdb_type = "movie" if is_movie else "tv"
        params = {"query": title}
        if year:
            params["year" if is_movie else "first_air_date_year"] = year

        logger.debug(f"Searching TMDB {tmdb_type} for '{title}' ({year})")
        data = self._get(f"/search/{tmdb_type}", params)
        if not data:
            return []

        results = []
        for res in data.get("results", []):
            if res.get("id") is None:
                continue
            results.append(ProviderCandidate(
                provider_id=str(res["id"]),
                title=res.get("title" if is_movie else "name") or "",
                kind=MediaKind.MOVIE if is_movie else MediaKind.SHOW,
                year=self._year(res.get("release_date" if is_movie else "first_air_date")),
                original_title=res.get("original_title" if is_movie else "original_name"),
            ))
        return results

    def episode_details(self, show_id: str, season: int, episode: int) -> Optional[ProviderCandidate]:
        data = self._get(f"/tv/{show_id}/season/{season}/episode/{episode}", {})
        if not data or data.get("id") is None:
            return None
        return ProviderCandidate(
            provider_id=str(data["id"]),
            title=data.get("name") or "",
            kind=MediaKind.EPISODE,
            year=self._year(data.get("air_date")),
            parent_id=show_id,
        )
