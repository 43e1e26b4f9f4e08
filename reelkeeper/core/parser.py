# Copyright (c) 2025 Trae AI. All rights reserved.

import datetime
import re
from pathlib import Path
from typing import List, Optional, Tuple
from .models import MediaKind, TitleGuess

MIN_YEAR = 1880

# Release metadata that never belongs to a title. Matched against the raw
# name (dots not yet replaced) and delimited by non-alphanumerics.
NOISE_PATTERNS = [
    # Resolution
    r"\d{3,4}[pi]",
    r"[48]k",
    r"uhd",
    # Source
    r"web[ .-]?dl",
    r"web[ .-]?rip",
    r"blu[ .-]?ray",
    r"bd[ .-]?rip",
    r"br[ .-]?rip",
    r"bd[ .-]?remux",
    r"remux",
    r"hdtv",
    r"hd[ .-]?rip",
    r"dvd[ .-]?rip",
    r"dvd[ .-]?scr",
    r"hdcam",
    # Codec
    r"[xh]\.?26[45]",
    r"hevc",
    r"avc",
    r"xvid",
    r"divx",
    r"av1",
    r"10[ .-]?bit",
    r"8[ .-]?bit",
    # Audio
    r"e?ac3",
    r"aac(?:[ .]?[257]\.[01])?",
    r"ddp?(?:[ .]?[257]\.[01])?",
    r"dts(?:[ .-]?(?:hd|ma|x))*",
    r"truehd",
    r"flac",
    r"[257]\.[01]",
    # HDR
    r"hdr(?:10)?\+?",
    r"dovi",
    # Streaming platform
    r"amzn",
    r"dsnp",
    r"hmax",
    r"atvp",
    r"iqiyi",
]

# Release flags that are also ordinary words (Charlotte's Web, The Proper Way).
# They only count as release metadata once a year or one of the tokens above
# has been seen; before that they are part of the title.
WORD_NOISE_PATTERNS = [
    r"web",
    r"dvd",
    r"dv",
    r"sdr",
    r"nf",
    r"hulu",
    r"hami",
    r"atmos",
    r"repack",
    r"proper",
    r"extended",
    r"unrated",
    r"remastered",
    r"internal",
    r"limited",
    r"imax",
    r"directors?[ .-]?cut",
    r"multi",
    r"dual[ .-]?audio",
    r"subbed",
    r"dubbed",
]


def _token_re(patterns: List[str]) -> re.Pattern:
    return re.compile(r"(?<![a-z0-9])(?:" + "|".join(patterns) + r")(?![a-z0-9])", re.IGNORECASE)


NOISE_RE = _token_re(NOISE_PATTERNS)
WORD_NOISE_RE = _token_re(WORD_NOISE_PATTERNS)

# (pattern, has_season_group)
EPISODE_PATTERNS: List[Tuple[re.Pattern, bool]] = [
    (re.compile(r"(?<![a-z0-9])s(\d{1,2})[ ._-]?e(\d{1,3})(?:[ ._-]?e\d{1,3})*(?![0-9])", re.IGNORECASE), True),
    (re.compile(r"(?<![a-z0-9])(\d{1,2})x(\d{1,3})(?![a-z0-9])", re.IGNORECASE), True),
    (re.compile(r"season[ ._-]*(\d{1,2})[ ._-]*episode[ ._-]*(\d{1,3})", re.IGNORECASE), True),
    (re.compile(r"第\s*(\d+)\s*[集话期]"), False),
]

LOOSE_EPISODE_RE = re.compile(r"(?<![a-z0-9])ep?[ ._-]?(\d{1,3})(?![a-z0-9])", re.IGNORECASE)

SEASON_FOLDER_PATTERNS = [
    re.compile(r"(?<![a-z0-9])(?:season|series|staffel|saison)[ ._-]*(\d{1,2})(?![0-9])", re.IGNORECASE),
    re.compile(r"^s(\d{1,2})$", re.IGNORECASE),
    re.compile(r"第\s*(\d+)\s*[季部]"),
]

YEAR_TOKEN_RE = re.compile(r"(?<![0-9])(\d{4})(?![0-9])")
BRACKETS_RE = re.compile(r"\[[^\]]*\]|\{[^}]*\}|【[^】]*】")
PARENS_RE = re.compile(r"\(([^)]*)\)")


def normalize_separators(text: str) -> str:
    text = re.sub(r"[._]+", " ", text)
    # Dashes used as separators, not the ones inside words (Spider-Man)
    text = re.sub(r"(?:^|\s)-+|-+(?:\s|$)", " ", text)
    return re.sub(r"\s+", " ", text).strip()


class TitleParser:
    """
    Turns a path into a TitleGuess. Pure: same path, same guess.
    """

    def __init__(self, max_year: Optional[int] = None, min_year: int = MIN_YEAR):
        self.min_year = min_year
        self.max_year = max_year if max_year is not None else datetime.date.today().year + 1

    def is_plausible_year(self, value: int) -> bool:
        return self.min_year <= value <= self.max_year

    def _strip_brackets(self, name: str) -> str:
        name = BRACKETS_RE.sub(" ", name)

        def keep_year(match: re.Match) -> str:
            inner = match.group(1).strip()
            if YEAR_TOKEN_RE.fullmatch(inner) and self.is_plausible_year(int(inner)):
                return f" {inner} "
            return " "

        return PARENS_RE.sub(keep_year, name)

    def season_from_folder(self, folder: str) -> Optional[int]:
        for pattern in SEASON_FOLDER_PATTERNS:
            match = pattern.search(folder)
            if match:
                return int(match.group(1))
        return None

    def _find_episode(self, name: str, folder_season: Optional[int]) -> Optional[Tuple[Optional[int], int, int]]:
        """
        Returns (season, episode, start offset) for the first episode marker in name.
        """
        for pattern, has_season in EPISODE_PATTERNS:
            match = pattern.search(name)
            if not match:
                continue
            if has_season:
                return int(match.group(1)), int(match.group(2)), match.start()
            return folder_season, int(match.group(1)), match.start()
        return None

    def _find_folder_episode(self, name: str, season: int) -> Optional[Tuple[int, int]]:
        """
        Episode numbering that is only trusted under a season folder:
        bare 101 / 1012 whose leading digits are the season, then E01 / EP01,
        then a lone 1-3 digit number.
        """
        for match in re.finditer(r"(?<![0-9a-z])(\d{3,4})(?![0-9a-z])", name, re.IGNORECASE):
            digits = match.group(1)
            prefix, suffix = digits[:-2], digits[-2:]
            if int(prefix) == season:
                return int(suffix), match.start()
        match = LOOSE_EPISODE_RE.search(name)
        if match:
            return int(match.group(1)), match.start()
        numbers = list(re.finditer(r"(?<![0-9a-z])(\d{1,3})(?![0-9a-z])", name, re.IGNORECASE))
        if numbers:
            last = numbers[-1]
            return int(last.group(1)), last.start()
        return None

    def _first_year(self, name: str) -> Optional[re.Match]:
        for match in YEAR_TOKEN_RE.finditer(name):
            if self.is_plausible_year(int(match.group(1))) and name[:match.start()].strip(" ._-"):
                return match
        return None

    def _cut_noise(self, name: str) -> Tuple[str, List[str]]:
        """
        Removes release tokens; everything after the first one is dropped too.

        Word-like flags (web, proper, limited...) only start the release part
        when they follow a year or an unambiguous release token.
        """
        found = [(m.start(), m.end(), m.group(0).lower()) for m in NOISE_RE.finditer(name)]
        anchor = found[0][0] if found else len(name)
        year = self._first_year(name)
        if year is not None:
            anchor = min(anchor, year.end())

        for m in WORD_NOISE_RE.finditer(name):
            if m.start() < anchor or any(start <= m.start() < end for start, end, _ in found):
                continue
            found.append((m.start(), m.end(), m.group(0).lower()))
        found.sort()

        if found:
            name = name[:found[0][0]]
        return name, [token for _, _, token in found]

    def _split_year(self, title: str) -> Tuple[str, Optional[int]]:
        """
        Takes the last plausible 4-digit year that is not the whole title.
        Out-of-range numbers stay part of the title.
        """
        candidates = [
            m for m in YEAR_TOKEN_RE.finditer(title)
            if self.is_plausible_year(int(m.group(1))) and title[:m.start()].strip()
        ]
        if not candidates:
            return title, None
        match = candidates[-1]
        return title[:match.start()], int(match.group(1))

    def _clean(self, text: str) -> str:
        text = normalize_separators(text)
        return text.strip(" -")

    def _show_folder(self, parents: List[str]) -> Optional[str]:
        for folder in parents:
            if self.season_from_folder(folder) is None:
                return folder
        return None

    def parse(self, path) -> TitleGuess:
        path = Path(path)
        raw_name = path.name
        stem = self._strip_brackets(path.stem)
        # Nearest folder first; the filesystem root carries no information
        parents = [p for p in reversed(path.parent.parts) if p not in ("/", "\\") and not p.endswith(":\\")]

        folder_season = None
        for folder in parents:
            folder_season = self.season_from_folder(folder)
            if folder_season is not None:
                break

        title_source = stem
        episode_info = self._find_episode(stem, folder_season)
        if episode_info is None:
            # SxxEyy carried by a folder, e.g. Show.S01E02.1080p/video.mkv
            for folder in parents:
                folder_clean = self._strip_brackets(folder)
                found = self._find_episode(folder_clean, folder_season)
                if found is not None:
                    episode_info = found
                    title_source = folder_clean
                    break

        if episode_info is None and folder_season is not None:
            found = self._find_folder_episode(self._cut_noise(stem)[0], folder_season)
            if found is not None:
                episode_info = (folder_season, found[0], found[1])

        if episode_info is not None or folder_season is not None:
            return self._episode_guess(raw_name, title_source, parents, folder_season, episode_info)
        return self._movie_guess(raw_name, stem, parents)

    def _episode_guess(self, raw_name, title_source, parents, folder_season, episode_info) -> TitleGuess:
        season, episode, offset = (None, None, len(title_source))
        if episode_info is not None:
            season, episode, offset = episode_info
        if season is None:
            season = folder_season if folder_season is not None else 1

        head, noise = self._cut_noise(title_source[:offset])
        _, tail_noise = self._cut_noise(title_source[offset:])
        title, year = self._split_year(head)
        title = self._clean(title)
        if not title:
            show_folder = self._show_folder(parents)
            if show_folder:
                folder_title, folder_noise = self._cut_noise(self._strip_brackets(show_folder))
                folder_title, folder_year = self._split_year(folder_title)
                title = self._clean(folder_title)
                year = year or folder_year
                noise = noise + folder_noise

        return TitleGuess(
            raw_name=raw_name,
            cleaned_name=title,
            kind=MediaKind.EPISODE,
            year=year,
            season=season,
            episode=episode,
            noise_tokens=tuple(noise + tail_noise),
        )

    def _movie_guess(self, raw_name, stem, parents) -> TitleGuess:
        head, noise = self._cut_noise(stem)
        title, year = self._split_year(head)
        title = self._clean(title)
        if not title and parents:
            folder_title, folder_noise = self._cut_noise(self._strip_brackets(parents[0]))
            folder_title, folder_year = self._split_year(folder_title)
            title = self._clean(folder_title)
            year = year or folder_year
            noise = noise + folder_noise
        return TitleGuess(
            raw_name=raw_name,
            cleaned_name=title,
            kind=MediaKind.MOVIE,
            year=year,
            noise_tokens=tuple(noise),
        )
