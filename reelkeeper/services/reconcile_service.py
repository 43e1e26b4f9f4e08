# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional
from reelkeeper.core.cache import TTLCache
from reelkeeper.core.config import Config
from reelkeeper.core.errors import ConfigurationError, CorruptSnapshotError, CycleCancelledError
from reelkeeper.core.matcher import Matcher
from reelkeeper.core.models import (
    CycleResult,
    CycleState,
    FileMatch,
    MatchResult,
    MediaFile,
    PendingStatus,
    TitleGuess,
)
from reelkeeper.core.parser import TitleParser
from reelkeeper.core.provider import MetadataProvider, TMDBProvider
from reelkeeper.core.reconcile import ReconcilePolicy
from reelkeeper.core.scanner import Scanner
from reelkeeper.infrastructure.db.repository import LogRepository
from .library_service import LibraryStore

logger = logging.getLogger(__name__)


def default_provider(config: Config) -> MetadataProvider:
    return TMDBProvider(config.tmdb_api_key, language=config.language, timeout=config.request_timeout)


class ReconciliationOrchestrator:
    """
    Drives one scan -> match -> commit cycle at a time.

    Files stream from the scanner straight into a bounded worker pool for
    parsing and matching. A cycle requested while another is running joins
    the running one instead of starting a second.
    """

    def __init__(self, config_source: Callable[[], Config], store: LibraryStore,
                 provider_factory: Callable[[Config], MetadataProvider] = default_provider,
                 log_repo: Optional[LogRepository] = None,
                 on_progress: Optional[Callable[[int, str], None]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config_source = config_source
        self.store = store
        self.provider_factory = provider_factory
        self.log_repo = log_repo
        self.on_progress = on_progress
        self._sleep = sleep
        self.cache = TTLCache()

        self._state = CycleState.IDLE
        self._lock = threading.Lock()
        self._current: Optional[Future] = None
        self._cancel = threading.Event()
        self.last_result: Optional[CycleResult] = None

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def running(self) -> bool:
        current = self._current
        return current is not None and not current.done()

    def _set_state(self, state: CycleState, progress: int, message: str):
        self._state = state
        logger.debug(f"Cycle state: {state.value} ({message})")
        if self.on_progress:
            self.on_progress(progress, message)

    def _log(self, action_type: str, target: str, details: str = None):
        if self.log_repo:
            self.log_repo.add(action_type, target, details)

    def _claim(self):
        """
        Returns (future, owner). Only the owner runs the cycle.
        """
        with self._lock:
            if self._current is not None and not self._current.done():
                return self._current, False
            self._current = Future()
            self._cancel.clear()
            return self._current, True

    def start(self, rematch: bool = False) -> Future:
        """
        Runs a cycle in a background thread. Returns the cycle's future.
        """
        future, owner = self._claim()
        if owner:
            thread = threading.Thread(target=self._run_into, args=(future, rematch), daemon=True)
            thread.start()
        else:
            logger.info("Cycle already running; request coalesced")
        return future

    def run(self, rematch: bool = False) -> CycleResult:
        """
        Runs a cycle in the calling thread, or waits for the running one.
        """
        future, owner = self._claim()
        if owner:
            self._run_into(future, rematch)
            return future.result()
        logger.info("Cycle already running; waiting for it")
        return future.result().model_copy(update={"coalesced": True})

    def cancel(self) -> bool:
        if not self.running:
            return False
        logger.info("Cancellation requested")
        self._cancel.set()
        return True

    def _check_cancelled(self):
        if self._cancel.is_set():
            raise CycleCancelledError("Cycle cancelled")

    def _run_into(self, future: Future, rematch: bool):
        started = time.time()
        try:
            result = self._cycle(rematch, started)
        except CycleCancelledError:
            logger.info("Cycle cancelled; nothing committed")
            self._log("SCAN", "CANCELLED", "Cycle cancelled before commit")
            result = CycleResult(state=CycleState.CANCELLED, started_at=started, finished_at=time.time())
        except (CorruptSnapshotError, ConfigurationError) as e:
            logger.error(f"Cycle failed: {e}")
            self._log("ERROR", "CYCLE", str(e))
            result = CycleResult(state=CycleState.FAILED, error=str(e), started_at=started, finished_at=time.time())
        except Exception as e:
            logger.exception(f"Cycle failed unexpectedly: {e}")
            self._log("ERROR", "CYCLE", str(e))
            result = CycleResult(state=CycleState.FAILED, error=str(e), started_at=started, finished_at=time.time())

        self.last_result = result
        self._state = CycleState.IDLE
        if self.on_progress:
            self.on_progress(100, f"Cycle finished: {result.state.value}")
        future.set_result(result)

    @staticmethod
    def _match_file(parser: TitleParser, matcher: Matcher, media_file: MediaFile) -> FileMatch:
        guess = parser.parse(media_file.path)
        return FileMatch(guess=guess, result=matcher.match(guess))

    def _cycle(self, rematch: bool, started: float) -> CycleResult:
        config = self.config_source()
        self._set_state(CycleState.SCANNING, 5, "Scanning files...")
        self._log("SCAN", "START", f"Reconciliation started for {len(config.roots)} roots")
        prior = self.store.snapshot()

        self.cache.ttl = config.cache_ttl_seconds
        self.cache.cleanup_expired()
        matcher = Matcher.from_config(self.provider_factory(config), config, cache=self.cache, sleep=self._sleep)
        parser = TitleParser()
        scanner = Scanner(config.video_extensions)
        hidden = {fp for fp, p in prior.pending.items() if p.status == PendingStatus.HIDDEN}

        files: List[MediaFile] = []
        futures: Dict[str, Future] = {}
        file_matches: Dict[str, FileMatch] = {}
        warnings: List[str] = []

        pool = ThreadPoolExecutor(max_workers=config.max_concurrency, thread_name_prefix="match")
        try:
            for media_file in scanner.scan(config.roots):
                self._check_cancelled()
                files.append(media_file)
                fp = media_file.fingerprint
                if fp in futures or fp in hidden:
                    continue
                if fp in prior.links and not rematch:
                    continue
                futures[fp] = pool.submit(self._match_file, parser, matcher, media_file)

            self._set_state(CycleState.MATCHING, 30, f"Matching {len(futures)} of {len(files)} files...")
            for done, (fp, future) in enumerate(futures.items(), start=1):
                self._check_cancelled()
                try:
                    file_matches[fp] = future.result()
                except ConfigurationError:
                    raise
                except Exception as e:
                    media_file = next(f for f in files if f.fingerprint == fp)
                    message = f"Failed to match {media_file.path}: {e}"
                    logger.error(message)
                    warnings.append(message)
                    file_matches[fp] = FileMatch(
                        guess=TitleGuess(raw_name=media_file.path.name, cleaned_name=media_file.path.stem),
                        result=MatchResult.unmatched(str(e)),
                    )
                if self.on_progress and futures:
                    self.on_progress(30 + int(55 * done / len(futures)), f"Matched {done}/{len(futures)}")
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        for fp, file_match in file_matches.items():
            if file_match.result.provider_error:
                warnings.append(f"Provider unavailable for {file_match.guess.raw_name}: {file_match.result.reason}")

        matches = {fp: m for fp, m in file_matches.items() if fp not in prior.links}
        rematches = {fp: m for fp, m in file_matches.items() if fp in prior.links}

        self._check_cancelled()
        self._set_state(CycleState.COMMITTING, 90, "Committing library changes...")
        report = self.store.commit(
            files,
            matches,
            scanner.report.unavailable_roots,
            ReconcilePolicy.from_config(config),
            rematches,
        )

        snapshot = self.store.snapshot()
        for fp in report.linked + report.relinked:
            link = snapshot.links.get(fp)
            if link:
                self._log("MATCH", str(link.path), f"-> {self.store.full_title(link.item_id)}")
        for fp in report.ambiguous + report.unmatched:
            pending = snapshot.pending.get(fp)
            if pending:
                self._log("MATCH_FAIL", str(pending.path), f"{pending.status.value}: {pending.reason}")

        pending_ambiguous = sum(1 for p in snapshot.pending.values() if p.status == PendingStatus.AMBIGUOUS)
        pending_unmatched = sum(1 for p in snapshot.pending.values() if p.status == PendingStatus.UNMATCHED)
        state = CycleState.PARTIAL_SUCCESS if pending_ambiguous or pending_unmatched else CycleState.SUCCESS

        all_warnings = scanner.report.warnings + warnings + report.warnings
        counts = report.counts()
        self._log(
            "COMMIT",
            state.value,
            f"files={len(files)} matched={counts['matched']} moved={len(report.moved)} "
            f"ambiguous={counts['ambiguous']} unmatched={counts['unmatched']} removed={counts['removed']}",
        )
        logger.info(f"Cycle finished: {state.value} ({len(files)} files, {len(all_warnings)} warnings)")

        return CycleResult(
            state=state,
            counts=counts,
            warnings=all_warnings,
            report=report,
            pending_ambiguous=pending_ambiguous,
            pending_unmatched=pending_unmatched,
            started_at=started,
            finished_at=time.time(),
        )
