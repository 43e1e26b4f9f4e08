# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import math
import sys
import threading
from typing import List, Optional
from flask import Flask, jsonify, request
from flask_apscheduler import APScheduler
from ..core.config import Config
from ..core.errors import ConfigurationError, MissingEpisodeError, ProviderError, ReelkeeperError, UnknownItemError
from ..core.models import LibraryItem, MediaKind, PendingStatus, ProviderCandidate
from ..core.provider import MetadataProvider
from ..core.reconcile import ReconcilePolicy
from ..infrastructure.db.database import Database
from ..infrastructure.db.repository import LogRepository, SnapshotRepository, WatchStateRepository
from ..services.library_service import LibraryStore
from ..services.reconcile_service import ReconciliationOrchestrator, default_provider
from ..services.watch_state_service import WatchStateTracker, reaches_completion
from .task_manager import task_manager
from .watcher import FileWatcher


def json_number(data: dict, key: str, cast=float):
    """
    Optional numeric field of a JSON body. Raises ValueError naming the
    field when it is present but not a finite number.
    """
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number")
    try:
        number = cast(str(value)) if cast is int else cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number")
    if not math.isfinite(number):
        raise ValueError(f"{key} must be a number")
    return number


class Server:
    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = config_path
        self.config = Config.load(config_path)

        logging.basicConfig(
            level=logging.DEBUG if self.config.verbose else logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[logging.StreamHandler(sys.stdout)]
        )
        self.logger = logging.getLogger(__name__)

        self.app = Flask(__name__)
        self.scheduler = APScheduler()

        # Infrastructure
        self.db = Database(self.config.database_path)
        self.snapshot_repo = SnapshotRepository(self.db)
        self.watch_repo = WatchStateRepository(self.db)
        self.log_repo = LogRepository(self.db)

        # Services
        self.store = LibraryStore(self.snapshot_repo, self.log_repo, ReconcilePolicy.from_config(self.config))
        self.tracker = WatchStateTracker(self.watch_repo, self.store, self.log_repo)
        self.orchestrator = ReconciliationOrchestrator(
            self._load_config, self.store, self._provider, log_repo=self.log_repo
        )
        self.watcher: Optional[FileWatcher] = None
        self._cycle_lock = threading.Lock()
        self._current_task: Optional[str] = None

        self._setup_errors()
        self._setup_routes()
        self._setup_scheduler()

    def _load_config(self) -> Config:
        # Re-read for every cycle so edits apply without a restart
        self.config = Config.load(self.config_path)
        return self.config

    def _provider(self, config: Config) -> MetadataProvider:
        return default_provider(config)

    def trigger_cycle(self, trigger: str, rematch: bool = False) -> str:
        """
        Starts a cycle or joins the running one. Returns its task id.
        """
        with self._cycle_lock:
            if self.orchestrator.running and self._current_task:
                self.logger.info(f"Cycle requested by {trigger} joined running {self._current_task}")
                return self._current_task
            task_id = task_manager.start_task(trigger)
            self._current_task = task_id
            self.orchestrator.on_progress = task_manager.progress_callback(task_id)
            future = self.orchestrator.start(rematch=rematch)
            future.add_done_callback(lambda f: task_manager.finish_task(task_id, f.result()))
            return task_id

    def _item_json(self, item: LibraryItem) -> dict:
        data = item.model_dump(mode="json")
        data["full_title"] = self.store.full_title(item.id)
        data["progress"] = self.tracker.progress(item.id)
        return data

    def _setup_errors(self):
        @self.app.errorhandler(UnknownItemError)
        def unknown_item(e):
            return jsonify({"error": str(e)}), 404

        @self.app.errorhandler(MissingEpisodeError)
        def missing_episode(e):
            return jsonify({"error": str(e)}), 400

        @self.app.errorhandler(ConfigurationError)
        def configuration_error(e):
            self.logger.error(f"Configuration problem: {e}")
            return jsonify({"error": str(e)}), 503

        @self.app.errorhandler(ProviderError)
        def provider_error(e):
            return jsonify({"error": str(e)}), 502

        @self.app.errorhandler(ReelkeeperError)
        def engine_error(e):
            self.logger.error(f"Request failed: {e}")
            return jsonify({"error": str(e)}), 500

    def _setup_routes(self):
        @self.app.route("/api/library")
        def get_library():
            kind = request.args.get("kind")
            try:
                media_kind = MediaKind(kind) if kind else None
            except ValueError:
                return jsonify({"error": f"Unknown kind: {kind}"}), 400
            if media_kind is None:
                # Top level only: movies and shows
                items = self.store.items(MediaKind.MOVIE) + self.store.items(MediaKind.SHOW)
            else:
                items = self.store.items(media_kind)
            return jsonify([self._item_json(item) for item in items])

        @self.app.route("/api/library/<int:item_id>")
        def get_item(item_id):
            item = self.store.get(item_id)
            data = self._item_json(item)
            data["children"] = [self._item_json(child) for child in self.store.children(item_id)]
            data["files"] = [link.model_dump(mode="json") for link in self.store.files_for(item_id)]
            state = self.tracker.query(item_id)
            data["watch_state"] = state.model_dump(mode="json") if state else None
            data["last_watched"] = self.tracker.last_watched(item_id)
            next_ep = self.store.next_episode(item_id)
            prev_ep = self.store.previous_episode(item_id)
            data["next_episode"] = next_ep.id if next_ep else None
            data["previous_episode"] = prev_ep.id if prev_ep else None
            data["collections"] = [c.id for c in self.store.collections_for(item_id)]
            return jsonify(data)

        @self.app.route("/api/duplicates")
        def get_duplicates():
            return jsonify({
                str(item_id): [link.model_dump(mode="json") for link in links]
                for item_id, links in self.store.duplicates().items()
            })

        @self.app.route("/api/collections", methods=["GET"])
        def get_collections():
            return jsonify([c.model_dump(mode="json") for c in self.store.collections()])

        @self.app.route("/api/collections", methods=["POST"])
        def create_collection():
            name = (request.get_json(silent=True) or {}).get("name")
            collection = self.store.create_collection(name)
            self.logger.info(f"[User Action] Created collection {collection.id}: {collection.name}")
            return jsonify(collection.model_dump(mode="json")), 201

        @self.app.route("/api/collections/<int:collection_id>", methods=["GET"])
        def get_collection(collection_id):
            data = self.store.collection(collection_id).model_dump(mode="json")
            data["items"] = [self._item_json(item) for item in self.store.collection_items(collection_id)]
            return jsonify(data)

        @self.app.route("/api/collections/<int:collection_id>", methods=["PUT"])
        def rename_collection(collection_id):
            name = (request.get_json(silent=True) or {}).get("name")
            return jsonify(self.store.rename_collection(collection_id, name).model_dump(mode="json"))

        @self.app.route("/api/collections/<int:collection_id>", methods=["DELETE"])
        def delete_collection(collection_id):
            collection = self.store.delete_collection(collection_id)
            self.logger.info(f"[User Action] Deleted collection {collection.id}: {collection.name}")
            return jsonify({"deleted": collection.id})

        @self.app.route("/api/collections/<int:collection_id>/items", methods=["POST"])
        def add_collection_item(collection_id):
            try:
                item_id = json_number(request.get_json(silent=True) or {}, "item_id", int)
            except ValueError as e:
                return jsonify({"error": str(e)}), 400
            if item_id is None:
                return jsonify({"error": "item_id is required"}), 400
            collection = self.store.add_to_collection(collection_id, item_id)
            return jsonify(collection.model_dump(mode="json"))

        @self.app.route("/api/collections/<int:collection_id>/items/<int:item_id>", methods=["DELETE"])
        def remove_collection_item(collection_id, item_id):
            collection = self.store.remove_from_collection(collection_id, item_id)
            return jsonify(collection.model_dump(mode="json"))

        @self.app.route("/api/pending")
        def get_pending():
            status = request.args.get("status")
            try:
                pending_status = PendingStatus(status) if status else None
            except ValueError:
                return jsonify({"error": f"Unknown status: {status}"}), 400
            return jsonify([p.model_dump(mode="json") for p in self.store.pending(pending_status)])

        @self.app.route("/api/pending/resolve", methods=["POST"])
        def resolve_pending():
            data = request.get_json(silent=True) or {}
            fingerprint = data.get("fingerprint")
            if not fingerprint or not data.get("provider_id") or not data.get("title"):
                return jsonify({"error": "fingerprint, provider_id and title are required"}), 400
            try:
                kind = MediaKind(data.get("kind", "Movie"))
            except ValueError:
                return jsonify({"error": f"Unknown kind: {data.get('kind')}"}), 400
            try:
                year = json_number(data, "year", int)
                season = json_number(data, "season", int)
                episode = json_number(data, "episode", int)
            except ValueError as e:
                return jsonify({"error": str(e)}), 400
            candidate = ProviderCandidate(
                provider_id=str(data["provider_id"]),
                title=str(data["title"]),
                kind=kind,
                year=year,
            )
            item = self.store.resolve(fingerprint, candidate, season, episode)
            self.logger.info(f"[User Action] Resolved {fingerprint} -> {candidate.title}")
            return jsonify(self._item_json(item))

        @self.app.route("/api/pending/hide", methods=["POST"])
        def hide_pending():
            fingerprint = (request.get_json(silent=True) or {}).get("fingerprint")
            if not fingerprint:
                return jsonify({"error": "fingerprint is required"}), 400
            pending = self.store.hide(fingerprint)
            self.logger.info(f"[User Action] Hidden file: {pending.path}")
            return jsonify(pending.model_dump(mode="json"))

        @self.app.route("/api/pending/unhide", methods=["POST"])
        def unhide_pending():
            fingerprint = (request.get_json(silent=True) or {}).get("fingerprint")
            if not fingerprint:
                return jsonify({"error": "fingerprint is required"}), 400
            pending = self.store.unhide(fingerprint)
            self.logger.info(f"[User Action] Unhidden file: {pending.path} (picked up by next cycle)")
            return jsonify(pending.model_dump(mode="json"))

        @self.app.route("/api/search")
        def manual_search():
            name = request.args.get("name")
            if not name:
                return jsonify({"error": "Name is required"}), 400
            kind = MediaKind.MOVIE if request.args.get("type", "Movie") == "Movie" else MediaKind.SHOW
            year = request.args.get("year", type=int)
            self.logger.info(f"[User Action] Manual search request: name='{name}', type='{kind.value}'")
            candidates = self._provider(self.config).search(name, year, kind)
            return jsonify([c.model_dump(mode="json") for c in candidates])

        @self.app.route("/api/scan", methods=["POST"])
        def trigger_scan():
            rematch = bool((request.get_json(silent=True) or {}).get("rematch", False))
            task_id = self.trigger_cycle("api", rematch=rematch)
            return jsonify({"task_id": task_id})

        @self.app.route("/api/scan/cancel", methods=["POST"])
        def cancel_scan():
            return jsonify({"cancelled": self.orchestrator.cancel()})

        @self.app.route("/api/status")
        def get_status():
            last = self.orchestrator.last_result
            return jsonify({
                "state": self.orchestrator.state.value,
                "last_result": last.state.value if last else None,
                "tasks": task_manager.get_all_tasks(),
            })

        @self.app.route("/api/watch/<int:item_id>", methods=["GET"])
        def get_watch(item_id):
            state = self.tracker.query(item_id)
            return jsonify({
                "item_id": item_id,
                "exists": self.store.exists(item_id),
                "state": state.model_dump(mode="json") if state else None,
            })

        @self.app.route("/api/watch/<int:item_id>", methods=["POST"])
        def record_watch(item_id):
            data = request.get_json(silent=True) or {}
            if data.get("position") is None:
                return jsonify({"error": "position is required"}), 400
            try:
                position = json_number(data, "position")
                duration = json_number(data, "duration")
                timestamp = json_number(data, "timestamp")
                completed = data.get("completed")
                if completed is None:
                    completed = reaches_completion(position, duration, self.config.completion_fraction)
                state = self.tracker.record(item_id, position, bool(completed), duration, timestamp)
            except ValueError as e:
                return jsonify({"error": str(e)}), 400
            return jsonify(state.model_dump(mode="json"))

        @self.app.route("/api/watch/<int:item_id>", methods=["DELETE"])
        def clear_watch(item_id):
            self.logger.info(f"[User Action] Clearing watch state for {item_id}")
            return jsonify({"cleared": self.tracker.clear(item_id)})

        @self.app.route("/api/watch/<int:item_id>/mark", methods=["POST"])
        def mark_watch(item_id):
            completed = bool((request.get_json(silent=True) or {}).get("completed", True))
            states = self.tracker.mark(item_id, completed)
            return jsonify([s.model_dump(mode="json") for s in states])

        @self.app.route("/api/watch/dangling")
        def dangling_watch():
            return jsonify([s.model_dump(mode="json") for s in self.tracker.dangling()])

        @self.app.route("/api/logs")
        def get_logs():
            return jsonify(self.log_repo.get_recent(limit=100))

        @self.app.route("/api/stats")
        def get_stats():
            snapshot = self.store.snapshot()
            counts = {kind.value: 0 for kind in MediaKind}
            for item in snapshot.items.values():
                counts[item.kind.value] += 1
            pending = {status.value: 0 for status in PendingStatus}
            for entry in snapshot.pending.values():
                pending[entry.status.value] += 1
            return jsonify({
                "items": counts,
                "files": len(snapshot.links),
                "pending": pending,
                "orphaned": sum(1 for item in snapshot.items.values() if item.orphaned),
                "duplicates": len(self.store.duplicates()),
            })

    def _setup_scheduler(self):
        self.scheduler.init_app(self.app)
        self.scheduler.add_job(
            id="reconcile",
            func=lambda: self.trigger_cycle("schedule"),
            trigger="interval",
            minutes=self.config.scan_interval_minutes,
        )

    def _on_files_changed(self, changes: List[str]):
        self.logger.info(f"File changes detected ({len(changes)}), requesting cycle")
        self.trigger_cycle("watcher")

    def start_background(self):
        self.scheduler.start()
        if self.config.watch_files:
            self.watcher = FileWatcher(
                self.config.roots,
                self._on_files_changed,
                self.config.video_extensions,
                self.config.file_watch_debounce_seconds,
            )
            self.watcher.start()
        # Initial cycle at startup
        self.trigger_cycle("startup")

    def stop_background(self):
        if self.watcher:
            self.watcher.stop()
            self.watcher = None
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def run(self, host: Optional[str] = None, port: Optional[int] = None):
        host = host or self.config.server_host
        port = port or self.config.server_port
        self.start_background()
        try:
            self.app.run(host=host, port=port)
        finally:
            self.stop_background()


if __name__ == "__main__":
    server = Server()
    server.run()
