# Copyright (c) 2025 Trae AI. All rights reserved.

import threading
import time
from typing import Any, Callable, Dict, Optional
from reelkeeper.core.models import CycleResult, CycleState

MAX_HISTORY = 20


class TaskManager:
    """
    Keeps the progress and outcome of reconciliation cycles for the API.
    """

    def __init__(self):
        self._tasks: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._counter = 0

    def start_task(self, trigger: str = "manual") -> str:
        with self._lock:
            self._counter += 1
            task_id = f"cycle-{self._counter}"
            self._tasks[task_id] = {
                "status": "running",
                "trigger": trigger,
                "progress": 0,
                "message": "Starting...",
                "start_time": time.time(),
                "end_time": None,
                "result": None,
            }
            # Oldest first; drop beyond the history limit
            while len(self._tasks) > MAX_HISTORY:
                self._tasks.pop(next(iter(self._tasks)))
            return task_id

    def update_progress(self, task_id: str, progress: int, message: Optional[str] = None):
        with self._lock:
            if task_id in self._tasks:
                self._tasks[task_id]["progress"] = progress
                if message:
                    self._tasks[task_id]["message"] = message

    def progress_callback(self, task_id: str) -> Callable[[int, str], None]:
        return lambda progress, message: self.update_progress(task_id, progress, message)

    def finish_task(self, task_id: str, result: CycleResult):
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return
            task["status"] = "failed" if result.state == CycleState.FAILED else "completed"
            task["progress"] = 100
            task["message"] = result.error or result.state.value
            task["end_time"] = time.time()
            task["result"] = {
                "state": result.state.value,
                "counts": result.counts,
                "warnings": result.warnings,
                "pending_ambiguous": result.pending_ambiguous,
                "pending_unmatched": result.pending_unmatched,
                "coalesced": result.coalesced,
            }

    def get_task_status(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            task = self._tasks.get(task_id)
            return dict(task) if task else None

    def get_all_tasks(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in self._tasks.items()}


# Global instance
task_manager = TaskManager()
