"""File-based task persistence using one JSON file per task."""

import json
import logging
import time
from pathlib import Path
from typing import List

from pydantic import ValidationError

from ..core.task import Task
from ..utils.atomic_io import atomic_write_model
from ..utils.error_handling import log_and_reraise

logger = logging.getLogger(__name__)


class TaskStore:
    """
    Persists tasks so issue references and statuses survive restarts.

    - Atomic writes using temp files then rename
    - Tasks are never deleted; archiving moves the file into ``archived/``
    - Unreadable files are moved to ``malformed/`` for investigation
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.archived_dir = self.root / "archived"
        self.malformed_dir = self.root / "malformed"
        self.root.mkdir(parents=True, exist_ok=True)
        self.archived_dir.mkdir(parents=True, exist_ok=True)
        self.malformed_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, task_id: str) -> Path:
        return self.root / f"{task_id}.json"

    def save(self, task: Task) -> None:
        target = self.archived_dir / f"{task.id}.json" if task.archived else self._path(task.id)
        try:
            atomic_write_model(target, task)
        except OSError as e:
            log_and_reraise(e, f"Failed to persist task {task.id}", logger_instance=logger)

    def archive(self, task: Task) -> None:
        task.archived = True
        atomic_write_model(self.archived_dir / f"{task.id}.json", task)
        self._path(task.id).unlink(missing_ok=True)
        logger.info(f"Archived task {task.id}")

    def load_all(self, include_archived: bool = False) -> List[Task]:
        tasks = self._load_dir(self.root)
        if include_archived:
            tasks.extend(self._load_dir(self.archived_dir))
        return sorted(tasks, key=lambda t: t.sequence)

    def _load_dir(self, directory: Path) -> List[Task]:
        tasks = []
        for task_file in sorted(directory.glob("*.json")):
            try:
                tasks.append(Task(**json.loads(task_file.read_text())))
            except FileNotFoundError:
                continue
            except (json.JSONDecodeError, ValidationError) as e:
                self._quarantine(task_file, e)
        return tasks

    def _quarantine(self, task_file: Path, error: Exception) -> None:
        dest_file = self.malformed_dir / task_file.name
        if dest_file.exists():
            dest_file = self.malformed_dir / f"{task_file.stem}_{int(time.time())}{task_file.suffix}"
        task_file.rename(dest_file)
        logger.warning(f"Quarantined malformed task file: {task_file} -> {dest_file} (error: {error})")
