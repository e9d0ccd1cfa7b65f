"""Project runtime status contract consumed by the terminal core."""

from __future__ import annotations

import logging as py_logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

logger = py_logging.getLogger(__name__)


class ProjectStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class ProjectStore(Protocol):
    def update_runtime_status(
        self,
        project_name: str,
        process: object | None,
        status: ProjectStatus,
    ) -> bool: ...


@dataclass
class ProjectRecord:
    name: str
    status: ProjectStatus = ProjectStatus.STOPPED
    process: object | None = None

    @property
    def process_id(self) -> int | None:
        pid = getattr(self.process, "pid", None)
        return pid if isinstance(pid, int) else None


StatusListener = Callable[[ProjectRecord, ProjectStatus], None]


class InMemoryProjectStore:
    """Thread-safe store of project runtime state keyed by name (case-insensitive)."""

    def __init__(self, names: list[str] | None = None) -> None:
        self._lock = threading.Lock()
        self._projects: dict[str, ProjectRecord] = {}
        self._listeners: list[StatusListener] = []
        for name in names or []:
            self.add(name)

    def add(self, name: str) -> ProjectRecord:
        key = name.strip().lower()
        if not key:
            raise ValueError("Project name cannot be empty.")
        with self._lock:
            record = self._projects.get(key)
            if record is None:
                record = ProjectRecord(name=name.strip())
                self._projects[key] = record
            return record

    def get(self, name: str) -> ProjectRecord | None:
        with self._lock:
            return self._projects.get(name.strip().lower())

    def list_projects(self) -> list[ProjectRecord]:
        with self._lock:
            return list(self._projects.values())

    def add_listener(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def update_runtime_status(
        self,
        project_name: str,
        process: object | None,
        status: ProjectStatus,
    ) -> bool:
        if not project_name or not project_name.strip():
            return False
        with self._lock:
            record = self._projects.get(project_name.strip().lower())
            if record is None:
                return False
            status_changed = record.status != status
            process_changed = record.process is not process
            if not status_changed and not process_changed:
                return False
            previous = record.status
            record.process = process
            record.status = status
            listeners = list(self._listeners)

        logger.info(
            "project-status project=%s status=%s previous=%s pid=%s",
            record.name,
            status.value,
            previous.value,
            record.process_id,
        )
        if status_changed:
            for listener in listeners:
                try:
                    listener(record, previous)
                except Exception:
                    logger.exception("project status listener failed project=%s", record.name)
        return True
