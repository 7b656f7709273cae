"""Answers "is this game running, and since when?" using psutil."""

import logging
import os
from datetime import datetime

import psutil

from savesync.models import ProcessState

logger = logging.getLogger(__name__)


def lookup_name(executable: str | None) -> str:
    """Strip directories and extension: ``C:\\Games\\Foo.exe`` -> ``Foo``."""
    if not executable:
        return ""
    base = executable.replace("\\", "/").rsplit("/", 1)[-1]
    stem, _ext = os.path.splitext(base)
    return stem or base


class ProcessOracle:
    """Queries the OS process table by lookup name.

    The enriched query also reads each process's create time. If it
    fails the oracle falls back to a name-only query and reports the
    start time as unknown rather than failing the caller.
    """

    def __init__(self, process_iter=None):
        self._process_iter = process_iter or psutil.process_iter

    def is_running(self, name: str) -> bool:
        return self.get_process_state(name).running

    def get_process_state(self, name: str) -> ProcessState:
        target = lookup_name(name).casefold()
        if not target:
            return ProcessState(running=False)

        try:
            return self._query_with_start_time(target)
        except (psutil.Error, OSError) as exc:
            logger.debug("Enriched process query failed for %s: %s", name, exc)

        return ProcessState(running=self._query_running(target), started_at=None)

    def _query_with_start_time(self, target: str) -> ProcessState:
        running = False
        earliest = None
        for proc in self._process_iter(["name", "create_time"]):
            info = proc.info
            if lookup_name(info.get("name")).casefold() != target:
                continue
            running = True
            created = info.get("create_time")
            if created is not None and (earliest is None or created < earliest):
                earliest = created
        started_at = datetime.fromtimestamp(earliest) if earliest is not None else None
        return ProcessState(running=running, started_at=started_at)

    def _query_running(self, target: str) -> bool:
        for proc in self._process_iter(["name"]):
            try:
                if lookup_name(proc.info.get("name")).casefold() == target:
                    return True
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return False
