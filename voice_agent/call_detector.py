"""Detects running call apps that tend to reset the microphone level."""

import logging
from typing import Iterable, Protocol

import psutil

logger = logging.getLogger(__name__)


class CallDetector(Protocol):
    def active_call_apps(self) -> list[str]: ...


class ProcessCallDetector:
    """Matches running process names against known call apps.

    Matching is a case-insensitive substring test, so "zoom" catches both
    "zoom" and "zoom.us". Processes that vanish or deny access mid-scan are
    skipped.
    """

    def __init__(self, call_apps: Iterable[str]):
        self.call_apps = tuple(app.lower() for app in call_apps if app)
        logger.debug("Watching for call apps: %s", ", ".join(self.call_apps))

    def active_call_apps(self) -> list[str]:
        """Return the configured call apps with at least one live process."""
        found: set[str] = set()
        for proc in psutil.process_iter(["name"]):
            try:
                name = (proc.info.get("name") or "").lower()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if not name:
                continue
            for app in self.call_apps:
                if app in name:
                    found.add(app)
        return sorted(found)
