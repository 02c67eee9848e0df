"""Logical service path -> resolved service URL, shared by dispatcher calls.

Entries never expire on their own; whoever puts an entry arranges its
removal.
"""
from __future__ import annotations

import threading
from typing import Dict, Optional


class ServiceUrlCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._urls: Dict[str, str] = {}

    def get(self, path: str) -> Optional[str]:
        with self._lock:
            return self._urls.get(path)

    def put(self, path: str, url: str) -> None:
        with self._lock:
            self._urls[path] = url

    def remove(self, path: str, expected: Optional[str] = None) -> Optional[str]:
        """Drop the entry for ``path``; with ``expected``, only if it still maps there."""
        with self._lock:
            if expected is not None and self._urls.get(path) != expected:
                return None
            return self._urls.pop(path, None)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._urls

    def __len__(self) -> int:
        with self._lock:
            return len(self._urls)
