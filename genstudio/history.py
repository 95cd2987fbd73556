"""Persisted history of finished image generations.

The whole list lives under a single key of one JSON document and is rewritten
on every change. Entries are immutable: the store only prepends new ones and
removes old ones.
"""

from __future__ import annotations

import base64
import binascii
import json
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .logging import get_logger

LOGGER = get_logger("history")

HISTORY_KEY = "imageHistory"


def encode_data_url(data: bytes, media_type: str = "image/png") -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{media_type};base64,{encoded}"


def decode_data_url(url: str) -> tuple[bytes, str]:
    if not url.startswith("data:") or "," not in url:
        raise ValueError("Not a data URL")
    header, payload = url[5:].split(",", 1)
    parts = header.split(";")
    media_type = parts[0] or "text/plain"
    if "base64" not in parts[1:]:
        raise ValueError("Only base64 data URLs are supported")
    try:
        return base64.b64decode(payload, validate=True), media_type
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc


def new_entry_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    url: str
    prompt: str
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            id=str(payload["id"]),
            url=str(payload["url"]),
            prompt=str(payload.get("prompt") or ""),
            created_at=float(payload.get("created_at") or 0.0),
        )


class HistoryStore:
    def __init__(self, path: Path, *, key: str = HISTORY_KEY, max_entries: int = 100) -> None:
        self._path = path
        self._key = key
        self._max_entries = max(1, int(max_entries))
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._entries = self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def _load(self) -> list[HistoryEntry]:
        if not self._path.exists():
            return []
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("history load failed path=%s error=%s", str(self._path), exc)
            return []
        raw_items = document.get(self._key) if isinstance(document, dict) else None
        if not isinstance(raw_items, list):
            return []
        entries: list[HistoryEntry] = []
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            try:
                entries.append(HistoryEntry.from_dict(item))
            except (KeyError, TypeError, ValueError):
                continue
        return entries[: self._max_entries]

    def _commit(self, entries: list[HistoryEntry]) -> None:
        """Persist `entries`, then make them the in-memory list. Caller holds the lock."""
        document: Dict[str, Any] = {}
        if self._path.exists():
            try:
                existing = json.loads(self._path.read_text(encoding="utf-8"))
                if isinstance(existing, dict):
                    document = existing
            except (OSError, ValueError):
                document = {}
        document[self._key] = [entry.to_dict() for entry in entries]
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(document, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self._path)
        self._entries = entries

    def list(self) -> list[HistoryEntry]:
        with self._lock:
            return list(self._entries)

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        with self._lock:
            for entry in self._entries:
                if entry.id == entry_id:
                    return entry
        return None

    def add(self, entry: HistoryEntry) -> list[HistoryEntry]:
        """Prepend an entry, evict the oldest beyond the cap and persist.

        Returns the evicted entries.
        """
        with self._lock:
            entries = [entry] + self._entries
            evicted = entries[self._max_entries :]
            self._commit(entries[: self._max_entries])
        if evicted:
            LOGGER.info("history evicted count=%d oldest_id=%s", len(evicted), evicted[-1].id)
        return evicted

    def resize(self, max_entries: int) -> list[HistoryEntry]:
        """Apply a new cap, evicting the oldest entries that no longer fit."""
        with self._lock:
            cap = max(1, int(max_entries))
            evicted = self._entries[cap:]
            if evicted:
                self._commit(self._entries[:cap])
            self._max_entries = cap
        LOGGER.info("history cap changed max_entries=%d evicted=%d", self._max_entries, len(evicted))
        return evicted

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            remaining = [entry for entry in self._entries if entry.id != entry_id]
            if len(remaining) == len(self._entries):
                return False
            self._commit(remaining)
        return True

    def clear(self) -> None:
        with self._lock:
            self._commit([])
