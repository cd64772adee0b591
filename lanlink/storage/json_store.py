"""Durable JSON records used for profiles, update metadata and logs."""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonRecord:
    """A single JSON document on disk, replaced atomically on every save."""

    def __init__(self, path: Path, default: Any = None) -> None:
        self._path = Path(path)
        self._default = default if default is not None else {}

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> Any:
        if not self._path.exists():
            return json.loads(json.dumps(self._default))
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load {self._path.name}: {e}")
            return json.loads(json.dumps(self._default))

    def save(self, data: Any) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self._path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class JsonLog:
    """Append-only JSON list. Entries are never mutated or removed."""

    def __init__(self, path: Path) -> None:
        self._record = JsonRecord(path, default=[])
        self._lock = asyncio.Lock()

    async def append(self, entry: dict) -> None:
        async with self._lock:
            await asyncio.to_thread(self._append_sync, entry)

    def _append_sync(self, entry: dict) -> None:
        entries = self._record.load()
        entries.append(entry)
        self._record.save(entries)

    async def entries(self) -> list[dict]:
        return await asyncio.to_thread(self._record.load)


class ActivityLog(JsonLog):
    """``{action, details, timestamp}`` entries for the activity-log query."""

    async def record(self, action: str, details: str) -> None:
        logger.debug(f"activity {action}: {details}")
        await self.append({"action": action, "details": details, "timestamp": utc_now()})
