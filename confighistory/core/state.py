"""Runtime state — per-config last known hash and naming, persisted as JSON."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger


@dataclass
class ConfigRuntimeRecord:
    """What the engine last observed for one tracked path."""

    id: str
    friendly_name: str
    last_hash: str = ""
    last_checked: str = ""  # ISO datetime
    last_error: str = ""


class RuntimeState:
    """
    Runtime record store — reads/writes state.json.

    Key format: tracked config path.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._records: dict[str, ConfigRuntimeRecord] = {}
        self._lock = threading.Lock()
        self._version = 1

    def load(self) -> None:
        """Load runtime records from disk."""
        with self._lock:
            self._records.clear()
            if not self._path.exists():
                return
            try:
                with open(self._path, encoding="utf-8") as f:
                    data = json.load(f)
                self._version = data.get("version", 1)
                for key, raw in data.get("configs", {}).items():
                    try:
                        self._records[key] = ConfigRuntimeRecord(**raw)
                    except TypeError as e:
                        logger.warning(f"Skipping malformed runtime record '{key}': {e}")
            except (json.JSONDecodeError, OSError) as e:
                logger.error(f"Failed to load runtime state: {e}")

    def save(self) -> None:
        """Persist runtime records to disk."""
        with self._lock:
            data = {
                "version": self._version,
                "configs": {key: asdict(rec) for key, rec in self._records.items()},
            }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(f".{threading.get_ident()}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            tmp.replace(self._path)
        except OSError as e:
            logger.error(f"Failed to save runtime state: {e}")
            tmp.unlink(missing_ok=True)

    def get(self, path: str) -> ConfigRuntimeRecord | None:
        with self._lock:
            return self._records.get(path)

    def observe(self, path: str, config_id: str, friendly_name: str, content_hash: str) -> None:
        """Record a successful hash of *path*."""
        with self._lock:
            self._records[path] = ConfigRuntimeRecord(
                id=config_id,
                friendly_name=friendly_name,
                last_hash=content_hash,
                last_checked=datetime.now(tz=timezone.utc).isoformat(),
            )
        self.save()

    def record_error(self, path: str, error: str) -> None:
        with self._lock:
            rec = self._records.get(path)
            if rec is None:
                rec = ConfigRuntimeRecord(id=path, friendly_name=path)
                self._records[path] = rec
            rec.last_error = error
            rec.last_checked = datetime.now(tz=timezone.utc).isoformat()
        self.save()

    def rename(self, old_path: str, new_path: str) -> None:
        with self._lock:
            rec = self._records.pop(old_path, None)
            if rec is None:
                return
            if rec.id == old_path:
                rec.id = new_path
            if rec.friendly_name == old_path:
                rec.friendly_name = new_path
            self._records[new_path] = rec
        self.save()

    def remove(self, path: str) -> None:
        with self._lock:
            self._records.pop(path, None)
        self.save()

    def paths(self) -> list[str]:
        with self._lock:
            return list(self._records)
