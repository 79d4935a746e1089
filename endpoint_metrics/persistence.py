import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

@dataclass(frozen=True)
class StorageResult:
    """Tagged outcome of a storage call; `error` names the failure kind."""
    ok: bool
    value: str | None = None
    error: str | None = None
    detail: str | None = None

class KeyValueStorage(Protocol):
    """Durable string -> string store. Implementations may raise OSError/ValueError."""
    def get_item(self, key: str) -> str | None: ...
    def set_item(self, key: str, value: str) -> None: ...

class MemoryStorage:
    def __init__(self):
        self.items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

class JsonFileStorage:
    """All keys live in one JSON object on disk; writes replace the file atomically."""
    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def get_item(self, key: str) -> str | None:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        try:
            data = self._read_all()
        except ValueError:
            # unreadable file: start over rather than refusing every save
            data = {}
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

class PersistenceAdapter:
    """Loads/saves one serialized snapshot under a fixed key without ever raising."""
    def __init__(self, storage: KeyValueStorage, key: str = "retry_endpoint_metrics_v1"):
        self.storage = storage
        self.key = key
        self._log = logging.getLogger(__name__)

    def save(self, payload: str) -> StorageResult:
        try:
            self.storage.set_item(self.key, payload)
        except (OSError, ValueError, TypeError) as e:
            self._log.warning(
                "storage write failed",
                extra={"event": "storage.error", "extra_fields": {"op": "save", "key": self.key, "error": repr(e)}},
            )
            return StorageResult(ok=False, error="unavailable", detail=repr(e))
        return StorageResult(ok=True)

    def load(self) -> StorageResult:
        try:
            value = self.storage.get_item(self.key)
        except (OSError, ValueError, TypeError) as e:
            self._log.warning(
                "storage read failed",
                extra={"event": "storage.error", "extra_fields": {"op": "load", "key": self.key, "error": repr(e)}},
            )
            return StorageResult(ok=False, error="unavailable", detail=repr(e))
        if not value:
            return StorageResult(ok=False, error="absent")
        return StorageResult(ok=True, value=value)
