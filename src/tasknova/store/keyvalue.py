"""Account-scoped key-value storage with change notification."""

from __future__ import annotations

import os
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Callable

ChangeHandler = Callable[[str, "str | None"], None]


class ChangeBus:
    """Same-process publish/subscribe keyed by storage key."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[ChangeHandler]] = defaultdict(list)

    def subscribe(self, key: str, handler: ChangeHandler) -> Callable[[], None]:
        self._handlers[key].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(key)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, key: str, origin: str | None = None) -> int:
        handlers = list(self._handlers.get(key, ()))
        for handler in handlers:
            handler(key, origin)
        return len(handlers)

    def subscriber_count(self, key: str) -> int:
        return len(self._handlers.get(key, ()))


class KeyValueStore:
    """Read/write/notify contract. Subclasses provide the storage medium."""

    def __init__(self, bus: ChangeBus | None = None) -> None:
        self.bus = bus or ChangeBus()

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def set(self, key: str, value: str) -> bool:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> list[str]:
        raise NotImplementedError

    def notify(self, key: str, origin: str | None = None) -> None:
        self.bus.publish(key, origin)


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, bus: ChangeBus | None = None) -> None:
        super().__init__(bus)
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class FileKeyValueStore(KeyValueStore):
    """One file per key. Falls back to memory when the disk refuses a write."""

    def __init__(
        self,
        directory: str | Path,
        bus: ChangeBus | None = None,
        *,
        on_warning: Callable[[str], None] | None = None,
    ) -> None:
        super().__init__(bus)
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._memory: dict[str, str] = {}
        self._disk_available = True
        self._on_warning = on_warning

    @property
    def disk_available(self) -> bool:
        return self._disk_available

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self.directory / f"{safe}.json"

    def _warn(self, message: str) -> None:
        if self._on_warning is not None:
            self._on_warning(message)

    def get(self, key: str) -> str | None:
        if key in self._memory:
            return self._memory[key]
        if not self._disk_available:
            return None
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            self._warn(f"storage read failed for '{key}': {exc}")
            return None

    def set(self, key: str, value: str) -> bool:
        if not self._disk_available:
            self._memory[key] = value
            return False
        path = self._path(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp_", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_name, path)
        except OSError as exc:
            self._disk_available = False
            self._memory[key] = value
            self._warn(f"storage write failed for '{key}', keeping data in memory: {exc}")
            return False
        self._memory.pop(key, None)
        return True

    def remove(self, key: str) -> None:
        self._memory.pop(key, None)
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> list[str]:
        names = {p.stem for p in self.directory.glob("*.json") if not p.name.startswith(".tmp_")}
        return sorted(names | set(self._memory))
