"""
State store — durable completion flags and plugin pin records.

The file-backed store keeps one small file per record in a flags
directory (by default ``$JENKINS_HOME/.flags/``):

    <flags_dir>/automation_user_created   CompletionFlag JSON
    <flags_dir>/git_pinned                PinRecord JSON

Existence of the file is what counts. Empty or unparseable flag files
(such as the ones left by earlier shell or Chef tooling) still read as
"set". Writes are atomic (write to temp file, then rename) so a crash
never leaves a half-written marker behind.

The store only records what this reconciler has done. It does not
claim exclusive control of the managed server.
"""

from __future__ import annotations

import json
import logging
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from converge.core.errors import StateStoreError
from converge.core.models.state import CompletionFlag, PinRecord, pin_flag_key

logger = logging.getLogger(__name__)

DEFAULT_FLAGS_DIR = ".flags"

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_key(key: str) -> str:
    """Reject keys that cannot be used as a single file name."""
    if not _KEY_PATTERN.match(key):
        raise StateStoreError(f"Invalid state key: {key!r}")
    return key


class StateStore(ABC):
    """Abstract store for completion flags and pin records."""

    @abstractmethod
    def ensure(self) -> None:
        """Create the backing medium if needed."""

    @abstractmethod
    def get_flag_record(self, key: str) -> CompletionFlag | None:
        """Return the flag record for ``key``, or None if unset."""

    @abstractmethod
    def set_flag(self, key: str) -> CompletionFlag:
        """Record completion of ``key``. An existing flag is kept as-is."""

    @abstractmethod
    def clear_flag(self, key: str) -> bool:
        """Remove a flag. Returns True if one existed."""

    @abstractmethod
    def list_flags(self) -> list[CompletionFlag]:
        """All completion flags, oldest first."""

    @abstractmethod
    def get_pin(self, name: str) -> PinRecord | None:
        """Return the pin record for a plugin, or None."""

    @abstractmethod
    def set_pin(self, name: str, version: str) -> PinRecord:
        """Write a pin record, replacing any existing one."""

    @abstractmethod
    def delete_pin(self, name: str) -> bool:
        """Remove a pin record. Returns True if one existed."""

    @abstractmethod
    def list_pins(self) -> list[PinRecord]:
        """All pin records, sorted by plugin name."""

    def get_flag(self, key: str) -> bool:
        """Whether ``key`` has been completed."""
        return self.get_flag_record(key) is not None


class MemoryStateStore(StateStore):
    """In-process store for tests and mock runs."""

    def __init__(self) -> None:
        self._flags: dict[str, CompletionFlag] = {}
        self._pins: dict[str, PinRecord] = {}
        self._clock = 0

    def ensure(self) -> None:
        return None

    def get_flag_record(self, key: str) -> CompletionFlag | None:
        validate_key(key)
        if key in self._flags:
            return self._flags[key]
        # pin markers live in the flag namespace
        for pin in self._pins.values():
            if pin_flag_key(pin.plugin_name) == key:
                return CompletionFlag(action_key=key)
        return None

    def set_flag(self, key: str) -> CompletionFlag:
        validate_key(key)
        existing = self._flags.get(key)
        if existing is not None:
            return existing
        self._clock += 1
        flag = CompletionFlag(action_key=key, completed_at=self._clock)
        self._flags[key] = flag
        return flag

    def clear_flag(self, key: str) -> bool:
        return self._flags.pop(validate_key(key), None) is not None

    def list_flags(self) -> list[CompletionFlag]:
        return sorted(self._flags.values(), key=lambda f: f.completed_at)

    def get_pin(self, name: str) -> PinRecord | None:
        validate_key(pin_flag_key(name))
        return self._pins.get(name)

    def set_pin(self, name: str, version: str) -> PinRecord:
        validate_key(pin_flag_key(name))
        record = PinRecord(plugin_name=name, version=version)
        self._pins[name] = record
        return record

    def delete_pin(self, name: str) -> bool:
        return self._pins.pop(name, None) is not None

    def list_pins(self) -> list[PinRecord]:
        return [self._pins[name] for name in sorted(self._pins)]


class FileStateStore(StateStore):
    """One file per record in a flags directory."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def ensure(self) -> None:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory {self._root}: {e}") from e

    # ── Flags ────────────────────────────────────────────────────

    def get_flag_record(self, key: str) -> CompletionFlag | None:
        path = self._root / validate_key(key)
        if not path.is_file():
            return None
        data = self._read_json(path)
        if isinstance(data, dict) and "action_key" in data:
            try:
                return CompletionFlag.model_validate(data)
            except ValueError:
                logger.warning("Malformed flag record %s, treating as set", path)
        return CompletionFlag(action_key=key)

    def set_flag(self, key: str) -> CompletionFlag:
        existing = self.get_flag_record(key)
        if existing is not None:
            logger.debug("Flag %s already set (t=%d)", key, existing.completed_at)
            return existing

        flag = CompletionFlag(action_key=key, completed_at=self._next_logical_time())
        self._write_atomic(self._root / key, flag.model_dump(mode="json"))
        logger.debug("Flag %s set (t=%d)", key, flag.completed_at)
        return flag

    def clear_flag(self, key: str) -> bool:
        return self._unlink(self._root / validate_key(key))

    def list_flags(self) -> list[CompletionFlag]:
        flags: list[CompletionFlag] = []
        for path in self._iter_records():
            data = self._read_json(path)
            if isinstance(data, dict) and "plugin_name" in data:
                continue
            record = self.get_flag_record(path.name)
            if record is not None:
                flags.append(record)
        return sorted(flags, key=lambda f: (f.completed_at, f.action_key))

    # ── Pins ─────────────────────────────────────────────────────

    def get_pin(self, name: str) -> PinRecord | None:
        path = self._root / validate_key(pin_flag_key(name))
        if not path.is_file():
            return None
        data = self._read_json(path)
        if isinstance(data, dict) and "plugin_name" in data:
            try:
                return PinRecord.model_validate(data)
            except ValueError:
                logger.warning("Malformed pin record %s", path)
        # bare marker: the file text, if any, is the version
        version = data if isinstance(data, str) else data.get("version", "")
        return PinRecord(plugin_name=name, version=str(version).strip('"'))

    def set_pin(self, name: str, version: str) -> PinRecord:
        record = PinRecord(plugin_name=name, version=version)
        path = self._root / validate_key(pin_flag_key(name))
        self._write_atomic(path, record.model_dump(mode="json"))
        logger.debug("Pinned %s at %s", name, version)
        return record

    def delete_pin(self, name: str) -> bool:
        return self._unlink(self._root / validate_key(pin_flag_key(name)))

    def list_pins(self) -> list[PinRecord]:
        pins: list[PinRecord] = []
        for path in self._iter_records():
            data = self._read_json(path)
            if isinstance(data, dict) and "plugin_name" in data:
                try:
                    pins.append(PinRecord.model_validate(data))
                except ValueError:
                    logger.warning("Skipping malformed pin record %s", path)
        return sorted(pins, key=lambda p: p.plugin_name)

    # ── File helpers ─────────────────────────────────────────────

    def _iter_records(self) -> list[Path]:
        if not self._root.is_dir():
            return []
        try:
            return sorted(
                p for p in self._root.iterdir()
                if p.is_file() and not p.name.startswith(".")
            )
        except OSError as e:
            raise StateStoreError(f"Cannot list {self._root}: {e}") from e

    def _next_logical_time(self) -> int:
        latest = 0
        for path in self._iter_records():
            data = self._read_json(path)
            if isinstance(data, dict) and isinstance(data.get("completed_at"), int):
                latest = max(latest, data["completed_at"])
        return latest + 1

    def _read_json(self, path: Path) -> dict | str:
        """The parsed JSON object, or the stripped text for anything else.

        Only object records are decoded: a bare marker holding ``3.10``
        must stay the string ``"3.10"``.
        """
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"Cannot read {path}: {e}") from e
        text = raw.strip()
        if text.startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                return text
            if isinstance(data, dict):
                return data
        return text

    def _write_atomic(self, path: Path, data: dict) -> None:
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".record_", suffix=".tmp")
            tmp = Path(tmp_path)
            try:
                with open(_fd, "w", encoding="utf-8") as f:
                    f.write(content)
                tmp.replace(path)
            except Exception:
                tmp.unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error("Failed to write state record %s: %s", path, e)
            raise StateStoreError(f"Cannot write {path}: {e}") from e

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateStoreError(f"Cannot remove {path}: {e}") from e
