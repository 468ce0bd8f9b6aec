from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class StateError(RuntimeError):
    """Raised when shared-state operations fail."""


class StateIOError(StateError):
    """Raised when persisted state cannot be read or written."""


class CorruptStateError(StateError):
    """Raised when persisted state fails validation on load."""


class StaleRevisionError(StateError):
    """Raised when a document changed between read and conditional write."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class JsonStateStore:
    """Namespaced JSON documents wrapped in versioned envelopes on local disk."""

    NAMESPACES = {"backlog", "session", "metrics"}
    SCHEMA_VERSION = 1
    UPDATE_ATTEMPTS = 4

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = state_dir.resolve()
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    def ensure_directory(self) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateIOError(f"Cannot create state directory {self.state_dir}: {exc}") from exc

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in JsonStateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def path_for(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _lock_owner_is_dead(self) -> bool:
        try:
            owner = int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            # Missing, or created but not yet stamped with its pid.
            return False
        if owner <= 0 or owner == os.getpid():
            return False
        try:
            os.kill(owner, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    @contextmanager
    def _state_lock(self):
        self.ensure_directory()
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_owner_is_dead():
                    try:
                        self.lock_file.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateIOError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
            except OSError as exc:
                raise StateIOError(f"Cannot acquire state lock: {exc}") from exc

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self.path_for(namespace)
        if not path.exists():
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateIOError(f"Cannot read {path}: {exc}") from exc
        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise CorruptStateError(f"{path.name} is not valid JSON: {exc}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self.path_for(namespace)
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.state_dir,
                prefix=f".{namespace}-",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
                temp_path = handle.name
            os.replace(temp_path, path)
        except OSError as exc:
            raise StateIOError(f"Cannot write {path}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if raw_payload is None:
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 0,
                "updated_at": None,
                "data": default,
            }
        if not (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            raise CorruptStateError("State document is missing its envelope fields.")
        try:
            schema_version = int(raw_payload["schema_version"])
            revision = int(raw_payload["revision"])
        except (TypeError, ValueError) as exc:
            raise CorruptStateError("State envelope has non-integer version fields.") from exc
        if schema_version > self.SCHEMA_VERSION:
            raise CorruptStateError(
                f"State schema {schema_version} is newer than supported "
                f"({self.SCHEMA_VERSION})."
            )
        return {
            "schema_version": schema_version,
            "revision": revision,
            "updated_at": raw_payload.get("updated_at"),
            "data": raw_payload["data"],
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StaleRevisionError(
                    f"{namespace} is at revision {current_revision}, "
                    f"expected {expected_revision}."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write ``namespace``, re-reading when another writer got there first."""
        fallback = {} if default is None else default
        for attempt in range(self.UPDATE_ATTEMPTS):
            envelope = self.get_envelope(namespace, default=fallback)
            updated = updater(envelope["data"])
            try:
                self.set_json(namespace, updated, expected_revision=envelope["revision"])
            except StaleRevisionError:
                if attempt + 1 == self.UPDATE_ATTEMPTS:
                    raise
                time.sleep(0.01)
                continue
            return updated
        raise StaleRevisionError(f"{namespace} could not be updated.")

    def get_session(self) -> dict[str, Any]:
        session = self.get_json("session", default={})
        return session if isinstance(session, dict) else {}

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}
