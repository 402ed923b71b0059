from __future__ import annotations

import logging
import stat
import threading
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

import toml

from controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ClassDataError(RuntimeError):
    """Base class for Telegraf class data failures."""


class LoadError(ClassDataError):
    """Raised when the class directory or one of its files cannot be read."""


class ValidationError(ClassDataError):
    """Raised when the loaded class set is empty or a class is not valid TOML."""


def load_directory(path: Path) -> dict[str, str]:
    """Read every regular file in *path* into a ``{file name: contents}`` dict.

    Entries are resolved with ``stat`` so the symlinks Kubernetes uses for
    mounted ConfigMaps count as regular files, while the ``..data``
    directory links are skipped.
    """
    try:
        entries = sorted(path.iterdir())
    except OSError as exc:
        raise LoadError(f"failed to read directory: {path}, error: {exc}") from exc

    data: dict[str, str] = {}
    for entry in entries:
        try:
            mode = entry.stat().st_mode
        except OSError as exc:
            raise LoadError(f"failed to stat: {entry.name}, error: {exc}") from exc
        if not stat.S_ISREG(mode):
            continue
        try:
            data[entry.name] = entry.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise LoadError(f"failed to read data from file: {entry.name}, error: {exc}") from exc
    return data


def validate_all(data: Mapping[str, str]) -> None:
    """Require at least one class and that every class parses as TOML."""
    if not data:
        raise ValidationError("failed to validate class data, no data could be found")
    for name, document in data.items():
        try:
            toml.loads(document)
        except toml.TomlDecodeError as exc:
            raise ValidationError(
                f"failed to validate class data for file: {name}, error: {exc}"
            ) from exc


class ClassDataStore:
    """In-memory cache of Telegraf class documents loaded from a directory.

    Readers always see one complete, validated snapshot.  :meth:`reload`
    builds and validates a new snapshot without holding the read lock and
    only swaps it in on success, so a failed reload leaves the previous
    classes in service.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._data: Mapping[str, str] = MappingProxyType({})
        self._lock = threading.Lock()
        self._reload_lock = threading.Lock()

    @classmethod
    def from_directory(cls, path: str | Path) -> ClassDataStore:
        """Create a store and load it, raising :class:`ClassDataError` on failure."""
        store = cls(path)
        store.reload()
        return store

    def reload(self, blocking: bool = True) -> bool:
        """Re-read the directory and swap in the result.

        Returns False without reloading when ``blocking`` is False and another
        reload is already running.
        """
        if not self._reload_lock.acquire(blocking=blocking):
            LOGGER.info("Class data reload already in progress, skipping")
            return False
        try:
            snapshot = load_directory(self.path)
            validate_all(snapshot)
        except ClassDataError:
            METRICS.class_reloads_total.labels(result="failure").inc()
            LOGGER.exception(
                "Failed to reload class data from %s; keeping previous classes", self.path
            )
            raise
        else:
            with self._lock:
                self._data = MappingProxyType(snapshot)
        finally:
            self._reload_lock.release()

        METRICS.class_reloads_total.labels(result="success").inc()
        METRICS.classes_loaded.set(len(snapshot))
        LOGGER.info(
            "Loaded %d telegraf class(es) from %s: %s",
            len(snapshot),
            self.path,
            ", ".join(sorted(snapshot)),
        )
        return True

    def get(self, class_name: str) -> str | None:
        with self._lock:
            return self._data.get(class_name)

    def class_names(self) -> list[str]:
        with self._lock:
            return sorted(self._data)
