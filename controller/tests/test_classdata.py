from __future__ import annotations

import os
from pathlib import Path

import pytest

from controller.src.classdata import (
    ClassDataStore,
    LoadError,
    ValidationError,
    load_directory,
    validate_all,
)

DEFAULT_CLASS = """
[agent]
  interval = "10s"

[[outputs.file]]
  files = ["stdout"]
"""


def _write(directory: Path, name: str, content: str) -> Path:
    path = directory / name
    path.write_text(content, encoding="utf-8")
    return path


def test_load_directory_reads_regular_files(tmp_path: Path) -> None:
    _write(tmp_path, "default", DEFAULT_CLASS)
    _write(tmp_path, "infra", "[agent]\n")
    (tmp_path / "nested").mkdir()

    data = load_directory(tmp_path)

    assert sorted(data) == ["default", "infra"]
    assert data["default"] == DEFAULT_CLASS


def test_load_directory_follows_configmap_style_symlinks(tmp_path: Path) -> None:
    data_dir = tmp_path / "..2024_01_01"
    data_dir.mkdir()
    _write(data_dir, "default", DEFAULT_CLASS)
    os.symlink(data_dir, tmp_path / "..data")
    os.symlink(tmp_path / "..data" / "default", tmp_path / "default")

    data = load_directory(tmp_path)

    assert list(data) == ["default"]


def test_load_directory_missing_path_raises(tmp_path: Path) -> None:
    with pytest.raises(LoadError, match="failed to read directory"):
        load_directory(tmp_path / "missing")


def test_validate_all_rejects_empty() -> None:
    with pytest.raises(ValidationError, match="no data could be found"):
        validate_all({})


def test_validate_all_names_the_invalid_file() -> None:
    with pytest.raises(ValidationError, match="file: broken"):
        validate_all({"default": DEFAULT_CLASS, "broken": "[agent\n"})


def test_store_serves_loaded_classes(tmp_path: Path) -> None:
    _write(tmp_path, "default", DEFAULT_CLASS)

    store = ClassDataStore.from_directory(tmp_path)

    assert store.get("default") == DEFAULT_CLASS
    assert store.get("missing") is None
    assert store.class_names() == ["default"]


def test_store_from_empty_directory_fails(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        ClassDataStore.from_directory(tmp_path)


def test_reload_picks_up_new_classes(tmp_path: Path) -> None:
    _write(tmp_path, "default", DEFAULT_CLASS)
    store = ClassDataStore.from_directory(tmp_path)

    _write(tmp_path, "infra", '[global_tags]\n  team = "infra"\n')
    store.reload()

    assert store.class_names() == ["default", "infra"]


def test_failed_reload_keeps_previous_classes(tmp_path: Path) -> None:
    _write(tmp_path, "default", DEFAULT_CLASS)
    store = ClassDataStore.from_directory(tmp_path)

    _write(tmp_path, "default", "not = [valid")
    with pytest.raises(ValidationError):
        store.reload()

    assert store.get("default") == DEFAULT_CLASS


def test_failed_reload_releases_the_reload_lock(tmp_path: Path) -> None:
    _write(tmp_path, "default", DEFAULT_CLASS)
    store = ClassDataStore.from_directory(tmp_path)

    _write(tmp_path, "broken", "not = [valid")
    with pytest.raises(ValidationError):
        store.reload()
    (tmp_path / "broken").unlink()

    assert store.reload(blocking=False) is True


def test_non_blocking_reload_skips_while_another_reload_runs(tmp_path: Path) -> None:
    _write(tmp_path, "default", DEFAULT_CLASS)
    store = ClassDataStore.from_directory(tmp_path)
    _write(tmp_path, "infra", '[global_tags]\n  team = "infra"\n')

    with store._reload_lock:
        assert store.reload(blocking=False) is False

    assert store.class_names() == ["default"]
    assert store.reload(blocking=False) is True
    assert store.class_names() == ["default", "infra"]
