from pathlib import Path

import pytest

from toplist_sync import paths


@pytest.fixture(autouse=True)
def _no_root_override(monkeypatch):
    monkeypatch.delenv(paths.ROOT_ENV_VAR, raising=False)


def test_repo_root_finds_pyproject_from_nested_start():
    start = Path(__file__).resolve().parent / "services"
    root = paths.find_repo_root(start)
    assert root == Path(__file__).resolve().parents[1]


def test_repo_file_joins_repo_root():
    resolved = paths.repo_file("config.json")
    assert resolved == Path(__file__).resolve().parents[1] / "config.json"


def test_find_repo_root_raises_without_marker(tmp_path, monkeypatch):
    monkeypatch.setattr(Path, "is_file", lambda self: False)
    monkeypatch.setattr(Path, "exists", lambda self: False)

    with pytest.raises(RuntimeError):
        paths.find_repo_root(tmp_path)


def test_repo_root_falls_back_to_cwd(tmp_path, monkeypatch):
    def no_root(_start=None):
        raise RuntimeError("no root")

    monkeypatch.setattr(paths, "find_repo_root", no_root)
    monkeypatch.chdir(tmp_path)

    assert paths.repo_root() == tmp_path


def test_root_override_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(paths.ROOT_ENV_VAR, str(tmp_path))

    assert paths.repo_file("config.json") == tmp_path / "config.json"
