from __future__ import annotations

import json
import os
import stat
from pathlib import Path

import pytest

from opshub_errors import NotFoundError, RegistryError, ValidationError
from project_id import compute_project_id, real_path
from project_registry import DEFAULT_WORKTREE_ID, ProjectRegistry, clamp_prompt_limit


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    path = tmp_path / "my-repo"
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path: Path) -> Path:
    return tmp_path / "config" / "web-projects.json"


def test_add_project_is_idempotent(store: Path, repo_dir: Path) -> None:
    clock = FakeClock()
    registry = ProjectRegistry(store, clock=clock)

    first = registry.add_project(str(repo_dir))
    clock.now += 10
    second = registry.add_project(str(repo_dir) + "/")

    assert first.id == second.id == compute_project_id(real_path(repo_dir))
    assert first.name == "my-repo"
    assert second.last_accessed == int(clock.now * 1000)
    assert len(registry.list_projects()) == 1


def test_add_project_rejects_bad_paths(store: Path, tmp_path: Path) -> None:
    registry = ProjectRegistry(store)
    afile = tmp_path / "file.txt"
    afile.write_text("x", encoding="utf-8")

    for bad in ("", "relative/path", str(tmp_path / "missing"), str(afile)):
        with pytest.raises(ValidationError):
            registry.add_project(bad)
    assert registry.list_projects() == []


def test_default_worktree_invariant(store: Path, repo_dir: Path) -> None:
    registry = ProjectRegistry(store)
    project = registry.add_project(str(repo_dir), name="Demo")

    worktrees = registry.get_worktrees(project.id)
    assert [w.id for w in worktrees] == [DEFAULT_WORKTREE_ID]
    assert worktrees[0].path == project.path
    assert worktrees[0].title == DEFAULT_WORKTREE_ID

    with pytest.raises(ValidationError):
        registry.remove_worktree_metadata(project.id, DEFAULT_WORKTREE_ID)
    with pytest.raises(ValidationError):
        registry.update_worktree_title(project.id, DEFAULT_WORKTREE_ID, "Main")


def test_default_worktree_is_restored_on_load(store: Path, repo_dir: Path) -> None:
    store.parent.mkdir(parents=True)
    store.write_text(
        json.dumps(
            {
                "projects": [
                    {
                        "id": "abc",
                        "name": "Legacy",
                        "path": str(repo_dir),
                        "lastAccessed": 1,
                        "worktrees": [{"id": "feature", "path": str(repo_dir / "wt"), "title": ""}],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    registry = ProjectRegistry(store)
    worktrees = registry.get_worktrees("abc")
    assert [w.id for w in worktrees] == [DEFAULT_WORKTREE_ID, "feature"]
    assert worktrees[1].title == "feature"
    assert registry.get_settings("abc").codex.auto_prompt is True


def test_missing_project_directories_are_skipped(store: Path, tmp_path: Path) -> None:
    store.parent.mkdir(parents=True)
    store.write_text(
        json.dumps({"projects": [{"id": "gone", "name": "Gone", "path": str(tmp_path / "nope")}]}),
        encoding="utf-8",
    )
    registry = ProjectRegistry(store)
    assert registry.list_projects() == []
    with pytest.raises(NotFoundError):
        registry.get_project("gone")


def test_corrupt_store_raises_and_is_not_overwritten(store: Path, repo_dir: Path) -> None:
    store.parent.mkdir(parents=True)
    store.write_text("{ not json", encoding="utf-8")

    registry = ProjectRegistry(store)
    with pytest.raises(RegistryError):
        registry.list_projects()
    with pytest.raises(RegistryError):
        registry.add_project(str(repo_dir))
    registry.shutdown()

    assert store.read_text(encoding="utf-8") == "{ not json"


def test_persistence_roundtrip(store: Path, repo_dir: Path) -> None:
    registry = ProjectRegistry(store)
    project = registry.add_project(str(repo_dir), name="Demo")
    registry.ensure_worktree_metadata(project.id, str(repo_dir / "wt-one"), "Login Form")
    registry.update_settings(project.id, {"codex": {"promptCharLimit": 12000}})
    registry.mark_dirty()
    registry.save()

    assert stat.S_IMODE(os.stat(store).st_mode) == 0o600
    data = json.loads(store.read_text(encoding="utf-8"))
    assert data["projects"][0]["lastAccessed"] == project.last_accessed
    assert data["projects"][0]["settings"] == {"codex": {"autoPrompt": True, "promptCharLimit": 12000}}

    reloaded = ProjectRegistry(store)
    again = reloaded.get_project(project.id)
    assert again.name == "Demo"
    assert [(w.id, w.title) for w in again.worktrees] == [
        (DEFAULT_WORKTREE_ID, DEFAULT_WORKTREE_ID),
        ("login-form", "Login Form"),
    ]


def test_list_projects_most_recent_first(store: Path, tmp_path: Path) -> None:
    clock = FakeClock()
    registry = ProjectRegistry(store, clock=clock)
    for name in ("a", "b", "c"):
        (tmp_path / name).mkdir()
        registry.add_project(str(tmp_path / name))
        clock.now += 1
    registry.add_project(str(tmp_path / "a"))

    assert [p.name for p in registry.list_projects()] == ["a", "c", "b"]


def test_update_and_remove_project(store: Path, repo_dir: Path) -> None:
    registry = ProjectRegistry(store)
    project = registry.add_project(str(repo_dir))

    assert registry.update_project(project.id, "  Renamed ").name == "Renamed"
    with pytest.raises(ValidationError):
        registry.update_project(project.id, "   ")
    with pytest.raises(NotFoundError):
        registry.update_project("missing", "x")

    assert registry.remove_project(project.id) is True
    assert registry.remove_project(project.id) is False
    assert repo_dir.is_dir()


def test_settings_are_clamped(store: Path, repo_dir: Path) -> None:
    registry = ProjectRegistry(store)
    project = registry.add_project(str(repo_dir))

    assert registry.update_settings(project.id, {"codex": {"promptCharLimit": 5}}).codex.prompt_char_limit == 1000
    assert registry.update_settings(project.id, {"codex": {"promptCharLimit": 10**6}}).codex.prompt_char_limit == 20000
    updated = registry.update_settings(project.id, {"codex": {"autoPrompt": False}})
    assert updated.codex.auto_prompt is False
    assert updated.codex.prompt_char_limit == 20000

    assert clamp_prompt_limit("nonsense") == 8000


def test_worktree_ids_get_numeric_suffixes(store: Path, repo_dir: Path) -> None:
    registry = ProjectRegistry(store)
    project = registry.add_project(str(repo_dir))

    ids = [
        registry.ensure_worktree_metadata(project.id, str(repo_dir / f"wt{i}"), "Feature X").id
        for i in range(3)
    ]
    assert ids == ["feature-x", "feature-x-2", "feature-x-3"]
    assert registry.ensure_worktree_metadata(project.id, str(repo_dir / "d"), "Default").id == "default-2"


def test_worktree_title_heuristic(store: Path, repo_dir: Path) -> None:
    registry = ProjectRegistry(store)
    project = registry.add_project(str(repo_dir))
    path = str(repo_dir / "wt")

    created = registry.ensure_worktree_metadata(project.id, path, "feature/login")
    assert created.title == "feature/login"

    # A friendly title replaces a branch-like one, but not the other way round.
    assert registry.ensure_worktree_metadata(project.id, path, "Login Page").title == "Login Page"
    assert registry.ensure_worktree_metadata(project.id, path, "feature-login").title == "Login Page"
    assert registry.ensure_worktree_metadata(project.id, path, "Another Name").title == "Login Page"

    renamed = registry.update_worktree_title(project.id, created.id, "Checkout Flow")
    assert renamed.title == "Checkout Flow"
    with pytest.raises(ValidationError):
        registry.update_worktree_title(project.id, created.id, "  ")
    with pytest.raises(NotFoundError):
        registry.update_worktree_title(project.id, "nope", "x")


def test_remove_worktree_metadata(store: Path, repo_dir: Path) -> None:
    registry = ProjectRegistry(store)
    project = registry.add_project(str(repo_dir))
    meta = registry.ensure_worktree_metadata(project.id, str(repo_dir / "wt"), "Scratch")

    assert registry.find_worktree(project.id, meta.id) is not None
    assert registry.remove_worktree_metadata(project.id, meta.id) is True
    assert registry.remove_worktree_metadata(project.id, meta.id) is False
    assert registry.find_worktree(project.id, meta.id) is None
