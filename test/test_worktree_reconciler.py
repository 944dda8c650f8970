from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
from pathlib import Path
from typing import Tuple

import pytest

from opshub_config import OpsHubSettings
from opshub_errors import NotFoundError, SandboxError, ValidationError
from project_registry import Project, ProjectRegistry
from worktree_reconciler import WorktreeReconciler, creation_title

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "OpsHub Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "OpsHub Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=cwd, env=GIT_ENV, check=True, capture_output=True, text=True
    )
    return completed.stdout


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True)
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    git(path, "add", "README.md")
    git(path, "-c", "commit.gpgsign=false", "commit", "-q", "-m", "init")
    return path


def make_env(tmp_path: Path, repo: Path) -> Tuple[ProjectRegistry, WorktreeReconciler, Project]:
    settings = OpsHubSettings(config_dir=tmp_path / "config", sandbox_roots=(tmp_path,))
    registry = ProjectRegistry(settings.projects_file)
    reconciler = WorktreeReconciler(registry, settings=settings)
    project = registry.add_project(str(repo))
    return registry, reconciler, project


@pytest.fixture
def env(tmp_path: Path):
    repo = init_repo(tmp_path / "repo")
    registry, reconciler, project = make_env(tmp_path, repo)
    return registry, reconciler, project, repo


def test_creation_title() -> None:
    assert creation_title("Login Page", "feature/login", "/r/wt") == "Login Page"
    assert creation_title("feature-login", "feature/login", "/r/wt") == "Feature Login"
    assert creation_title("lowercase", None, "/r/my_dir") == "My Dir"
    assert creation_title(None, None, "/") == "Worktree"


def test_fresh_project_lists_primary_checkout(env) -> None:
    _, reconciler, project, _ = env
    worktrees = asyncio.run(reconciler.list_worktrees(project.id))

    assert len(worktrees) == 1
    primary = worktrees[0]
    assert primary["id"] == "default"
    assert primary["isPrimary"] is True
    assert primary["relativePath"] == ""
    assert primary["branch"] == "main"
    assert primary["path"] == project.path


def test_create_list_and_remove_worktree(env) -> None:
    registry, reconciler, project, repo = env

    created = asyncio.run(
        reconciler.create_worktree(project.id, "worktrees/login", branch="feature/login", create_branch=True)
    )
    assert created["id"] == "feature-login"
    assert created["title"] == "Feature Login"
    assert created["branch"] == "feature/login"
    assert created["relativePath"] == "worktrees/login"
    assert created["isPrimary"] is False
    assert len(created["head"]) == 40
    assert (repo / "worktrees" / "login" / "README.md").is_file()

    listed = asyncio.run(reconciler.list_worktrees(project.id))
    assert [w["id"] for w in listed] == ["default", "feature-login"]
    assert listed[1]["branch"] == "feature/login"
    assert listed[1]["title"] == "Feature Login"

    asyncio.run(reconciler.remove_worktree(project.id, "feature-login"))
    assert not (repo / "worktrees" / "login").exists()
    assert registry.find_worktree(project.id, "feature-login") is None
    assert [w["id"] for w in asyncio.run(reconciler.list_worktrees(project.id))] == ["default"]


def test_checkout_existing_branch_and_rename(env) -> None:
    _, reconciler, project, repo = env
    git(repo, "branch", "topic")

    created = asyncio.run(reconciler.create_worktree(project.id, "worktrees/topic", title="Topic Work", branch="topic"))
    assert created["branch"] == "topic"
    assert created["title"] == "Topic Work"

    renamed = asyncio.run(reconciler.rename_worktree(project.id, created["id"], "Renamed Topic"))
    assert renamed["title"] == "Renamed Topic"
    assert renamed["branch"] == "topic"

    # A branch-like title coming back from git does not replace the chosen one.
    listed = asyncio.run(reconciler.list_worktrees(project.id))
    assert listed[1]["title"] == "Renamed Topic"


def test_default_and_unknown_worktrees_cannot_be_removed(env) -> None:
    _, reconciler, project, repo = env
    with pytest.raises(ValidationError):
        asyncio.run(reconciler.remove_worktree(project.id, "default"))
    with pytest.raises(NotFoundError):
        asyncio.run(reconciler.remove_worktree(project.id, "nope"))
    assert repo.is_dir()


def test_invalid_requests_touch_nothing(env) -> None:
    registry, reconciler, project, _ = env
    with pytest.raises(SandboxError):
        asyncio.run(reconciler.create_worktree(project.id, "/etc/opshub-wt", branch="x", create_branch=True))
    with pytest.raises(ValidationError):
        asyncio.run(reconciler.create_worktree(project.id, "worktrees/bad", branch="../evil", create_branch=True))
    with pytest.raises(ValidationError):
        asyncio.run(reconciler.create_worktree(project.id, "worktrees/bad", create_branch=True))
    with pytest.raises(ValidationError):
        asyncio.run(reconciler.create_worktree(project.id, "   "))
    assert [w.id for w in registry.get_worktrees(project.id)] == ["default"]


def test_external_changes_are_reconciled(env, tmp_path: Path) -> None:
    registry, reconciler, project, repo = env

    git(repo, "worktree", "add", "-q", "-b", "side", str(tmp_path / "side-wt"))
    listed = asyncio.run(reconciler.list_worktrees(project.id))
    assert [(w["id"], w["title"]) for w in listed] == [("default", "default"), ("side", "side")]

    git(repo, "worktree", "remove", str(tmp_path / "side-wt"))
    listed = asyncio.run(reconciler.list_worktrees(project.id))
    assert [w["id"] for w in listed] == ["default"]
    assert registry.find_worktree(project.id, "side") is None


def test_deleted_directory_is_pruned(env) -> None:
    registry, reconciler, project, repo = env
    created = asyncio.run(
        reconciler.create_worktree(project.id, "worktrees/gone", branch="gone", create_branch=True)
    )
    shutil.rmtree(created["path"])

    listed = asyncio.run(reconciler.list_worktrees(project.id))
    assert [w["id"] for w in listed] == ["default"]
    assert registry.find_worktree(project.id, created["id"]) is None


def test_branches_and_remote_checkout(tmp_path: Path) -> None:
    origin = init_repo(tmp_path / "origin")
    git(origin, "branch", "feature/remote")
    clone = tmp_path / "clone"
    git(tmp_path, "clone", "-q", str(origin), str(clone))
    _, reconciler, project = make_env(tmp_path, clone)

    branches = asyncio.run(reconciler.list_branches(project.id))
    names = [b["name"] for b in branches]
    assert names[0] == "main"
    assert "origin/main" in names
    assert "origin/feature/remote" in names
    assert not any(name.endswith("/HEAD") for name in names)
    assert {"name": "main", "checkedOut": True} in branches
    assert {"name": "origin/main", "checkedOut": True} in branches

    created = asyncio.run(reconciler.create_worktree(project.id, "worktrees/remote", branch="origin/feature/remote"))
    assert created["branch"] == "feature/remote"
    tracking = git(clone, "rev-parse", "--abbrev-ref", "feature/remote@{upstream}").strip()
    assert tracking == "origin/feature/remote"

    branches = asyncio.run(reconciler.list_branches(project.id))
    assert {"name": "feature/remote", "checkedOut": True} in branches


def test_external_worktrees_dir(tmp_path: Path) -> None:
    repo = init_repo(tmp_path / "My Repo")
    settings = OpsHubSettings(
        config_dir=tmp_path / "config", sandbox_roots=(tmp_path,), worktrees_dir=tmp_path / "wts"
    )
    registry = ProjectRegistry(settings.projects_file)
    reconciler = WorktreeReconciler(registry, settings=settings)
    project = registry.add_project(str(repo))

    resolved = reconciler.resolve_worktree_path(project.path, "worktrees/feat")
    assert resolved.endswith("/wts/my-repo/feat")

    outside = OpsHubSettings(config_dir=tmp_path / "config", sandbox_roots=(tmp_path,), worktrees_dir=Path("/etc"))
    assert WorktreeReconciler(registry, settings=outside).worktrees_base is None
