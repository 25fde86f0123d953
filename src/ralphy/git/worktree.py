"""Per-agent git worktrees.

Every concurrent agent gets its own directory (``<base>/agent-<n>``) and its own
branch (``ralphy/agent-<n>-<slug>``). Disjoint names keep concurrent slots from
touching each other; git's own locking serializes the registry updates.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable

from ..tasks import Task
from .client import GitClient, GitCommandError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "ralphy"
SLUG_MAX_LENGTH = 50
PROGRESS_FILE = "progress.txt"


class WorkspaceError(RuntimeError):
    """Raised when a worktree cannot be created or released."""


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Normalize free text into a bounded branch-name fragment."""

    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def task_slug(task: Task) -> str:
    """Branch fragment for ``task``; titles with no ASCII alphanumerics fall back to the id."""

    slug = slugify(task.title)
    if slug:
        return slug
    id_slug = slugify(task.id)
    if id_slug:
        return f"task-{id_slug}"
    return "task-" + hashlib.sha1(task.title.encode("utf-8")).hexdigest()[:8]


def task_branch_name(task: Task) -> str:
    return f"{BRANCH_PREFIX}/{task_slug(task)}"


def agent_branch_name(task: Task, agent_index: int) -> str:
    return f"{BRANCH_PREFIX}/agent-{agent_index}-{task_slug(task)}"


@dataclass(frozen=True, slots=True)
class WorktreeHandle:
    """Exclusive ownership of one worktree directory and its branch."""

    directory: Path
    branch_name: str
    base_branch: str


class WorktreeManager:
    """Create and tear down isolated worktrees under one base directory."""

    def __init__(
        self,
        git: GitClient,
        base_dir: Path | None = None,
        *,
        seed_files: Iterable[Path] = (),
        progress_file: str = PROGRESS_FILE,
    ) -> None:
        self.git = git
        self._owns_base_dir = base_dir is None
        self.base_dir = Path(base_dir) if base_dir else Path(tempfile.mkdtemp(prefix="ralphy-worktrees-"))
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.seed_files = tuple(Path(path) for path in seed_files)
        self.progress_file = progress_file

    def directory_for(self, agent_index: int) -> Path:
        return self.base_dir / f"agent-{agent_index}"

    async def create(self, task: Task, agent_index: int, base_branch: str) -> WorktreeHandle:
        """Reset the agent branch to ``base_branch`` and check it out in a fresh directory.

        Safe to repeat for the same slot: a stale directory and its registration
        are dropped first, then the branch is force-moved, discarding any local
        commits from an earlier attempt.
        """

        branch = agent_branch_name(task, agent_index)
        directory = self.directory_for(agent_index)
        try:
            await self._drop_directory(directory)
            await self.git.force_branch(branch, base_branch)
            await self.git.add_worktree(directory, branch)
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to create worktree for agent {agent_index}: {exc}") from exc

        handle = WorktreeHandle(directory=directory, branch_name=branch, base_branch=base_branch)
        try:
            self._seed(directory)
        except OSError as exc:
            try:
                await self.release(handle)
            except WorkspaceError as release_exc:
                logger.warning("Worktree release failed", extra={"error": str(release_exc)})
            raise WorkspaceError(f"Failed to seed worktree for agent {agent_index}: {exc}") from exc
        logger.debug(
            "Created worktree",
            extra={"agent": agent_index, "directory": str(directory), "branch": branch},
        )
        return handle

    async def _drop_directory(self, directory: Path) -> None:
        if directory.exists():
            await self.git.remove_worktree(directory, check=False)
            shutil.rmtree(directory, ignore_errors=True)
        await self.git.prune_worktrees()

    def _seed(self, directory: Path) -> None:
        for source in self.seed_files:
            path = source if source.is_absolute() else self.git.repo_root / source
            if path.is_file():
                shutil.copy2(path, directory / path.name)
            elif path.is_dir():
                shutil.copytree(path, directory / path.name, dirs_exist_ok=True)
        (directory / self.progress_file).touch(exist_ok=True)

    async def release(self, handle: WorktreeHandle) -> None:
        """Remove the worktree registration and directory; the branch is kept."""

        try:
            await self.git.remove_worktree(handle.directory)
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to remove worktree {handle.directory}: {exc}") from exc
        logger.debug(
            "Released worktree",
            extra={"directory": str(handle.directory), "branch": handle.branch_name},
        )

    @asynccontextmanager
    async def acquire(
        self, task: Task, agent_index: int, base_branch: str
    ) -> AsyncIterator[WorktreeHandle]:
        """Scoped worktree: released on exit, including on cancellation."""

        handle = await self.create(task, agent_index, base_branch)
        try:
            yield handle
        finally:
            try:
                await self.release(handle)
            except WorkspaceError as exc:
                logger.warning("Worktree release failed", extra={"error": str(exc)})

    async def cleanup_all(self) -> int:
        """Force-remove every agent worktree left under the base directory.

        Failures are logged and ignored; returns the number of directories removed.
        """

        removed = 0
        if not self.base_dir.exists():
            return removed
        for directory in sorted(self.base_dir.glob("agent-*")):
            if not directory.is_dir():
                continue
            try:
                await self.git.remove_worktree(directory, check=False)
            except GitCommandError as exc:
                logger.debug("Worktree removal failed", extra={"directory": str(directory), "error": str(exc)})
            shutil.rmtree(directory, ignore_errors=True)
            removed += 1
        try:
            await self.git.prune_worktrees()
        except GitCommandError as exc:
            logger.debug("Worktree prune failed", extra={"error": str(exc)})
        if self._owns_base_dir:
            shutil.rmtree(self.base_dir, ignore_errors=True)
        return removed


__all__ = [
    "BRANCH_PREFIX",
    "WorkspaceError",
    "WorktreeHandle",
    "WorktreeManager",
    "agent_branch_name",
    "slugify",
    "task_branch_name",
    "task_slug",
]
