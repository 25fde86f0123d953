"""Async wrapper around the git and gh command line tools."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from ..agent.utils import sanitize_environment


class GitCommandError(RuntimeError):
    """Raised when a git or gh command exits non-zero."""

    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str) -> None:
        super().__init__(
            f"{' '.join(args[:3])} failed with exit code {returncode}: {stderr.strip()}"
        )
        self.args_used = args
        self.returncode = returncode
        self.stderr = stderr


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitClient:
    """Run version-control commands from the repository root."""

    def __init__(self, repo_root: Path, *, git: str = "git", gh: str = "gh") -> None:
        self.repo_root = Path(repo_root)
        self._git = git
        self._gh = gh

    async def run(self, *args: str, cwd: Path | None = None, check: bool = True) -> GitResult:
        return await self._exec(self._git, *args, cwd=cwd, check=check)

    async def gh(self, *args: str, cwd: Path | None = None, check: bool = True) -> GitResult:
        return await self._exec(self._gh, *args, cwd=cwd, check=check)

    async def _exec(self, binary: str, *args: str, cwd: Path | None, check: bool) -> GitResult:
        cmd = (binary, *args)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd or self.repo_root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment({"GIT_TERMINAL_PROMPT": "0"}),
            )
        except FileNotFoundError as exc:
            raise GitCommandError(cmd, 127, f"{binary} not found") from exc
        stdout_bytes, stderr_bytes = await process.communicate()
        result = GitResult(
            args=cmd,
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise GitCommandError(cmd, result.returncode, result.stderr)
        return result

    async def current_branch(self) -> str:
        result = await self.run("rev-parse", "--abbrev-ref", "HEAD", check=False)
        branch = result.stdout.strip()
        return branch if result.ok and branch and branch != "HEAD" else "main"

    async def list_branches(self) -> list[str]:
        result = await self.run("branch", "--list", "--format=%(refname:short)")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def list_worktrees(self) -> list[Path]:
        result = await self.run("worktree", "list", "--porcelain")
        return [
            Path(line.split(" ", 1)[1])
            for line in result.stdout.splitlines()
            if line.startswith("worktree ")
        ]

    async def force_branch(self, branch: str, base: str) -> None:
        await self.run("branch", "-f", branch, base)

    async def add_worktree(self, directory: Path, branch: str) -> None:
        await self.run("worktree", "add", "-f", str(directory), branch)

    async def remove_worktree(self, directory: Path, *, check: bool = True) -> GitResult:
        return await self.run("worktree", "remove", "-f", str(directory), check=check)

    async def prune_worktrees(self) -> None:
        await self.run("worktree", "prune", check=False)

    async def is_dirty(self) -> bool:
        result = await self.run("status", "--porcelain")
        return bool(result.stdout.strip())

    async def stash_push(self, message: str) -> bool:
        """Stash uncommitted changes; return whether anything was stashed."""

        if not await self.is_dirty():
            return False
        await self.run("stash", "push", "--include-untracked", "-m", message)
        return True

    async def stash_pop(self) -> None:
        await self.run("stash", "pop")

    async def checkout(self, branch: str, *, create: bool = False) -> None:
        if create:
            await self.run("checkout", "-b", branch)
        else:
            await self.run("checkout", branch)

    async def pull(self, branch: str, remote: str = "origin") -> bool:
        result = await self.run("pull", remote, branch, check=False)
        return result.ok

    async def push(self, branch: str, *, cwd: Path | None = None, remote: str = "origin") -> None:
        await self.run("push", "-u", remote, branch, cwd=cwd)

    async def create_pull_request(
        self,
        *,
        base: str,
        head: str,
        title: str,
        body: str,
        draft: bool = False,
        cwd: Path | None = None,
    ) -> str:
        args = ["pr", "create", "--base", base, "--head", head, "--title", title, "--body", body]
        if draft:
            args.append("--draft")
        result = await self.gh(*args, cwd=cwd)
        return result.stdout.strip()


__all__ = ["GitClient", "GitCommandError", "GitResult"]
