"""Task source implementations.

Every source satisfies :class:`TaskSource`: ``all_pending()`` defines both the
single-task priority and the batch order, and ``mark_complete()`` is safe to
call more than once for the same id.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

import yaml
from pydantic import ValidationError

from ..config import RalphySettings
from .models import Task

logger = logging.getLogger(__name__)

_PENDING_LINE = re.compile(r"^- \[ \] (.+)$")
_PENDING_PREFIX = re.compile(r"^- \[ \] ", re.MULTILINE)
_COMPLETED_PREFIX = re.compile(r"^- \[x\] ", re.MULTILINE | re.IGNORECASE)


class TaskSourceError(RuntimeError):
    """Raised when a task store cannot be read or updated."""


class TaskSource(Protocol):
    """Contract consumed by the orchestrators."""

    kind: str

    def next_task(self) -> Task | None:
        ...

    def all_pending(self) -> list[Task]:
        ...

    def mark_complete(self, task_id: str) -> None:
        ...

    def count_remaining(self) -> int:
        ...

    def count_completed(self) -> int:
        ...


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise TaskSourceError(f"Task file not found: {path}") from exc


class MarkdownTaskSource:
    """Checkbox lines (``- [ ] title``) in a single markdown document."""

    kind = "markdown"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _pending_in(self, content: str, make_id: Callable[[int], str]) -> list[Task]:
        tasks: list[Task] = []
        for index, line in enumerate(content.split("\n")):
            match = _PENDING_LINE.match(line)
            if match and match.group(1).strip():
                tasks.append(Task(id=make_id(index + 1), title=match.group(1)))
        return tasks

    def all_pending(self) -> list[Task]:
        return self._pending_in(_read_text(self.path), str)

    def next_task(self) -> Task | None:
        pending = self.all_pending()
        return pending[0] if pending else None

    def mark_complete(self, task_id: str) -> None:
        _mark_line_complete(self.path, _parse_line_number(task_id))

    def count_remaining(self) -> int:
        return len(_PENDING_PREFIX.findall(_read_text(self.path)))

    def count_completed(self) -> int:
        return len(_COMPLETED_PREFIX.findall(_read_text(self.path)))


class MarkdownFolderTaskSource(MarkdownTaskSource):
    """Checkbox lines spread over every ``*.md`` file in one folder.

    Files are visited alphabetically and task ids take the form ``file.md:line``.
    """

    kind = "markdown-folder"

    def __init__(self, folder: Path) -> None:
        super().__init__(folder)
        self.folder = Path(folder)

    @property
    def markdown_files(self) -> list[Path]:
        if not self.folder.is_dir():
            return []
        return sorted(path for path in self.folder.glob("*.md") if path.is_file())

    def all_pending(self) -> list[Task]:
        tasks: list[Task] = []
        for path in self.markdown_files:
            tasks.extend(
                self._pending_in(_read_text(path), lambda line, name=path.name: f"{name}:{line}")
            )
        return tasks

    def mark_complete(self, task_id: str) -> None:
        file_name, separator, line = task_id.rpartition(":")
        if not separator or not file_name:
            raise TaskSourceError(f"Invalid task id format: {task_id}")
        _mark_line_complete(self.folder / file_name, _parse_line_number(line))

    def count_remaining(self) -> int:
        return sum(len(_PENDING_PREFIX.findall(_read_text(path))) for path in self.markdown_files)

    def count_completed(self) -> int:
        return sum(len(_COMPLETED_PREFIX.findall(_read_text(path))) for path in self.markdown_files)


def _parse_line_number(raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise TaskSourceError(f"Invalid task id format: {raw}") from exc


def _mark_line_complete(path: Path, line_number: int) -> None:
    lines = _read_text(path).split("\n")
    index = line_number - 1
    if 0 <= index < len(lines) and lines[index].startswith("- [ ] "):
        lines[index] = "- [x] " + lines[index][len("- [ ] "):]
        path.write_text("\n".join(lines), encoding="utf-8")


class YamlTaskSource:
    """``tasks:`` list in a YAML document; ids are list positions."""

    kind = "yaml"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        try:
            document = yaml.safe_load(_read_text(self.path))
        except yaml.YAMLError as exc:
            raise TaskSourceError(f"Failed to parse YAML in {self.path}: {exc}") from exc
        if document is None:
            return {"tasks": []}
        if not isinstance(document, dict) or not isinstance(document.get("tasks", []), list):
            raise TaskSourceError(f"{self.path} must contain a top-level 'tasks' list")
        document.setdefault("tasks", [])
        return document

    def _tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for index, entry in enumerate(self._load()["tasks"]):
            if not isinstance(entry, dict):
                raise TaskSourceError(f"Task #{index} in {self.path} must be a mapping")
            try:
                tasks.append(
                    Task(
                        id=str(index),
                        title=entry.get("title") or "",
                        completed=bool(entry.get("completed", False)),
                        parallel_group=entry.get("parallel_group"),
                        body=entry.get("description"),
                    )
                )
            except ValidationError as exc:
                raise TaskSourceError(f"Task validation error in {self.path}: {exc}") from exc
        return tasks

    def all_pending(self) -> list[Task]:
        return [task for task in self._tasks() if not task.completed]

    def next_task(self) -> Task | None:
        pending = self.all_pending()
        return pending[0] if pending else None

    def mark_complete(self, task_id: str) -> None:
        document = self._load()
        index = _parse_line_number(task_id)
        entries = document["tasks"]
        if not 0 <= index < len(entries):
            raise TaskSourceError(f"Unknown task id {task_id} in {self.path}")
        if entries[index].get("completed") is True:
            return
        entries[index]["completed"] = True
        self.path.write_text(
            yaml.safe_dump(document, sort_keys=False, allow_unicode=True), encoding="utf-8"
        )

    def count_remaining(self) -> int:
        return len(self.all_pending())

    def count_completed(self) -> int:
        return sum(1 for task in self._tasks() if task.completed)


CommandRunner = Callable[[Sequence[str]], str]


def run_gh(args: Sequence[str]) -> str:
    """Run the GitHub CLI and return its stdout."""

    try:
        completed = subprocess.run(
            ["gh", *args], capture_output=True, text=True, check=False
        )
    except FileNotFoundError as exc:
        raise TaskSourceError("GitHub CLI (gh) is not installed") from exc
    if completed.returncode != 0:
        raise TaskSourceError(
            f"gh {' '.join(args[:2])} failed with exit code {completed.returncode}: "
            f"{completed.stderr.strip()}"
        )
    return completed.stdout


class GitHubTaskSource:
    """Open issues of a repository; closing an issue completes the task."""

    kind = "github"

    def __init__(
        self,
        repo: str,
        label: str | None = None,
        *,
        runner: CommandRunner | None = None,
    ) -> None:
        self.repo = repo
        self.label = label
        self._run = runner or run_gh

    def _list(self, state: str, fields: str) -> list[dict[str, Any]]:
        args = ["issue", "list", "--repo", self.repo, "--state", state, "--json", fields]
        if self.label:
            args.extend(["--label", self.label])
        raw = self._run(args)
        try:
            payload = json.loads(raw or "[]")
        except json.JSONDecodeError as exc:
            raise TaskSourceError(f"Unexpected gh output: {raw[:200]}") from exc
        return payload if isinstance(payload, list) else []

    def all_pending(self) -> list[Task]:
        return [
            Task(id=str(issue["number"]), title=issue.get("title") or "", body=issue.get("body"))
            for issue in self._list("open", "number,title,body")
        ]

    def next_task(self) -> Task | None:
        pending = self.all_pending()
        return pending[0] if pending else None

    def mark_complete(self, task_id: str) -> None:
        try:
            self._run(["issue", "close", task_id, "--repo", self.repo])
        except TaskSourceError as exc:
            # gh refuses to close an already closed issue
            logger.warning(
                "Could not close issue", extra={"issue": task_id, "error": str(exc)}
            )

    def count_remaining(self) -> int:
        return len(self._list("open", "number"))

    def count_completed(self) -> int:
        return len(self._list("closed", "number"))


def create_task_source(settings: RalphySettings) -> TaskSource:
    """Build the task source selected by the settings."""

    if settings.task_source == "markdown":
        return MarkdownTaskSource(settings.prd_file)
    if settings.task_source == "markdown-folder":
        return MarkdownFolderTaskSource(settings.prd_file)
    if settings.task_source == "yaml":
        return YamlTaskSource(settings.prd_file)
    if settings.task_source == "github":
        if not settings.github_repo:
            raise TaskSourceError("RALPHY_GITHUB_REPO (owner/repo) is required for the github source")
        return GitHubTaskSource(settings.github_repo, settings.github_label)
    raise TaskSourceError(f"Unknown task source type: {settings.task_source}")


__all__ = [
    "GitHubTaskSource",
    "MarkdownFolderTaskSource",
    "MarkdownTaskSource",
    "TaskSource",
    "TaskSourceError",
    "YamlTaskSource",
    "create_task_source",
    "run_gh",
]
