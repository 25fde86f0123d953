from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from conftest import no_sleep, requires_git, stream_json
from ralphy.agent import FakeAgentRunner
from ralphy.git import GitClient, WorkspaceError, WorktreeHandle, WorktreeManager, agent_branch_name
from ralphy.orchestrator import (
    AgentRun,
    AgentStatus,
    OrchestrationContext,
    Termination,
    build_parallel_prompt,
    plan_batches,
    run_session,
)
from ralphy.tasks import MarkdownTaskSource, Task


class SpySource(MarkdownTaskSource):
    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.marked: list[str] = []

    def mark_complete(self, task_id: str) -> None:
        self.marked.append(task_id)
        super().mark_complete(task_id)


class StubGit:
    async def current_branch(self) -> str:
        return "main"


class FakeWorktrees:
    def __init__(self, root: Path, *, fail_for: frozenset[int] = frozenset()) -> None:
        self.root = root
        self.git = StubGit()
        self.fail_for = fail_for
        self.created: list[WorktreeHandle] = []
        self.released: list[WorktreeHandle] = []
        self.cleanups = 0

    @asynccontextmanager
    async def acquire(self, task: Task, agent_index: int, base_branch: str):
        if agent_index in self.fail_for:
            raise WorkspaceError(f"cannot create worktree for agent {agent_index}")
        directory = self.root / f"agent-{agent_index}"
        directory.mkdir(parents=True, exist_ok=True)
        handle = WorktreeHandle(directory, agent_branch_name(task, agent_index), base_branch)
        self.created.append(handle)
        try:
            yield handle
        finally:
            self.released.append(handle)

    async def cleanup_all(self) -> int:
        self.cleanups += 1
        return 0


def write_prd(path: Path, count: int) -> Path:
    path.write_text("".join(f"- [ ] Task {number}\n" for number in range(1, count + 1)), encoding="utf-8")
    return path


def make_context(settings, runner, source) -> OrchestrationContext:
    return OrchestrationContext(
        settings=settings,
        source=source,
        runner=runner,
        work_dir=settings.prd_file.parent,
        sleep=no_sleep,
    )


def test_plan_batches_preserves_order() -> None:
    tasks = [Task(id=str(number), title=f"Task {number}") for number in range(7)]

    batches = plan_batches(tasks, 3)

    assert [len(batch) for batch in batches] == [3, 3, 1]
    assert [task.id for batch in batches for task in batch] == [task.id for task in tasks]
    assert plan_batches([], 3) == []
    with pytest.raises(ValueError):
        plan_batches(tasks, 0)


def test_agent_run_transitions_only_forward() -> None:
    run = AgentRun(agent_index=1, task=Task(id="1", title="x"))
    run.advance(AgentStatus.SETTING_UP)
    run.advance(AgentStatus.RUNNING)

    with pytest.raises(ValueError):
        run.advance(AgentStatus.SETTING_UP)

    run.advance(AgentStatus.DONE)
    with pytest.raises(ValueError):
        run.advance(AgentStatus.FAILED)


def test_runs_all_tasks_in_bounded_batches(make_settings, tmp_path: Path) -> None:
    settings = make_settings(parallel=True, max_parallel=3)
    source = SpySource(write_prd(settings.prd_file, 7))
    runner = FakeAgentRunner(
        handler=lambda prompt, work_dir: stream_json("ok", input_tokens=10, output_tokens=2),
        delay=0.02,
    )
    worktrees = FakeWorktrees(tmp_path / "wt")

    summary = asyncio.run(run_session(make_context(settings, runner, source), worktrees=worktrees))

    assert summary.termination is Termination.ALL_COMPLETE
    assert summary.iterations == 7
    assert runner.peak_active == 3
    assert sorted(source.marked) == [str(line) for line in range(1, 8)]
    assert len(source.marked) == 7
    assert source.count_remaining() == 0
    assert (summary.input_tokens, summary.output_tokens) == (70, 14)
    assert [handle.directory.name for handle in worktrees.created] == [f"agent-{n}" for n in range(1, 8)]
    assert len(worktrees.released) == 7
    assert worktrees.cleanups == 1
    assert summary.branches[0] == "ralphy/agent-1-task-1"
    assert {work_dir for _, work_dir in runner.invocations} == {
        handle.directory for handle in worktrees.created
    }


class SpyHistory:
    def __init__(self) -> None:
        self.worktrees: list[tuple[str, str]] = []

    def record_worktree(self, **kwargs) -> None:
        self.worktrees.append((kwargs["path"], kwargs["status"]))

    def record_agent_run(self, **kwargs) -> None:
        pass

    def record_event(self, **kwargs) -> None:
        pass


def test_history_records_worktree_lifecycle(make_settings, tmp_path: Path) -> None:
    settings = make_settings(parallel=True, max_parallel=2)
    source = SpySource(write_prd(settings.prd_file, 2))
    runner = FakeAgentRunner(handler=lambda prompt, work_dir: stream_json("ok"))
    history = SpyHistory()
    ctx = make_context(settings, runner, source)
    ctx.history = history

    asyncio.run(run_session(ctx, worktrees=FakeWorktrees(tmp_path / "wt")))

    for name in ("agent-1", "agent-2"):
        path = str(tmp_path / "wt" / name)
        assert [status for recorded, status in history.worktrees if recorded == path] == ["active", "released"]


def test_zero_pending_tasks_runs_nothing(make_settings, tmp_path: Path) -> None:
    settings = make_settings(parallel=True)
    settings.prd_file.write_text("- [x] done\n", encoding="utf-8")
    runner = FakeAgentRunner()
    worktrees = FakeWorktrees(tmp_path / "wt")

    summary = asyncio.run(
        run_session(make_context(settings, runner, SpySource(settings.prd_file)), worktrees=worktrees)
    )

    assert summary.termination is Termination.NO_TASKS
    assert summary.iterations == 0
    assert runner.invocations == []
    assert worktrees.created == []


def test_failed_slot_does_not_affect_siblings(make_settings, tmp_path: Path) -> None:
    settings = make_settings(parallel=True, max_parallel=3, max_retries=2)
    source = SpySource(write_prd(settings.prd_file, 3))

    def handler(prompt: str, work_dir: Path) -> str:
        return "" if "TASK: Task 2" in prompt else stream_json("ok")

    runner = FakeAgentRunner(handler=handler)
    worktrees = FakeWorktrees(tmp_path / "wt")

    summary = asyncio.run(run_session(make_context(settings, runner, source), worktrees=worktrees))

    assert sorted(source.marked) == ["1", "3"]
    assert summary.failed_tasks == ["2"]
    assert "- [ ] Task 2" in settings.prd_file.read_text(encoding="utf-8")
    assert len(worktrees.released) == 3
    assert "ralphy/agent-2-task-2" not in summary.branches


def test_workspace_failure_marks_only_that_slot(make_settings, tmp_path: Path) -> None:
    settings = make_settings(parallel=True, max_parallel=3)
    source = SpySource(write_prd(settings.prd_file, 3))
    runner = FakeAgentRunner(handler=lambda prompt, work_dir: stream_json("ok"))
    worktrees = FakeWorktrees(tmp_path / "wt", fail_for=frozenset({2}))

    summary = asyncio.run(run_session(make_context(settings, runner, source), worktrees=worktrees))

    assert summary.completed_tasks == ["1", "3"]
    assert summary.failed_tasks == ["2"]
    assert len(runner.invocations) == 2


def test_max_iterations_stops_issuing_batches(make_settings, tmp_path: Path) -> None:
    settings = make_settings(parallel=True, max_parallel=3, max_iterations=4)
    source = SpySource(write_prd(settings.prd_file, 9))
    runner = FakeAgentRunner(handler=lambda prompt, work_dir: stream_json("ok"))

    summary = asyncio.run(
        run_session(make_context(settings, runner, source), worktrees=FakeWorktrees(tmp_path / "wt"))
    )

    assert summary.termination is Termination.MAX_ITERATIONS
    assert summary.iterations == 6
    assert len(source.marked) == 6


def test_dry_run_creates_no_worktrees(make_settings, tmp_path: Path) -> None:
    settings = make_settings(parallel=True, dry_run=True)
    source = SpySource(write_prd(settings.prd_file, 2))
    runner = FakeAgentRunner()
    worktrees = FakeWorktrees(tmp_path / "wt")

    summary = asyncio.run(run_session(make_context(settings, runner, source), worktrees=worktrees))

    assert summary.termination is Termination.DRY_RUN
    assert runner.invocations == []
    assert worktrees.created == []
    assert source.marked == []


def test_interrupt_releases_worktrees(make_settings, tmp_path: Path) -> None:
    settings = make_settings(parallel=True, max_parallel=3)
    source = SpySource(write_prd(settings.prd_file, 3))
    runner = FakeAgentRunner(handler=lambda prompt, work_dir: stream_json("ok"), delay=10)
    worktrees = FakeWorktrees(tmp_path / "wt")

    async def scenario():
        session = asyncio.create_task(run_session(make_context(settings, runner, source), worktrees=worktrees))
        await asyncio.sleep(0.1)
        session.cancel()
        return await session

    summary = asyncio.run(scenario())

    assert summary.termination is Termination.INTERRUPTED
    assert len(worktrees.released) == 3
    assert worktrees.cleanups >= 1
    assert source.marked == []


def test_parallel_prompt_forbids_tracker_edits(make_settings) -> None:
    prompt = build_parallel_prompt(Task(id="1", title="Add search", body="Use FTS"), make_settings())

    assert "TASK: Add search" in prompt
    assert "Use FTS" in prompt
    assert "Do NOT modify PRD.md" in prompt


@requires_git
def test_parallel_run_against_real_worktrees(make_settings, git_repo: Path) -> None:
    settings = make_settings(parallel=True, max_parallel=2, prd_file=git_repo / "PRD.md")
    source = MarkdownTaskSource(settings.prd_file)
    git = GitClient(git_repo)

    def handler(prompt: str, work_dir: Path) -> str:
        assert (work_dir / "PRD.md").exists()
        assert work_dir != git_repo
        return stream_json("ok")

    runner = FakeAgentRunner(handler=handler)
    ctx = OrchestrationContext(settings=settings, source=source, runner=runner, work_dir=git_repo, git=git, sleep=no_sleep)
    worktrees = WorktreeManager(git, seed_files=[settings.prd_file])

    summary = asyncio.run(run_session(ctx, worktrees=worktrees))

    branches = asyncio.run(git.list_branches())
    assert summary.completed_tasks == ["1", "2"]
    assert "ralphy/agent-1-add-login" in branches
    assert "ralphy/agent-2-add-logout" in branches
    assert len(asyncio.run(git.list_worktrees())) == 1
    assert not worktrees.base_dir.exists()
