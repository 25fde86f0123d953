from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path

from conftest import no_sleep, requires_git, stream_json
from ralphy.agent import COMPLETION_MARKER, FakeAgentRunner
from ralphy.git import GitClient, GitCommandError
from ralphy.orchestrator import OrchestrationContext, Termination, build_prompt, run_session
from ralphy.tasks import MarkdownTaskSource, Task


class FakeGit:
    def __init__(self, *, existing_branch: bool = False) -> None:
        self.calls: list[tuple] = []
        self.existing_branch = existing_branch
        self.repo_root = Path(".")

    async def current_branch(self) -> str:
        return "main"

    async def stash_push(self, message: str) -> bool:
        self.calls.append(("stash_push",))
        return True

    async def stash_pop(self) -> None:
        self.calls.append(("stash_pop",))

    async def checkout(self, branch: str, *, create: bool = False) -> None:
        if create and self.existing_branch:
            raise GitCommandError(("git", "checkout", "-b"), 128, "already exists")
        self.calls.append(("checkout", branch, create))

    async def pull(self, branch: str, remote: str = "origin") -> bool:
        self.calls.append(("pull", branch))
        return False

    async def push(self, branch: str, *, cwd=None, remote: str = "origin") -> None:
        self.calls.append(("push", branch))

    async def create_pull_request(self, *, base, head, title, body, draft=False, cwd=None) -> str:
        self.calls.append(("pr", base, head, title, draft))
        return "https://github.com/acme/app/pull/1"


def write_prd(path: Path, *titles: str) -> Path:
    path.write_text("".join(f"- [ ] {title}\n" for title in titles), encoding="utf-8")
    return path


def make_context(settings, runner, tmp_path: Path, git=None) -> OrchestrationContext:
    return OrchestrationContext(
        settings=settings,
        source=MarkdownTaskSource(settings.prd_file),
        runner=runner,
        work_dir=tmp_path,
        git=git,
        sleep=no_sleep,
    )


def test_runs_until_no_tasks_remain(make_settings, tmp_path: Path) -> None:
    settings = make_settings()
    prd = write_prd(settings.prd_file, "Add login", "Add logout")
    runner = FakeAgentRunner(
        [stream_json("one", input_tokens=100, output_tokens=10), stream_json("two", input_tokens=50, output_tokens=5)]
    )

    summary = asyncio.run(run_session(make_context(settings, runner, tmp_path)))

    assert summary.termination is Termination.ALL_COMPLETE
    assert summary.iterations == 2
    assert summary.completed_tasks == ["1", "2"]
    assert (summary.input_tokens, summary.output_tokens) == (150, 15)
    assert summary.cost_is_estimate
    assert summary.cost == 150 * 0.000003 + 15 * 0.000015
    assert prd.read_text(encoding="utf-8") == "- [x] Add login\n- [x] Add logout\n"
    assert "Implement this task: Add login" in runner.invocations[0][0]
    assert runner.invocations[0][1] == tmp_path


def test_empty_source_reports_no_tasks(make_settings, tmp_path: Path) -> None:
    settings = make_settings()
    settings.prd_file.write_text("# nothing to do\n", encoding="utf-8")

    summary = asyncio.run(run_session(make_context(settings, FakeAgentRunner(), tmp_path)))

    assert summary.termination is Termination.NO_TASKS
    assert summary.iterations == 0


def test_completion_marker_stops_even_with_pending_tasks(make_settings, tmp_path: Path) -> None:
    settings = make_settings()
    write_prd(settings.prd_file, "Add login", "Add logout", "Add search")
    runner = FakeAgentRunner([stream_json(f"all done {COMPLETION_MARKER}")])

    summary = asyncio.run(run_session(make_context(settings, runner, tmp_path)))

    assert summary.termination is Termination.ALL_COMPLETE
    assert summary.completed_tasks == ["1"]
    assert summary.marker_disagreement
    assert len(runner.invocations) == 1


def test_failed_task_is_not_marked_and_loop_continues(make_settings, tmp_path: Path) -> None:
    settings = make_settings(max_iterations=3, max_retries=2)
    prd = write_prd(settings.prd_file, "Add login")
    runner = FakeAgentRunner(handler=lambda prompt, work_dir: "")

    summary = asyncio.run(run_session(make_context(settings, runner, tmp_path)))

    assert summary.termination is Termination.MAX_ITERATIONS
    assert summary.iterations == 3
    assert summary.completed_tasks == []
    assert summary.failed_tasks == ["1"]
    assert len(runner.invocations) == 6
    assert prd.read_text(encoding="utf-8") == "- [ ] Add login\n"


def test_max_iterations_stops_after_success(make_settings, tmp_path: Path) -> None:
    settings = make_settings(max_iterations=1)
    write_prd(settings.prd_file, "Add login", "Add logout")
    runner = FakeAgentRunner(handler=lambda prompt, work_dir: stream_json("ok"))

    summary = asyncio.run(run_session(make_context(settings, runner, tmp_path)))

    assert summary.termination is Termination.MAX_ITERATIONS
    assert summary.completed_tasks == ["1"]


def test_dry_run_shows_prompt_without_invoking(make_settings, tmp_path: Path) -> None:
    settings = make_settings(dry_run=True)
    prd = write_prd(settings.prd_file, "Add login")
    runner = FakeAgentRunner()

    summary = asyncio.run(run_session(make_context(settings, runner, tmp_path)))

    assert summary.termination is Termination.DRY_RUN
    assert runner.invocations == []
    assert summary.completed_tasks == []
    assert prd.read_text(encoding="utf-8") == "- [ ] Add login\n"


def test_branch_per_task_creates_branch_and_pr(make_settings, tmp_path: Path) -> None:
    settings = make_settings(branch_per_task=True, create_pr=True, draft_pr=True)
    write_prd(settings.prd_file, "Add login")
    runner = FakeAgentRunner([stream_json("ok")])
    git = FakeGit()

    summary = asyncio.run(run_session(make_context(settings, runner, tmp_path, git=git)))

    assert summary.branches == ["ralphy/add-login"]
    assert git.calls == [
        ("stash_push",),
        ("checkout", "main", False),
        ("pull", "main"),
        ("checkout", "ralphy/add-login", True),
        ("stash_pop",),
        ("push", "ralphy/add-login"),
        ("pr", "main", "ralphy/add-login", "Add login", True),
        ("checkout", "main", False),
    ]


def test_branch_per_task_reuses_existing_branch(make_settings, tmp_path: Path) -> None:
    settings = make_settings(branch_per_task=True, base_branch="develop")
    write_prd(settings.prd_file, "Add login")
    git = FakeGit(existing_branch=True)

    asyncio.run(run_session(make_context(settings, FakeAgentRunner([stream_json("ok")]), tmp_path, git=git)))

    assert ("checkout", "ralphy/add-login", False) in git.calls
    assert git.calls[-1] == ("checkout", "develop", False)


def test_branch_name_falls_back_for_non_ascii_titles(make_settings, tmp_path: Path) -> None:
    settings = make_settings(branch_per_task=True)
    write_prd(settings.prd_file, "修复登录")
    git = FakeGit()

    summary = asyncio.run(run_session(make_context(settings, FakeAgentRunner([stream_json("ok")]), tmp_path, git=git)))

    assert summary.completed_tasks == ["1"]
    assert summary.branches == ["ralphy/task-1"]
    assert ("checkout", "ralphy/task-1", True) in git.calls


@requires_git
def test_failed_branch_setup_restores_local_changes(make_settings, git_repo: Path) -> None:
    settings = make_settings(
        branch_per_task=True,
        base_branch="does-not-exist",
        max_iterations=1,
        prd_file=git_repo / "PRD.md",
    )
    (git_repo / "README.md").write_text("# project\nlocal edit\n", encoding="utf-8")
    runner = FakeAgentRunner([stream_json("ok")])
    ctx = OrchestrationContext(
        settings=settings,
        source=MarkdownTaskSource(settings.prd_file),
        runner=runner,
        work_dir=git_repo,
        git=GitClient(git_repo),
        sleep=no_sleep,
    )

    summary = asyncio.run(run_session(ctx))

    def git(*args: str) -> str:
        return subprocess.run(["git", *args], cwd=git_repo, check=True, capture_output=True, text=True).stdout

    assert summary.failed_tasks == ["1"]
    assert runner.invocations == []
    assert (git_repo / "README.md").read_text(encoding="utf-8") == "# project\nlocal edit\n"
    assert git("stash", "list") == ""
    assert git("rev-parse", "--abbrev-ref", "HEAD").strip() == "main"


def test_prompt_reflects_settings(make_settings) -> None:
    task = Task(id="1", title="Add login")

    full = build_prompt(task, make_settings())
    fast = build_prompt(task, make_settings(skip_tests=True, skip_lint=True, task_source="yaml"))

    assert "Write tests for the feature." in full
    assert "Run linting" in full
    assert full.rstrip().endswith(COMPLETION_MARKER + ".")
    assert "Write tests" not in fast
    assert "Run linting" not in fast
    assert "set completed: true" in fast
