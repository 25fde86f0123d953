"""Async runner for coding-agent CLIs."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from .utils import sanitize_environment

LineCallback = Callable[[str], None]

# stream-json result records carry the whole transcript on one line
_STREAM_LIMIT = 16 * 1024 * 1024


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


@dataclass(slots=True)
class AgentExecutionResult:
    """Holds the outcome of one agent CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True, slots=True)
class EngineCommand:
    """How to launch one agent CLI with a prompt."""

    binary: str
    flags: tuple[str, ...]
    prompt_flag: str | None = None
    env: tuple[tuple[str, str], ...] = ()

    def arguments(self, prompt: str) -> list[str]:
        args = list(self.flags)
        if self.prompt_flag:
            args.append(self.prompt_flag)
        args.append(prompt)
        return args


ENGINES: dict[str, EngineCommand] = {
    "claude": EngineCommand(
        binary="claude",
        flags=("--dangerously-skip-permissions", "--verbose", "--output-format", "stream-json"),
        prompt_flag="-p",
    ),
    "opencode": EngineCommand(
        binary="opencode",
        flags=("run", "--format", "json"),
        env=(("OPENCODE_PERMISSION", '{"*":"allow"}'),),
    ),
}


@dataclass(slots=True)
class ProcessRegistry:
    """Tracks live agent processes so an interrupt can terminate them."""

    processes: set[asyncio.subprocess.Process] = field(default_factory=set)

    def add(self, process: asyncio.subprocess.Process) -> None:
        self.processes.add(process)

    def discard(self, process: asyncio.subprocess.Process) -> None:
        self.processes.discard(process)

    async def terminate_all(self) -> None:
        for process in list(self.processes):
            await terminate_process(process)
        self.processes.clear()


async def terminate_process(process: asyncio.subprocess.Process, grace: float = 2.0) -> None:
    """Terminate a child process, escalating to kill after ``grace`` seconds."""

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


class AgentRunner:
    """Execute an agent CLI asynchronously inside a working directory."""

    def __init__(
        self,
        engine: str = "claude",
        executable: Path | None = None,
        *,
        registry: ProcessRegistry | None = None,
    ) -> None:
        if engine not in ENGINES:
            raise AgentRunnerError(f"Unknown agent engine '{engine}'")
        self.engine = engine
        self._command = ENGINES[engine]
        self._executable_path = self._resolve_executable(executable, self._command.binary)
        self.registry = registry or ProcessRegistry()

    @staticmethod
    def _resolve_executable(explicit: Path | None, binary: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        found = shutil.which(binary)
        if found is None:
            raise AgentNotFoundError(f"{binary} CLI executable not found on PATH")
        return Path(found)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def invoke(self, prompt: str, work_dir: Path) -> AgentExecutionResult:
        """Run the agent on ``prompt`` and capture its whole output."""

        return await self._invoke(*self._command.arguments(prompt), cwd=work_dir)

    async def invoke_streaming(
        self, prompt: str, work_dir: Path, on_line: LineCallback
    ) -> AgentExecutionResult:
        """Like :meth:`invoke`, but hand each stdout line to ``on_line`` as it arrives."""

        return await self._invoke(*self._command.arguments(prompt), cwd=work_dir, on_line=on_line)

    async def _invoke(
        self,
        *args: str,
        cwd: Path,
        on_line: LineCallback | None = None,
    ) -> AgentExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(dict(self._command.env)),
            limit=_STREAM_LIMIT,
        )
        self.registry.add(process)
        try:
            if on_line is None:
                stdout_bytes, stderr_bytes = await process.communicate()
                stdout = stdout_bytes.decode("utf-8", errors="replace")
                stderr = stderr_bytes.decode("utf-8", errors="replace")
            else:
                stdout, stderr = await asyncio.gather(
                    _read_lines(process.stdout, on_line),
                    _read_lines(process.stderr, None),
                )
                await process.wait()
        except asyncio.CancelledError:
            await terminate_process(process)
            raise
        finally:
            self.registry.discard(process)
        return AgentExecutionResult(
            args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr
        )


async def _read_lines(stream: asyncio.StreamReader | None, on_line: LineCallback | None) -> str:
    if stream is None:
        return ""
    chunks: list[str] = []
    while True:
        raw = await stream.readline()
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace")
        chunks.append(line)
        if on_line is not None and line.strip():
            on_line(line.rstrip("\n"))
    return "".join(chunks)


class FakeAgentRunner(AgentRunner):
    """Test double that replays canned agent outputs."""

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[AgentExecutionResult | str] | None = None,
        *,
        handler: Callable[[str, Path], AgentExecutionResult | str] | None = None,
        delay: float = 0.0,
        engine: str = "claude",
    ) -> None:
        self._responses = list(responses or [])
        self._handler = handler
        self._delay = delay
        self._invocations: list[tuple[str, Path]] = []
        self._executable_path = Path("/tmp/fake-agent")
        self._command = ENGINES[engine]
        self.engine = engine
        self.registry = ProcessRegistry()
        self.active = 0
        self.peak_active = 0

    async def invoke(self, prompt: str, work_dir: Path) -> AgentExecutionResult:
        return await self._fake(prompt, work_dir, None)

    async def invoke_streaming(
        self, prompt: str, work_dir: Path, on_line: LineCallback
    ) -> AgentExecutionResult:
        return await self._fake(prompt, work_dir, on_line)

    async def _fake(
        self, prompt: str, work_dir: Path, on_line: LineCallback | None
    ) -> AgentExecutionResult:
        self._invocations.append((prompt, Path(work_dir)))
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._handler is not None:
                response = self._handler(prompt, Path(work_dir))
            elif self._responses:
                response = self._responses.pop(0)
            else:
                response = ""
        finally:
            self.active -= 1
        if isinstance(response, str):
            response = AgentExecutionResult(
                args=(self.engine,), returncode=0, stdout=response, stderr=""
            )
        if on_line is not None:
            for line in response.stdout.splitlines():
                if line.strip():
                    on_line(line)
        return response

    @property
    def invocations(self) -> list[tuple[str, Path]]:
        return self._invocations


__all__ = [
    "ENGINES",
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "EngineCommand",
    "FakeAgentRunner",
    "ProcessRegistry",
    "terminate_process",
]
