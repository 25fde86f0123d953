from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import pytest

from ralphy.config import RalphySettings


def stream_json(text: str, *, input_tokens: int = 10, output_tokens: int = 5) -> str:
    """Agent output in the stream-json dialect."""

    records = [
        {"type": "system", "subtype": "init"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "working"}]}},
        {
            "type": "result",
            "result": text,
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    ]
    return "\n".join(json.dumps(record) for record in records) + "\n"


def error_json(message: str) -> str:
    return json.dumps({"type": "error", "error": {"message": message}}) + "\n"


@pytest.fixture
def make_settings(tmp_path: Path):
    def factory(**overrides) -> RalphySettings:
        values = {
            "prd_file": tmp_path / "PRD.md",
            "retry_delay": 0,
            "history_enabled": False,
            "poll_interval": 0.01,
        }
        values.update(overrides)
        return RalphySettings(**values)

    return factory


async def no_sleep(_delay: float) -> None:
    return None


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)

    git("init", "-q")
    git("symbolic-ref", "HEAD", "refs/heads/main")
    git("config", "user.email", "dev@example.com")
    git("config", "user.name", "Dev")
    (repo / "README.md").write_text("# project\n", encoding="utf-8")
    (repo / "PRD.md").write_text("- [ ] Add login\n- [ ] Add logout\n", encoding="utf-8")
    git("add", ".")
    git("commit", "-q", "-m", "initial")
    return repo
