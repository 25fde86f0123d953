"""Task models and task source exports."""

from .models import Task
from .sources import (
    GitHubTaskSource,
    MarkdownFolderTaskSource,
    MarkdownTaskSource,
    TaskSource,
    TaskSourceError,
    YamlTaskSource,
    create_task_source,
)

__all__ = [
    "GitHubTaskSource",
    "MarkdownFolderTaskSource",
    "MarkdownTaskSource",
    "Task",
    "TaskSource",
    "TaskSourceError",
    "YamlTaskSource",
    "create_task_source",
]
