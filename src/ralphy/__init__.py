"""Ralphy: run CLI coding agents against a task list until it is done."""

__version__ = "3.1.0"

__all__ = ["__version__"]
