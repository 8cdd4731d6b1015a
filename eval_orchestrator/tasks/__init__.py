"""Task discovery: directories of prompt, fixture files and assertions."""

from .registry import TaskRegistry, load_task

__all__ = ["TaskRegistry", "load_task"]
