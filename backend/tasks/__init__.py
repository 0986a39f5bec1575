# tasks/__init__.py
from tasks.session_sweeper import SessionSweeper

__all__ = ["SessionSweeper"]
