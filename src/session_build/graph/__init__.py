"""Session dependency graph and project descriptor resolution."""

from session_build.graph.descriptor import load_project
from session_build.graph.sessions import SessionGraph, SessionGraphError, SessionInfo

__all__ = [
    "SessionGraph",
    "SessionGraphError",
    "SessionInfo",
    "load_project",
]
