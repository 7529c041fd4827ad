"""Distributed session build scheduler."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("session-build")
except PackageNotFoundError:  # pragma: no cover - source checkout without install
    __version__ = "0.0.0"
