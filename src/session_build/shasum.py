"""SHA-1 shasum lists used for content-addressed build caching.

A shasum is an ordered list of ``"<sha1-hex> <name>"`` entries. Sources of a session, the
output artifact of a session and the inputs of a session (all ancestor outputs) are each
described by one shasum, and cache validity is decided by comparing them.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

BUILD_PREFS = "<build_prefs>"
OPTIONS = "<options>"
COMMAND = "<command>"
BOOTSTRAP = "<bootstrap>"

_CHUNK_SIZE = 1 << 16


@dataclass(frozen=True, slots=True)
class Shasum:
    """Ordered list of digest entries."""

    entries: tuple[str, ...] = ()

    @classmethod
    def digest(cls, data: bytes, name: str = "") -> Shasum:
        return cls((_entry(hashlib.sha1(data).hexdigest(), name),))  # noqa: S324

    @classmethod
    def digest_file(cls, path: Path, name: str = "") -> Shasum:
        sha = hashlib.sha1()  # noqa: S324
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
                sha.update(chunk)
        return cls((_entry(sha.hexdigest(), name),))

    @classmethod
    def parse(cls, text: str) -> Shasum:
        return cls(tuple(line for line in text.splitlines() if line.strip()))

    @classmethod
    def combine(cls, shasums: Iterable[Shasum]) -> Shasum:
        entries: list[str] = []
        for shasum in shasums:
            entries.extend(shasum.entries)
        return cls(tuple(entries))

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def filter(self, predicate: Callable[[str], bool]) -> Shasum:
        return Shasum(tuple(entry for entry in self.entries if predicate(entry)))

    def __add__(self, other: Shasum) -> Shasum:
        return Shasum(self.entries + other.entries)

    def __str__(self) -> str:
        return "\n".join(self.entries)


NO_SHASUM = Shasum()


def bootstrap_shasum(platform: str) -> Shasum:
    """Input shasum for sessions without ancestors."""

    return Shasum.digest(platform.encode("utf-8"), BOOTSTRAP)


def eq_sources(shasum1: Shasum, shasum2: Shasum, *, build_thorough: bool = False) -> bool:
    """Compare sources shasums, ignoring build preferences unless thorough."""

    if build_thorough:
        return shasum1 == shasum2
    return _trim(shasum1) == _trim(shasum2)


def _trim(shasum: Shasum) -> Shasum:
    return shasum.filter(lambda entry: not entry.endswith(BUILD_PREFS))


def _entry(digest: str, name: str) -> str:
    return f"{digest} {name}" if name else digest
