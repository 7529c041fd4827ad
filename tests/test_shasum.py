from __future__ import annotations

from pathlib import Path

import allure

from session_build.shasum import (
    BOOTSTRAP,
    BUILD_PREFS,
    NO_SHASUM,
    OPTIONS,
    Shasum,
    bootstrap_shasum,
    eq_sources,
)

pytestmark = [
    allure.epic("Build Cache"),
    allure.feature("Shasum"),
]


def test_digest_entries_carry_name() -> None:
    shasum = Shasum.digest(b"abc", "file.thy")

    assert shasum.entries == ("a9993e364706816aba3e25717850c26c9cd0d89d file.thy",)
    assert Shasum.digest(b"abc").entries == ("a9993e364706816aba3e25717850c26c9cd0d89d",)


def test_digest_file_matches_digest_of_content(tmp_path: Path) -> None:
    path = tmp_path / "A.thy"
    path.write_bytes(b"theory A imports Main begin end\n")

    assert Shasum.digest_file(path, "A.thy") == Shasum.digest(path.read_bytes(), "A.thy")


def test_parse_reverses_str() -> None:
    shasum = Shasum.digest(b"x", "x") + Shasum.digest(b"y", "y")

    assert Shasum.parse(str(shasum)) == shasum
    assert Shasum.parse("") == NO_SHASUM
    assert NO_SHASUM.is_empty


def test_combine_keeps_order() -> None:
    first = Shasum.digest(b"1", "one")
    second = Shasum.digest(b"2", "two")

    assert Shasum.combine([first, second]).entries == first.entries + second.entries
    assert Shasum.combine([second, first]) != Shasum.combine([first, second])


def test_eq_sources_ignores_build_prefs_unless_thorough() -> None:
    base = Shasum.digest(b"src", "A.thy") + Shasum.digest(b"{}", OPTIONS)
    with_prefs = base + Shasum.digest(b'{"ml":"32"}', BUILD_PREFS)
    other_prefs = base + Shasum.digest(b'{"ml":"64"}', BUILD_PREFS)

    assert eq_sources(with_prefs, other_prefs)
    assert eq_sources(base, with_prefs)
    assert not eq_sources(with_prefs, other_prefs, build_thorough=True)
    assert not eq_sources(base, Shasum.digest(b"changed", "A.thy"))


def test_bootstrap_shasum_depends_on_platform() -> None:
    shasum = bootstrap_shasum("cpython-3.12-linux-x86_64")

    assert shasum.entries[0].endswith(f" {BOOTSTRAP}")
    assert shasum != bootstrap_shasum("cpython-3.12-darwin-arm64")
