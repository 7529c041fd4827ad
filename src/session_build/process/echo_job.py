"""Local demo session job for build integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Write a deterministic artifact for the session given by the environment."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--session", default=os.getenv("SESSION_BUILD_SESSION", ""))
    parser.add_argument("--artifact", default=os.getenv("SESSION_BUILD_ARTIFACT", ""))
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    print(f"Session {args.session}")
    started = time.monotonic()
    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.exit_code != 0:
        print(f"Session {args.session} failed", file=sys.stderr)
        return args.exit_code

    if args.artifact and os.getenv("SESSION_BUILD_STORE_ARTIFACT", "1") == "1":
        artifact = Path(args.artifact)
        artifact.parent.mkdir(parents=True, exist_ok=True)
        artifact.write_text(
            "\n".join(
                [
                    f"session {args.session}",
                    os.getenv("SESSION_BUILD_SOURCES_SHASUM", ""),
                    os.getenv("SESSION_BUILD_INPUT_SHASUM", ""),
                ],
            ),
            "utf-8",
        )

    timings_path = os.getenv("SESSION_BUILD_TIMINGS")
    if timings_path:
        Path(timings_path).write_text(
            json.dumps([{"command": "echo", "elapsed": time.monotonic() - started}]),
            "utf-8",
        )
    print(f"Finished {args.session}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
