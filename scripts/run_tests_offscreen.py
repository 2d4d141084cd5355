#!/usr/bin/env python3
"""Run the test suite with Qt in offscreen mode.

Usage:
  python scripts/run_tests_offscreen.py [--timeout SECONDS] [--verbose] [--] [pytest args...]

Examples:
  python scripts/run_tests_offscreen.py tests/test_loader.py::test_reload_is_rejected
  python scripts/run_tests_offscreen.py -- -k "dispatcher or frame_queue"
"""

from __future__ import annotations

import argparse
import os
import shlex
import subprocess
import sys


def main() -> int:
    p = argparse.ArgumentParser(description="Run pytest offscreen with a per-test timeout")
    p.add_argument("--timeout", type=int, default=300, help="Maximum seconds for the whole run")
    p.add_argument("--verbose", action="store_true", help="Don't use -q (quiet)")
    p.add_argument("--log-level", default=None, help="Forwarded as ASYNC_IMAGE_LOG_LEVEL")
    p.add_argument("pytest_args", nargs=argparse.REMAINDER, help="Additional pytest args")
    args = p.parse_args()

    env = os.environ.copy()
    env.setdefault("QT_QPA_PLATFORM", "offscreen")
    if args.log_level:
        env["ASYNC_IMAGE_LOG_LEVEL"] = args.log_level

    cmd = [sys.executable, "-m", "pytest"]
    if not args.verbose:
        cmd += ["-q", "-x", "--maxfail=1"]
    # pipeline tests wait on worker futures; a hung pool should fail one test, not the run
    cmd.append(f"--timeout={min(60, args.timeout)}")
    cmd += [a for a in args.pytest_args if a != "--"]

    print("Running:", " ".join(shlex.quote(c) for c in cmd))
    try:
        completed = subprocess.run(cmd, env=env, check=False, timeout=args.timeout)
        return completed.returncode
    except subprocess.TimeoutExpired:
        print(f"pytest run timed out after {args.timeout} seconds", file=sys.stderr)
        return 124


if __name__ == "__main__":
    raise SystemExit(main())
