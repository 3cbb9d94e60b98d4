"""Run one agent command and record how it ended next to its output.

The claude executor starts this script detached, so the run outlives the
process that started it and any process sharing the state root can read
the result from the run directory::

    python supervise.py RUN_DIR -- COMMAND [ARGS...]

This file is executed by path and must only import the standard library.
"""

from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Optional

EXIT_CODE_FILE = "exit_code"
STDOUT_FILE = "stdout.log"
STDERR_FILE = "stderr.log"


def write_exit_code(run_dir: Path, code: int) -> None:
    tmp_path = run_dir / f"{EXIT_CODE_FILE}.tmp"
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(f"{code}\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, run_dir / EXIT_CODE_FILE)


def supervise(run_dir: Path, command: list[str]) -> int:
    process: Optional[subprocess.Popen] = None
    stopping = False

    # Cancellation signals the supervisor; pass it on to the agent.
    def _forward(signum, frame) -> None:
        nonlocal stopping
        stopping = True
        if process is not None:
            process.terminate()

    previous = signal.signal(signal.SIGTERM, _forward)
    try:
        with open(run_dir / STDOUT_FILE, "w", encoding="utf-8") as out, open(
            run_dir / STDERR_FILE, "w", encoding="utf-8"
        ) as err:
            try:
                process = subprocess.Popen(command, stdin=subprocess.DEVNULL, stdout=out, stderr=err)
            except OSError as exc:
                err.write(f"{exc}\n")
                code = 127
            else:
                if stopping:
                    process.terminate()
                code = process.wait()
    finally:
        signal.signal(signal.SIGTERM, previous)
    write_exit_code(run_dir, code)
    return code


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run an agent command and record its exit code")
    parser.add_argument("run_dir", type=Path)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)
    command = args.command[1:] if args.command[:1] == ["--"] else args.command
    if not command:
        parser.error("a command is required after --")
    supervise(args.run_dir, command)
    return 0


if __name__ == "__main__":
    sys.exit(main())
