#!/usr/bin/env python3
"""Run the driftsense suite with coverage and print a one-line summary.

Usage:
    python3 scripts/test.py              # whole suite
    python3 scripts/test.py -k backoff   # extra arguments go to pytest
"""

import re
import subprocess
import sys

COVERAGE_FLOOR = 85


def _count(label: str, text: str) -> int:
    match = re.search(rf"(\d+) {label}", text)
    return int(match.group(1)) if match else 0


def main(argv: list[str]) -> int:
    result = subprocess.run(
        [
            sys.executable,
            "-m",
            "pytest",
            "-q",
            "--tb=line",
            "--cov=driftsense",
            "--cov-report=term",
            f"--cov-fail-under={COVERAGE_FLOOR}",
            *argv,
        ],
        capture_output=True,
        text=True,
    )
    output = result.stdout + result.stderr

    total = re.search(r"^TOTAL\s.*?(\d+%)\s*$", output, re.MULTILINE)
    status = "PASS" if result.returncode == 0 else "FAIL"
    print(
        f"tests:{status} passed:{_count('passed', output)} failed:{_count('failed', output)} "
        f"errors:{_count('error', output)} coverage:{total.group(1) if total else '?'}"
    )

    if result.returncode != 0:
        for line in output.splitlines():
            line = line.strip()
            if line.startswith(("FAILED", "ERROR")) and "::" in line:
                print(line)

    return result.returncode


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
