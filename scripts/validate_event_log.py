#!/usr/bin/env python3
"""
Check MindWare event files written by the control plane.

Usage:
    python scripts/validate_event_log.py                     # every *.txt in the log dir
    python scripts/validate_event_log.py subj1_20240101.txt  # specific files

Exits 1 if any file has problems.
"""

import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from psychtimer.mindware import read_events, validate_event_file  # noqa: E402

LOG_DIR = Path(os.environ.get("PSYCHTIMER_LOG_DIR", "event_logs"))


def main():
    parser = argparse.ArgumentParser(description="Validate MindWare event files")
    parser.add_argument("files", nargs="*", type=Path, help="Files to check (default: all in log dir)")
    args = parser.parse_args()

    files = args.files or sorted(LOG_DIR.glob("*.txt"))
    if not files:
        print(f"No event files found in {LOG_DIR}")
        return

    files_affected = 0
    for fpath in files:
        problems = validate_event_file(fpath)
        if problems:
            files_affected += 1
            print(f"{fpath.name}: {len(problems)} problems")
            for problem in problems:
                print(f"  {problem}")
        else:
            print(f"{fpath.name}: OK ({len(read_events(fpath))} events)")

    print(f"\n{'='*50}")
    print(f"Files scanned: {len(files)}")
    print(f"Files with problems: {files_affected}")

    if files_affected:
        sys.exit(1)


if __name__ == "__main__":
    main()
