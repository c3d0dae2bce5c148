"""Local stand-in agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt and optionally touch files, sleep, or fail."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--touch", action="append", default=[])
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail-with", default=None)
    parser.add_argument("--exit-code", type=int, default=1)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    first_line = next((line for line in prompt.splitlines() if line.strip()), "")
    print(f"echo_agent: {first_line}")

    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.fail_with is not None:
        print(args.fail_with, file=sys.stderr)
        return args.exit_code

    for relative in args.touch:
        target = Path.cwd() / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f"written by echo_agent\n{prompt}", "utf-8")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
