"""Local deterministic stand-in for the salt search binary."""

from __future__ import annotations

import argparse
import hashlib
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Print one ``salt,address`` line derived from pattern and deployer."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-m", "--pattern", required=True)
    parser.add_argument("-c", "--deployer", required=True)
    parser.add_argument("--delay", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--raw-output", default=None)
    args = parser.parse_args(argv)

    if args.delay > 0:
        time.sleep(args.delay)
    if args.exit_code != 0:
        print(f"echo_worker: simulated failure for {args.pattern}", file=sys.stderr)
        return args.exit_code
    if args.raw_output is not None:
        print(args.raw_output)
        return 0

    digest = hashlib.sha256(f"{args.pattern}:{args.deployer}".encode()).hexdigest()
    salt = "0x" + digest
    address = "0x" + (args.pattern.removeprefix("0x") + digest)[:40]
    print(f"{salt},{address}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
