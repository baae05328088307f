"""
stackconverge - verify

Read-only check of an all-in-one host against its declared state. Runs
every probe and never changes anything, takes no run lock, and also
reports installed component versions known not to work together.

Exit codes:
  0 = no drift
  2 = drift detected / failures found
  3 = runtime error (bad config, invalid plan)
"""

from __future__ import annotations

import argparse
import sys
import textwrap
from typing import List, Optional

from .compat import find_incompatible, load_entries, probe_versions
from .config import make_runner, open_config
from .errors import ConvergeError
from .reconcile import add_common, build_plan
from .report import Reporter
from .util import eprint


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        prog="converge-verify",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Verify an all-in-one OpenStack/Ceph/OVN host against its declared state.",
        epilog=textwrap.dedent("""\
        Examples:
          converge-verify --config examples/aio.yaml
          converge-verify --config examples/aio.yaml --only unit
          converge-verify --config examples/aio.yaml --format yaml
        """),
    )
    add_common(ap)
    ap.add_argument(
        "--skip-versions",
        action="store_true",
        help="Do not check installed component versions",
    )
    args = ap.parse_args(argv)

    try:
        # best-effort so one missing resource does not hide the rest
        cfg, settings = open_config(
            args.config,
            policy="best-effort",
            retries=0,
            dry_run=True,
            verbose=args.verbose or None,
        )
        entries = load_entries(cfg)
        plan = build_plan(cfg, settings, args.only, args.resource)
        rep = Reporter()
        rep.extend(plan.run())
    except ConvergeError as ex:
        eprint(f"ERROR: {ex}")
        return 3

    if not args.skip_versions:
        versions, warnings = probe_versions(make_runner(settings))
        for w in warnings:
            rep.note(w)
        for hit in find_incompatible(versions, entries):
            rep.note(f"known-bad versions installed: {hit.describe()}")

    rep.print(args.format, verbose=settings.verbose)
    return rep.exit_code(strict=True)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
