"""
stackconverge - recover

Diagnose the OVN control plane and Neutron's view of it, then run the
weakest recovery strategy that fixes what was found, escalating while
the host stays unhealthy.

Exit codes:
  0 = healthy (already, or after recovery)
  2 = still unhealthy, or a recovery action failed (unhealthy under --dry-run)
  3 = runtime error (bad config, run lock held)
"""

from __future__ import annotations

import argparse
import sys
import textwrap
from typing import List, Optional

from .compat import load_entries
from .config import make_runner, open_config
from .errors import ConvergeError
from .lock import RunLock
from .recovery import STRATEGIES, Recovery, RecoveryStrategy
from .report import FORMATS, Reporter
from .util import eprint

# everything a strategy may touch
SYSTEMS = ("mysql", "ovn", "ovs", "systemd")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        prog="converge-recover",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Diagnose and recover OVN/Neutron integration on an all-in-one host.",
        epilog=textwrap.dedent("""\
        Strategies, weakest first:
          graceful-restart  restart ovn-central, ovn-host and neutron
          full-reset        delete the chassis, clear controller state and hash ring
          database-reinit   recreate the OVN databases and resync neutron

        Examples:
          converge-recover --config examples/aio.yaml --dry-run
          converge-recover --config examples/aio.yaml
          converge-recover --config examples/aio.yaml --strategy full-reset --max-escalations 0
        """),
    )
    ap.add_argument("--config", required=True, help="Path to deployment config YAML")
    ap.add_argument(
        "--strategy",
        choices=STRATEGIES,
        help="Start with this strategy instead of the diagnosed one",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the diagnosis and the actions that would run",
    )
    ap.add_argument(
        "--max-escalations",
        type=int,
        help="How many stronger strategies to try after the first (default from config)",
    )
    ap.add_argument("--format", choices=FORMATS, default="text", help="Report format")
    ap.add_argument("--verbose", action="store_true", help="Echo every command to stderr")
    args = ap.parse_args(argv)

    if args.max_escalations is not None and args.max_escalations < 0:
        eprint("ERROR: --max-escalations must be >= 0")
        return 3

    rep = Reporter()
    try:
        cfg, settings = open_config(
            args.config,
            dry_run=args.dry_run or None,
            verbose=args.verbose or None,
        )
        recovery = Recovery(settings, make_runner(settings), load_entries(cfg))
        strategy = RecoveryStrategy(args.strategy) if args.strategy else None
        if settings.dry_run:
            recovery.recover(rep, strategy=strategy, max_escalations=args.max_escalations)
        else:
            with RunLock(settings.lock_dir, SYSTEMS):
                recovery.recover(rep, strategy=strategy, max_escalations=args.max_escalations)
    except ConvergeError as ex:
        eprint(f"ERROR: {ex}")
        return 3

    rep.print(args.format, verbose=True)
    return rep.exit_code(strict=settings.dry_run)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
