"""
stackconverge - reconcile

Config-driven convergence of an all-in-one OpenStack/Ceph/OVN host.
Every declared resource is probed, changed only when it differs from the
declaration, and probed again to verify the change took.

Exit codes:
  0 = everything satisfied or converged
  2 = failures found (failed or blocked resources; drift under --dry-run)
  3 = runtime error (bad config, invalid plan, run lock held)
"""

from __future__ import annotations

import argparse
import sys
import textwrap
from typing import Any, List, Mapping, Optional, Sequence

from .adapters import default_registry
from .config import Settings, load_descriptors, make_runner, open_config
from .errors import ConvergeError, PlanError
from .lock import RunLock
from .plan import Plan
from .report import FORMATS, Reporter
from .util import eprint


def build_plan(
    cfg: Mapping[str, Any],
    settings: Settings,
    only: Sequence[str] = (),
    resources: Sequence[str] = (),
) -> Plan:
    runner = make_runner(settings)
    plan = Plan(settings, default_registry(runner, settings), load_descriptors(cfg))
    if only or resources:
        unknown = [k for k in only if k not in plan.registry]
        if unknown:
            raise PlanError(f"--only: unknown kinds {', '.join(unknown)}")
        plan = plan.select(resources, only)
    plan.resolve()
    return plan


def policy_flag(args: argparse.Namespace) -> Optional[str]:
    if args.fail_fast:
        return "fail-fast"
    if args.best_effort:
        return "best-effort"
    return None


def add_common(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--config", required=True, help="Path to deployment config YAML")
    ap.add_argument(
        "--only",
        action="append",
        default=[],
        metavar="KIND",
        help="Limit to resources of this kind (plus their prerequisites); repeatable",
    )
    ap.add_argument(
        "--resource",
        action="append",
        default=[],
        metavar="KEY",
        help="Limit to one resource, e.g. pool:volumes (plus its prerequisites); repeatable",
    )
    ap.add_argument("--format", choices=FORMATS, default="text", help="Report format")
    ap.add_argument(
        "--verbose",
        action="store_true",
        help="Echo every command to stderr and list satisfied resources",
    )


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        prog="converge-reconcile",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Converge an all-in-one OpenStack/Ceph/OVN host to its declared state.",
        epilog=textwrap.dedent("""\
        Examples:
          converge-reconcile --config examples/aio.yaml
          converge-reconcile --config examples/aio.yaml --dry-run
          converge-reconcile --config examples/aio.yaml --only pool --only keyring
          converge-reconcile --config examples/aio.yaml --resource unit:nova-compute --best-effort
          converge-reconcile --config examples/aio.yaml --retries 2 --format json
        """),
    )
    add_common(ap)
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Probe everything, change nothing; print intended commands",
    )
    mode = ap.add_mutually_exclusive_group()
    mode.add_argument("--fail-fast", action="store_true", help="Stop on first failure")
    mode.add_argument(
        "--best-effort",
        action="store_true",
        help="Keep going; skip only resources whose prerequisites did not pass",
    )
    ap.add_argument("--retries", type=int, help="Re-run a failed step up to N more times")
    args = ap.parse_args(argv)

    try:
        cfg, settings = open_config(
            args.config,
            policy=policy_flag(args),
            retries=args.retries,
            dry_run=args.dry_run or None,
            verbose=args.verbose or None,
        )
        plan = build_plan(cfg, settings, args.only, args.resource)
    except ConvergeError as ex:
        eprint(f"ERROR: {ex}")
        return 3

    rep = Reporter()
    try:
        if settings.dry_run:
            rep.extend(plan.run())
        else:
            with RunLock(settings.lock_dir, plan.systems()):
                rep.extend(plan.run())
    except ConvergeError as ex:
        eprint(f"ERROR: {ex}")
        return 3

    if settings.dry_run:
        rep.note("dry-run: nothing was changed")
    rep.print(args.format, verbose=settings.verbose)
    return rep.exit_code(strict=settings.dry_run)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
