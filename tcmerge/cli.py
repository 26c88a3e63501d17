#!/usr/bin/env python3
"""tcmerge CLI — merge Syncthing conflict copies back into the taskwarrior database.
Usage: tcmerge
       tcmerge --task-dir ~/.task --dry-run
       tcmerge --json -v
"""
import argparse
import json
import logging
import sys

from .core import TaskMerge
from .errors import MergeError

logger = logging.getLogger("tcmerge.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tcmerge",
        description="Merge *.sync-conflict-* copies of a TaskChampion database into the primary copy.",
    )
    parser.add_argument("-t", "--task-dir", help="taskwarrior data directory (default: config, $TASKDATA, XDG data dir)")
    parser.add_argument("-n", "--dry-run", action="store_true", help="report what would happen, change nothing")
    parser.add_argument("-c", "--config", help="path to config.yaml")
    parser.add_argument("--keep", type=int, help="number of backup snapshots to keep")
    parser.add_argument("--json", action="store_true", help="print the report as JSON")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug")
    return parser


def _print_report(report, as_json: bool):
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
        return
    if not report.consumed and not report.merged:
        print(f"No conflict copies of {report.primary}")
        return
    verb = "Would merge" if report.dry_run else "Merged"
    print(f"{verb} {len(report.consumed)} conflict copies into {report.primary}")
    print(f"  {report.operations} operations ({report.duplicates} duplicates dropped), {report.tasks} tasks")
    for c in report.conflicts:
        print(f"  conflict: {c.describe()}")
    for a in report.anomalies:
        print(f"  anomaly: {a.describe()}")
    for path, ok in report.consumed.items():
        if ok:
            print(f"  removed {path.name}")
        elif not report.dry_run:
            print(f"  kept {path.name}")
    if report.backup:
        print(f"  backup: {report.backup}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        tm = TaskMerge(task_dir=args.task_dir, config_path=args.config,
                       dry_run=args.dry_run, keep=args.keep)
    except (OSError, ValueError) as e:
        print(f"tcmerge: error: bad configuration: {e}", file=sys.stderr)
        return 2

    level = tm.config.log_level
    if args.verbose == 1:
        level = "INFO"
    elif args.verbose > 1:
        level = "DEBUG"
    logging.basicConfig(level=getattr(logging, level, logging.WARNING),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.config is None and not args.dry_run and tm.config.write_default():
        logger.info(f"Wrote default config to {tm.config.config_path}")

    try:
        report = tm.run()
    except MergeError as e:
        print(f"tcmerge: error: {e}", file=sys.stderr)
        return e.exit_code
    _print_report(report, args.json)
    return 0


if __name__ == "__main__":
    sys.exit(main())
