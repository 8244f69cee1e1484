from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from .config import get_settings
from .errors import ChatError
from .services import ChatServices, build_services


def _split_csv(values: Sequence[str] | None) -> list[str]:
    items: list[str] = []
    for value in values or []:
        items.extend(part.strip() for part in value.split(",") if part.strip())
    return items


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quote-chat-reconcile",
        description="Enroll organization members and users into a quote chat thread.",
    )
    parser.add_argument("--thread", help="Existing chat thread id")
    parser.add_argument("--quote", help="Quote id; resolves or creates the unscoped thread")
    parser.add_argument("--initiator", help="User id recorded as creator when a thread must be created")
    parser.add_argument("--org", action="append", default=[], help="Organization id (repeatable, comma-separated)")
    parser.add_argument("--user", action="append", default=[], help="User id (repeatable, comma-separated)")
    parser.add_argument("--verbose", action="store_true")
    return parser


def main(argv: Sequence[str] | None = None, *, services: ChatServices | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    if not args.thread and not (args.quote and args.initiator):
        print("error: provide --thread, or --quote together with --initiator", file=sys.stderr)
        return 1

    services = services or build_services(get_settings())
    try:
        report = services.reconciliation.reconcile(
            thread_id=args.thread,
            quote_id=args.quote,
            initiator_user_id=args.initiator,
            organization_ids=_split_csv(args.org),
            user_ids=_split_csv(args.user),
        )
    except ChatError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1

    for outcome in report.outcomes:
        if outcome.ok:
            print(f"ensured {outcome.user_id} as {outcome.identity}")
        else:
            print(f"failed {outcome.user_id}: {outcome.error}")
    print(
        f"thread {report.thread_id}: ensured={len(report.ensured)} "
        f"failed={len(report.failed)} newly_active={report.newly_active_count}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
