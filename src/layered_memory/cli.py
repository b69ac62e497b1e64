# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Inspect and maintain the routing ledger.

Usage:
    layered-memory stats
    layered-memory feedback goal false
    layered-memory baseline 4200
    LMEM_DATA_DIR=/tmp/mem layered-memory finalize
    layered-memory --ledger ./memory-meta.json stats
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import Settings
from .models.ledger import LedgerDocument
from .services.routing_ledger import RoutingLedger

logger = logging.getLogger(__name__)

_BOOL_VALUES = {"true": True, "1": True, "yes": True, "false": False, "0": False, "no": False}


def _parse_useful(value: str) -> bool:
    try:
        return _BOOL_VALUES[value.strip().lower()]
    except KeyError:
        raise argparse.ArgumentTypeError(f"expected true/false/1/0, got {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="layered-memory", description="Routing ledger maintenance")
    parser.add_argument(
        "--ledger",
        type=Path,
        default=None,
        help="Ledger JSON file (default: $LMEM_LEDGER_PATH or <data_dir>/memory-meta.json)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="Print per-layer routing stats and token savings")

    feedback = sub.add_parser("feedback", help="Record a usefulness vote for a layer")
    feedback.add_argument("layer", help="Layer name, e.g. goal")
    feedback.add_argument("useful", type=_parse_useful, help="true/false/1/0")

    baseline = sub.add_parser("baseline", help="Set the pre-routing average chars per session")
    baseline.add_argument("chars", type=float, help="Average injected chars per session before routing")

    sub.add_parser("finalize", help="Fold the current session into lifetime totals")
    return parser


def _print_savings(ledger_doc: LedgerDocument) -> None:
    token = ledger_doc.token_savings
    if token.before_routing_avg is None:
        print("Token savings: no baseline set")
        return
    print(
        f"Token savings: before={round(token.before_routing_avg)}, after={token.after_routing_avg}, "
        f"last={token.saved_last_session}, week={token.saved_this_week}, total={token.saved_total}"
    )


async def _run(args: argparse.Namespace, ledger: RoutingLedger) -> int:
    if args.command == "stats":
        lines = await ledger.format_meta_lines()
        print("\n".join(lines) if lines else "No routing activity recorded")
        _print_savings(await ledger.snapshot())
    elif args.command == "feedback":
        await ledger.record_feedback(args.layer, args.useful)
        print(f"Recorded feedback for '{args.layer}': useful={args.useful}")
    elif args.command == "baseline":
        await ledger.set_baseline(args.chars)
        print(f"Baseline set to {args.chars:g} chars/session")
    elif args.command == "finalize":
        stats = await ledger.finalize_session()
        await ledger.compute_token_savings()
        print(f"Sessions: {stats.sessions}, avg chars/session: {stats.after_routing_avg}")

    if ledger.last_save is not None and not ledger.last_save.ok:
        logger.error("Failed to write %s: %s", ledger.path, ledger.last_save.error)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    settings = Settings()
    ledger = RoutingLedger(
        args.ledger or settings.ledger_path,
        before_routing_avg=settings.ledger.before_routing_avg,
    )
    return asyncio.run(_run(args, ledger))


if __name__ == "__main__":
    sys.exit(main())
