#!/usr/bin/env python3
"""
Activate pending upgrades whose invoice is already paid.

Covers the gap when a verification committed the paid invoice but the
upgrade activation failed or the process died before it ran. Safe to run
repeatedly: subscriptions without a marker are skipped.

Example:
  uv run python scripts/reconcile_paid_upgrades.py --limit 200
  uv run python scripts/reconcile_paid_upgrades.py --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import json

import structlog

from shopbilling.modules.billing.domain.activation import SubscriptionActivator
from shopbilling.modules.billing.domain.subscription_store import SubscriptionStore
from shopbilling.shared.core.config import get_settings
from shopbilling.shared.core.logging import setup_logging
from shopbilling.shared.db.session import async_session_maker, get_engine

logger = structlog.get_logger()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Activate pending upgrades backed by an already-paid invoice."
    )
    parser.add_argument(
        "--limit",
        dest="limit",
        type=int,
        default=get_settings().RECONCILE_BATCH_SIZE,
        help="Maximum subscriptions to process in this run",
    )
    parser.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        help="List candidates without activating them",
    )
    return parser.parse_args()


async def main() -> None:
    args = _parse_args()
    setup_logging()

    async with async_session_maker() as db:
        if args.dry_run:
            candidates = await SubscriptionStore(db).list_paid_pending_upgrades(
                limit=args.limit
            )
            report = [
                {
                    "subscription_id": str(sub.id),
                    "shop_id": str(sub.shop_id),
                    "plan_code": sub.plan_code,
                    "target_plan": sub.pending_upgrade_plan,
                    "invoice_id": str(sub.pending_upgrade_invoice_id),
                }
                for sub in candidates
            ]
            print(json.dumps({"dry_run": True, "candidates": report}, indent=2))
        else:
            activated = await SubscriptionActivator(db).reconcile_paid_upgrades(
                limit=args.limit
            )
            print(
                json.dumps(
                    {
                        "dry_run": False,
                        "activated": [
                            {
                                "subscription_id": str(sub.id),
                                "shop_id": str(sub.shop_id),
                                "plan_code": sub.plan_code,
                            }
                            for sub in activated
                        ],
                    },
                    indent=2,
                )
            )

    await get_engine().dispose()


if __name__ == "__main__":
    asyncio.run(main())
