from __future__ import annotations

import argparse
import asyncio
from datetime import datetime

from fleetcore.core.logging import configure_logging
from fleetcore.persistence.db import SessionLocal
from fleetcore.services.signals.replay import (
    replay_by_ids,
    replay_by_name,
    replay_by_time_range,
    replay_recent,
)


def _split(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


async def _replay(args: argparse.Namespace) -> None:
    # Re-enqueue fan-out for persisted signals; handlers see each signal again.
    async with SessionLocal() as session:
        if args.ids:
            result = await replay_by_ids(session, args.tenant, _split(args.ids) or [])
        elif args.name:
            result = await replay_by_name(session, args.tenant, args.name, limit=args.limit)
        elif args.since or args.until:
            if not (args.since and args.until):
                raise SystemExit("--since and --until must be given together")
            result = await replay_by_time_range(
                session,
                args.tenant,
                inserted_from=datetime.fromisoformat(args.since),
                inserted_to=datetime.fromisoformat(args.until),
                limit=args.limit,
                only_names=_split(args.only),
                exclude_names=_split(args.exclude),
            )
        else:
            result = await replay_recent(
                session,
                args.tenant,
                limit=args.limit,
                only_names=_split(args.only),
                exclude_names=_split(args.exclude),
            )
    print(f"enqueued={result.enqueued}")
    print(f"skipped={result.skipped}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay signal fan-out for one tenant")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--name", default=None, help="replay every signal with this name")
    parser.add_argument("--ids", default=None, help="comma-separated signal ids")
    parser.add_argument("--since", default=None, help="ISO-8601 lower bound on inserted_at")
    parser.add_argument("--until", default=None, help="ISO-8601 upper bound on inserted_at")
    parser.add_argument("--only", default=None, help="comma-separated names to include")
    parser.add_argument("--exclude", default=None, help="comma-separated names to skip")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_replay(args))


if __name__ == "__main__":
    main()
