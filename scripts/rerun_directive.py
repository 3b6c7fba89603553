from __future__ import annotations

import argparse
import asyncio

from fleetcore.core.logging import configure_logging
from fleetcore.persistence.db import SessionLocal
from fleetcore.services.directives.lifecycle import rerun


async def _rerun(tenant: str, directive_id: str) -> None:
    # Enqueue the directive with the explicit rerun override.
    async with SessionLocal() as session:
        directive = await rerun(session, tenant, directive_id)
        print(f"directive_id={directive.id}")
        print(f"status={directive.status}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-enqueue a directive with the rerun override")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("directive_id")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_rerun(args.tenant, args.directive_id))


if __name__ == "__main__":
    main()
