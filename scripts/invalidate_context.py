from __future__ import annotations

import argparse
import asyncio
import sys

from contextengine.core.logging import configure_logging
from contextengine.domain.context import ENTITY_TYPES
from contextengine.services.context.runtime import build_default_runtime
from contextengine.services.context.service import ContextService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Soft-expire a stored context so the next read regenerates it")
    parser.add_argument("entity_type", type=str.upper, choices=sorted(ENTITY_TYPES))
    parser.add_argument("entity_id", help="Client or case id")
    parser.add_argument("--tenant-id", default=None, help="Only expire when the record belongs to this tenant")
    return parser


async def _invalidate(entity_type: str, entity_id: str, tenant_id: str | None) -> int:
    service = ContextService(await build_default_runtime())
    if not await service.invalidate(entity_type, entity_id, tenant_id=tenant_id):
        print(f"No context stored for {entity_type} {entity_id}", file=sys.stderr)
        return 1
    print(f"Invalidated {entity_type} {entity_id}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_invalidate(args.entity_type, args.entity_id, args.tenant_id))
    except Exception as exc:  # noqa: BLE001 - surface store failures clearly
        print(f"invalidate_context failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
