import argparse
import asyncio
import json
import time

import structlog

from .common import config
from .common.logging_setup import log_summary, setup_logging
from .services.hasura_client import HasuraClient

logger = structlog.get_logger()


def _client() -> HasuraClient:
    return HasuraClient.from_settings(config.settings)


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2))


def cmd_apply_schema(_: argparse.Namespace) -> None:
    setup_logging()
    logger.info("schema_apply_requested")
    ran = asyncio.run(_client().apply_schema_and_metadata())
    _emit({"applied": ran})


def cmd_check_schema(_: argparse.Namespace) -> None:
    setup_logging()
    logger.info("schema_check_requested")
    schema = asyncio.run(_client().schema_sync.build_schema())
    _emit({"schema": "ok", "types": len(schema.type_names)})


def cmd_meta(args: argparse.Namespace) -> None:
    setup_logging()
    meta = asyncio.run(_client().get_meta(args.node_tip))
    _emit(meta.model_dump(by_alias=True))


def cmd_address_summary(args: argparse.Namespace) -> None:
    setup_logging()
    started = time.time()
    summary = asyncio.run(_client().get_payment_address_summary(args.address, args.at_block))
    log_summary(
        component="db_hasura.cli",
        operation="address_summary",
        records_processed=summary.utxos_count,
        duration_seconds=time.time() - started,
    )
    _emit(summary.model_dump(by_alias=True, exclude_none=True))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("db-hasura")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("apply-schema").set_defaults(func=cmd_apply_schema)
    sub.add_parser("check-schema").set_defaults(func=cmd_check_schema)

    p_meta = sub.add_parser("meta")
    p_meta.add_argument("--node-tip", type=int, required=True)
    p_meta.set_defaults(func=cmd_meta)

    p_addr = sub.add_parser("address-summary")
    p_addr.add_argument("address")
    p_addr.add_argument("--at-block", type=int)
    p_addr.set_defaults(func=cmd_address_summary)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
