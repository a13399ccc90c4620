"""Command line entry point: ``python -m feverwatch serve``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path
from typing import Any

from feverwatch.collaborators import StaticSessionAuthority
from feverwatch.config import FeverWatchConfig
from feverwatch.exceptions import FeverWatchConfigError
from feverwatch.models.device import Device
from feverwatch.records import InMemoryRecordStore
from feverwatch.server import FeverWatchServer

_logger = logging.getLogger("feverwatch")


def load_seed(path: Path) -> tuple[StaticSessionAuthority, InMemoryRecordStore]:
    """Load development tokens and devices from a JSON file.

    Expected shape: ``{"tokens": {"<token>": "<userId>"}, "devices": [<Device>, ...]}``.
    """
    raw: Any = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise FeverWatchConfigError(f"Seed file {path} must hold a JSON object")
    authority = StaticSessionAuthority(raw.get("tokens") or {})
    records = InMemoryRecordStore()
    for item in raw.get("devices") or []:
        records.upsert_device(Device.model_validate(item))
    return authority, records


async def _serve(config: FeverWatchConfig, seed: Path | None) -> None:
    authority, records = load_seed(seed) if seed is not None else (StaticSessionAuthority(), InMemoryRecordStore())
    async with FeverWatchServer(config, authority=authority, records=records) as server:
        await server.serve_forever()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="feverwatch", description="Fever alerting pipeline.")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the gateway, snapshot endpoints and device ingestion")
    serve.add_argument("--host", help="Bind address (default: FEVERWATCH_SERVER_HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, help="Bind port (default: FEVERWATCH_SERVER_PORT or 3001)")
    serve.add_argument("--no-mqtt", action="store_true", help="Disable device ingestion over MQTT")
    serve.add_argument("--seed", type=Path, help="JSON file with development tokens and devices")
    serve.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, Any] = {}
    if args.host:
        overrides["server_host"] = args.host
    if args.port:
        overrides["server_port"] = args.port
    if args.no_mqtt:
        overrides["mqtt"] = {"enabled": False}

    try:
        config = FeverWatchConfig.from_env(**overrides)
    except FeverWatchConfigError as exc:
        _logger.error("%s", exc)
        return 2

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_serve(config, args.seed))
    return 0


if __name__ == "__main__":
    sys.exit(main())
