#!/usr/bin/env python3
"""Run one tenant's sync session and print what the renderer would see.

This script:
1) loads a tenant config from ``--config`` or ``OUTAGESYNC_*`` env vars,
2) optionally runs a connection test against the subscriber table,
3) starts a :class:`SyncController` and prints every state, count and
   feature-set change until ``--duration`` elapses or Ctrl+C.

Use this to verify whether a tenant's realtime subscription comes up or
the session falls back to polling.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from outagesync import (  # noqa: E402
    ConfigurationError,
    FeatureRecord,
    SupabaseClient,
    SyncController,
    SyncState,
    TenantConfig,
    calculate_bounds,
    to_feature_collection,
)

_LOG = logging.getLogger("sync_probe")


@dataclass
class ProbeStats:
    started_at: float
    feature_updates: int = 0
    state_changes: int = 0
    last_count: int = 0
    last_state: SyncState | None = None


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Observe one tenant's outage sync session.",
    )
    parser.add_argument(
        "--tenant",
        default=None,
        help="Tenant id used for OUTAGESYNC_<TENANT>_* env lookups.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Tenant JSON file (overrides env vars).",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Run a connection test before starting the session.",
    )
    parser.add_argument(
        "--geojson",
        action="store_true",
        help="Print the full FeatureCollection on every update.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _load_config(args: argparse.Namespace) -> TenantConfig:
    if args.config is not None:
        return TenantConfig.from_file(args.config)
    return TenantConfig.from_env(args.tenant)


def _print_config(config: TenantConfig) -> None:
    print("[probe] Tenant")
    print(f"[probe]   id       : {config.tenant_id}")
    print(f"[probe]   name     : {config.name or '-'}")
    print(f"[probe]   table    : {config.table}")
    print(f"[probe]   feed     : {config.feed if config.realtime_enabled else 'disabled'}")
    print(f"[probe]   interval : {config.refresh_interval:.1f}s")
    print(f"[probe]   source   : {'configured' if config.is_configured else 'none (demo data)'}")


def _print_summary(stats: ProbeStats) -> None:
    runtime = time.time() - stats.started_at
    print("[probe] Summary")
    print(f"[probe]   runtime_s       : {runtime:.1f}")
    print(f"[probe]   feature_updates : {stats.feature_updates}")
    print(f"[probe]   state_changes   : {stats.state_changes}")
    print(f"[probe]   last_state      : {stats.last_state or '-'}")
    print(f"[probe]   last_count      : {stats.last_count}")


async def _check(config: TenantConfig) -> bool:
    async with SupabaseClient.from_config(config) as client:
        return await client.ping(config.table, config.tenant_filters)


async def _run(config: TenantConfig, args: argparse.Namespace, stats: ProbeStats) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    def on_features(records: tuple[FeatureRecord, ...]) -> None:
        stats.feature_updates += 1
        bounds = calculate_bounds(records)
        print(f"[probe] update#{stats.feature_updates} features={len(records)} bounds={bounds}")
        if args.geojson:
            print(json.dumps(to_feature_collection(records), indent=2))

    def on_count(count: int) -> None:
        stats.last_count = count

    def on_state(state: SyncState) -> None:
        stats.state_changes += 1
        stats.last_state = state
        print(f"[probe] state={state}")

    async with SyncController.for_tenant(
        config,
        on_features_changed=on_features,
        on_count_changed=on_count,
        on_sync_state_changed=on_state,
    ):
        timeout = args.duration if args.duration > 0 else None
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=timeout)
        except TimeoutError:
            print(f"[probe] Reached --duration={args.duration}s, stopping.")


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = _load_config(args)
        for warning in config.validate():
            _LOG.warning("%s", warning)
    except ConfigurationError as exc:
        print(f"[probe] Invalid configuration: {exc}", file=sys.stderr)
        return 2

    _print_config(config)

    if args.check and config.is_configured:
        ok = asyncio.run(_check(config))
        print(f"[probe] Connection test: {'ok' if ok else 'FAILED'}")
        if not ok:
            return 1

    stats = ProbeStats(started_at=time.time())
    try:
        asyncio.run(_run(config, args, stats))
    except ConfigurationError as exc:
        print(f"[probe] Session failed: {exc}", file=sys.stderr)
        return 2

    _print_summary(stats)
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
