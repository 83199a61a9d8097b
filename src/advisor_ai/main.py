from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace

from advisor_ai.config import AdvisorConfig
from advisor_ai.runtime import AdvisorRuntime


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Real-time flight-deck advisory pipeline grounded in indexed safety procedures."
    )
    parser.add_argument(
        "--replay",
        default=None,
        metavar="FILE",
        help="Replay JSONL telemetry from FILE instead of the X-Plane UDP stream.",
    )
    parser.add_argument(
        "--replay-speed",
        type=float,
        default=None,
        help="Replay pacing multiplier (2.0 plays twice as fast).",
    )
    parser.add_argument(
        "--index",
        default=None,
        metavar="PATH",
        help="Override the procedure index dataset path.",
    )
    parser.add_argument(
        "--policy",
        default=None,
        metavar="PATH",
        help="Trigger policy JSON (thresholds, cooldowns, enabled classes).",
    )
    parser.add_argument(
        "--k",
        type=int,
        default=None,
        help="Number of procedures retrieved per advisory.",
    )
    parser.add_argument(
        "--no-speak",
        action="store_true",
        help="Disable xplm_speak_string output (console only).",
    )
    parser.add_argument(
        "--duration-sec",
        type=float,
        default=None,
        help="Maximum runtime before auto-stop.",
    )
    return parser.parse_args()


async def _run() -> None:
    args = _parse_args()

    config = AdvisorConfig.from_env()
    if args.replay:
        config = replace(config, telemetry_source="replay", replay_path=args.replay)
    if args.replay_speed is not None:
        config = replace(config, replay_speed=args.replay_speed)
    if args.index:
        config = replace(config, procedure_index_path=args.index)
    if args.policy:
        config = replace(config, trigger_policy_path=args.policy)
    if args.k is not None:
        config = replace(config, retrieval_k=args.k)
    if args.no_speak:
        config = replace(config, speak_enabled=False)

    config.validate()

    runtime = AdvisorRuntime(config)
    await runtime.run(duration_sec=args.duration_sec)


def cli_entrypoint() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    cli_entrypoint()
