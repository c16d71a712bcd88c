#!/usr/bin/env python3
"""
Escalation Sweep — run one reminder / chase / timeout pass and exit.

For deployments that drive the sweep from cron instead of the API's
background loop.

Usage:
    python scripts/run_sweep.py
    python scripts/run_sweep.py --config config/settings.yaml
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_sweep(config_path: str = None) -> dict:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from core.orchestrator import build_engine

    settings = load_settings(config_path)
    engine = build_engine(settings)
    await engine.start(run_scheduler=False)
    try:
        report = await engine.run_escalation_sweep()
    finally:
        await engine.shutdown()
    return report.model_dump()


def main():
    parser = argparse.ArgumentParser(description="Run one escalation sweep")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    report = asyncio.run(run_sweep(args.config))
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
