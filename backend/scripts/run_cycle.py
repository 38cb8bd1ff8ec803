"""
Runs a single control cycle against the configured Nightscout and prints the result.

    python backend/scripts/run_cycle.py [path/to/.env]
"""

import asyncio
import json
import os
import sys

from dotenv import load_dotenv

# Ensure backend root is in path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from nsloop.core.logging import configure_logging  # noqa: E402
from nsloop.core.settings import get_settings  # noqa: E402
from nsloop.main import build_control_loop  # noqa: E402


async def main() -> int:
    settings = get_settings()
    try:
        loop = build_control_loop(settings)
    except RuntimeError as exc:
        print(f"ERROR: {exc}")
        return 1

    try:
        await loop.initialize()
        print(f"Profile source: {loop.state.settings.profile_source}")
        record = await loop.run_cycle()
    finally:
        await loop.client.aclose()

    stats = loop.state.monitor.translation
    print(f"Glucose readings: {len(loop.state.monitor.glucose)}")
    print(f"Pump events: {stats.events} (defects {stats.defects}, duplicate timestamps {stats.duplicate_timestamps})")
    if record is None:
        print("No enacted record produced")
        return 1
    print(json.dumps(record.to_wire(), indent=2))
    return 0


if __name__ == "__main__":
    load_dotenv(sys.argv[1] if len(sys.argv) > 1 else "backend/.env")
    configure_logging()
    sys.exit(asyncio.run(main()))
