#!/usr/bin/env python3
"""
Sample ETL extract step.

Generates synthetic order records for one sales channel.
"""

from __future__ import annotations

import argparse
import json
import os
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate synthetic order data for the sample pipeline.")
    parser.add_argument("--channel", default="web")
    parser.add_argument("--output", default="data/extracted_web.json")
    parser.add_argument("--records", type=int, default=25)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--sleep-seconds", type=float, default=0.5)
    return parser.parse_args()


def generate_records(channel: str, records: int, seed: int) -> List[Dict[str, object]]:
    rng = random.Random(seed)
    products = ["coffee", "tea", "mug", "grinder", "filter"]
    out: List[Dict[str, object]] = []
    now = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
    for idx in range(records):
        out.append(
            {
                "order_id": f"{channel.upper()}-{seed}-{idx + 1:05d}",
                "event_time": now,
                "channel": channel,
                "product": rng.choice(products),
                "item_count": rng.randint(1, 8),
                "order_total": round(rng.uniform(9.5, 145.0), 2),
                "currency": "USD",
            }
        )
    return out


def main() -> int:
    args = parse_args()
    if args.records <= 0:
        print("Error: --records must be >= 1")
        return 1
    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)

    payload = {
        "run_id": os.getenv("FOREMAN_RUN_ID"),
        "channel": args.channel,
        "generated_at": datetime.now(tz=timezone.utc).isoformat(),
        "record_count": args.records,
        "records": generate_records(args.channel, args.records, args.seed),
    }

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    print(f"Extract complete: channel={args.channel}, records={args.records}, output={output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
