"""Seed the workshop database with demo staff, tools, consumables and activity.

Usage:
  python scripts/seed_data.py
  python scripts/seed_data.py --data-dir ./demo-data --no-activity

Or via env var:
  set WORKSHOP_DATA_DIR=./demo-data
  python scripts/seed_data.py

Notes:
- Existing rows with the same ids are updated, not duplicated.
- Activity (checkouts, usage) is only generated for tools that are available.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

STAFF = [
    ("SUP001", "Grace Mwangi", "supervisor"),
    ("WRK001", "Tom Baker", "worker"),
    ("WRK002", "Lena Ortiz", "worker"),
    ("WRK003", "Sam Okafor", "worker"),
]

TOOLS = [
    ("SM1001", "Cordless Drill", "Makita", "DHP482"),
    ("SM1002", "Angle Grinder", "Bosch", "GWS 7-115"),
    ("SM1003", "Jigsaw", "DeWalt", "DCS331"),
    ("SM1004", "Orbital Sander", "Festool", "ETS 125"),
    ("SM1005", "Router", "Makita", "RT0701C"),
    ("SM1006", "Heat Gun", "Steinel", "HL 2020 E"),
]

CONSUMABLES = [
    # id, name, category, quantity, min, max, price
    ("CN2001", "Wood Glue", "Adhesive", 4.5, 2, 20, 12.0),
    ("CN2002", "Masking Tape", "Tape", 40, 25, 200, 0.3),
    ("CN2003", "Sandpaper P120", "Sandpaper Sheets", 12, 20, 300, 0.45),
    ("CN2004", "Wood Screws 4x40", "Fasteners", 850, 200, 600, 0.02),
    ("CN2005", "Danish Oil", "Finish Oil", 0, 1, 10, 18.5),
]


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--data-dir",
        default=os.environ.get("WORKSHOP_DATA_DIR", "").strip(),
        help="Directory holding main_data.db (default: ./data next to the app).",
    )
    parser.add_argument("--no-activity", action="store_true", help="Only seed master data.")
    args = parser.parse_args(argv)

    if args.data_dir:
        os.environ["WORKSHOP_DATA_DIR"] = str(Path(args.data_dir).resolve())

    import utils
    from inventory import default_unit_for_category

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    if not utils.ensure_main_database():
        print(f"Could not open {utils.MAIN_DB_FILE}", file=sys.stderr)
        return 1

    for code, name, role in STAFF:
        utils.save_staff(code, name, role=role)
    for uid, name, brand, model in TOOLS:
        utils.save_tool(uid, name, brand=brand, model=model)
    for uid, name, category, qty, lo, hi, price in CONSUMABLES:
        utils.save_consumable(
            uid,
            name,
            category=category,
            unit=default_unit_for_category(category).value,
            current_quantity=qty,
            min_quantity=lo,
            max_quantity=hi,
            unit_price=price,
        )
    print(f"Seeded {len(STAFF)} staff, {len(TOOLS)} tools, {len(CONSUMABLES)} consumables.")

    if args.no_activity:
        return 0

    admin = utils._get_secret_or_env("WORKSHOP_ADMIN_NAME", "Workshop Admin")
    start = datetime.now() - timedelta(hours=3)

    batch_id, results = utils.batch_checkout_tools(
        ["SM1001", "SM1002", "SM1003"], "WRK001", admin_name=admin, now=start
    )
    print(f"Batch checkout {batch_id}: {sum(results.values())}/{len(results)}")

    try:
        utils.checkout_tool("SM1004", "WRK002", admin_name=admin, now=start + timedelta(minutes=20))
        utils.checkin_tool("SM1001", admin_name=admin, notes="Returned early", now=start + timedelta(hours=1))
    except utils.StoreError as e:
        print(f"Skipped single checkout/checkin: {e}")

    batch_id, results = utils.record_batch_consumable_usage(
        [("CN2002", 5), ("CN2003", 4)],
        processed_by="SUP001",
        assigned_to="WRK003",
        notes="Cabinet job",
        now=start + timedelta(hours=2),
    )
    print(f"Batch usage {batch_id}: {sum(results.values())}/{len(results)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
