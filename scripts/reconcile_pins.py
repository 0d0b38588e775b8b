import argparse

from dotenv import load_dotenv

from app.db import SessionLocal
from app.services.pin_ledger import pin_ledger


def parse_args():
    parser = argparse.ArgumentParser(
        description="Compare durable pin reference counts with the content store."
    )
    parser.add_argument(
        "addresses",
        nargs="*",
        help="Content addresses to check (default: every known address).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report drift without pinning or unpinning anything.",
    )
    return parser.parse_args()


def main():
    load_dotenv()
    args = parse_args()
    db = SessionLocal()
    try:
        report = pin_ledger.reconcile(db, args.addresses or None, repair=not args.dry_run)
    finally:
        db.close()

    drifted = 0
    for entry in report:
        expected = entry["reference_count"] > 0
        if entry["repaired"] or entry["store_pinned"] != expected:
            drifted += 1
            state = "repaired" if entry["repaired"] else "drift"
            print(
                f"- {entry['address']}: {state} "
                f"(references={entry['reference_count']}, store_pinned={entry['store_pinned']})"
            )
    print(f"Checked {len(report)} address(es), {drifted} with drift.")
    if drifted and args.dry_run:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
