import argparse
import sys
from pathlib import Path

from sqlalchemy import or_, select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from visitgate.db import SessionLocal  # noqa: E402
from visitgate.lifecycle import ensure_window  # noqa: E402
from visitgate.models import Visit  # noqa: E402
from visitgate.observability import configure_logging  # noqa: E402
from visitgate.windows import compute_window  # noqa: E402


def backfill_windows(db, dry_run: bool = False, batch_size: int = 500) -> dict:
    summary = {"scanned": 0, "updated": 0, "skipped": 0, "batches": 0}
    size = max(1, int(batch_size))
    last_id = 0
    while True:
        rows = (
            db.execute(
                select(Visit)
                .where(
                    Visit.id > last_id,
                    or_(Visit.window_start_utc.is_(None), Visit.window_end_utc.is_(None)),
                )
                .order_by(Visit.id.asc())
                .limit(size)
            )
            .scalars()
            .all()
        )
        if not rows:
            break
        summary["batches"] += 1
        for visit in rows:
            last_id = visit.id
            summary["scanned"] += 1
            if visit.scheduled_date is None:
                summary["skipped"] += 1
                continue
            if dry_run:
                window = compute_window(visit.scheduled_date)
                print(f"[dry-run] visit={visit.id} start={window.start.isoformat()} end={window.end.isoformat()}")
            else:
                ensure_window(db, visit)
            summary["updated"] += 1
    return summary


def main() -> int:
    parser = argparse.ArgumentParser(description="Fill missing contribution windows on legacy visits")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--batch-size", type=int, default=500)
    args = parser.parse_args()

    configure_logging()
    with SessionLocal() as db:
        summary = backfill_windows(db, dry_run=args.dry_run, batch_size=args.batch_size)
    print(
        f"scanned={summary['scanned']} updated={summary['updated']} "
        f"skipped={summary['skipped']} batches={summary['batches']} dry_run={args.dry_run}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
