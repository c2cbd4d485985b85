import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from visitgate.db import SessionLocal  # noqa: E402
from visitgate.notifications import WINDOW_EVENTS, sweep_window_notifications  # noqa: E402
from visitgate.observability import configure_logging  # noqa: E402


def run_once(dry_run: bool = False) -> dict:
    with SessionLocal() as db:
        return sweep_window_notifications(db, dry_run=dry_run)


def main() -> int:
    parser = argparse.ArgumentParser(description="Notify visit teams about upload window events")
    parser.add_argument("--dry-run", action="store_true", help="Report due events without notifying")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--poll-seconds", type=float, default=300.0, help="Delay between sweeps")
    args = parser.parse_args()

    configure_logging()
    while True:
        summary = run_once(dry_run=args.dry_run)
        counts = " ".join(f"{event}={summary[event]}" for event in WINDOW_EVENTS)
        print(
            f"{counts} notifications={summary['notifications']} "
            f"failed={summary['failed']} dry_run={args.dry_run}"
        )
        if args.once or args.dry_run:
            break
        time.sleep(max(5.0, float(args.poll_seconds)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
