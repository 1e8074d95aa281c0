from __future__ import annotations

import argparse
import glob
import json
import sys
from pathlib import Path

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from relayer.contracts.streams import event_stream, stream_entry_id
from relayer.contracts.validation import validate_event_dict
from relayer.feeds.events import RedisStreamEventFeed


def _iter_event_files(root: Path) -> list[Path]:
    return [Path(p) for p in sorted(glob.glob(str(root / "*.json")))]


def main() -> None:
    ap = argparse.ArgumentParser(description="Publish recorded relay events into the Redis event feed.")
    ap.add_argument("--redis-url", required=True)
    ap.add_argument("--events-dir", default=str(Path("contracts") / "golden_events" / "relay"))
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument(
        "--fail-on-invalid",
        action="store_true",
        help="By default invalid events are skipped. Use this flag to fail fast instead.",
    )
    args = ap.parse_args()

    root = Path(args.events_dir)
    files = _iter_event_files(root)
    if not files:
        raise SystemExit(f"no events found under {root}")

    feed = RedisStreamEventFeed(args.redis_url)
    for fp in files:
        ev = json.loads(fp.read_text(encoding="utf-8"))
        try:
            validate_event_dict(ev)
        except ValueError as e:
            if args.fail_on_invalid:
                raise
            print(f"[skip-invalid] {fp.name}: {e}")
            continue
        stream = event_stream(ev["event_name"])
        entry_id = stream_entry_id(ev["vid"])
        if args.dry_run:
            print(f"[dry-run] xadd {stream} {entry_id} <- {fp.name}")
        else:
            feed.publish(ev["event_name"], ev)
            print(f"xadd {stream} {entry_id} <- {fp.name}")


if __name__ == "__main__":
    main()
