from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="proxysync status CLI")
    p.add_argument("--api", default="http://localhost:8000", help="Status API base URL")
    p.add_argument("--user", default=os.getenv("PROXYSYNC_ADMIN_USER"), help="Admin user for the status API")
    p.add_argument("--password", default=os.getenv("PROXYSYNC_ADMIN_PASSWORD"), help="Admin password")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("state", help="Show coalescer and regeneration state")

    s_ev = sub.add_parser("events", help="Show recent events")
    s_ev.add_argument("--limit", type=int, default=20)

    sub.add_parser("regenerate", help="Queue a config regeneration")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.user and args.password else None

    try:
        if args.cmd == "state":
            r = requests.get(f"{base}/state", auth=auth, timeout=10)
            _print(r.json())
            return 0 if r.ok else 1

        if args.cmd == "events":
            r = requests.get(f"{base}/events", params={"limit": args.limit}, auth=auth, timeout=10)
            _print(r.json())
            return 0 if r.ok else 1

        if args.cmd == "regenerate":
            r = requests.post(f"{base}/regenerate", auth=auth, timeout=10)
            _print(r.json())
            return 0 if r.ok else 1
    except requests.RequestException as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
