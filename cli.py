from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _parse_tier_args(items: list[str]) -> dict[str, dict]:
    tiers: dict[str, dict] = {}
    for item in items:
        tier, sep, artifact = item.partition("=")
        if not sep or not tier or not artifact:
            raise SystemExit(f"--tier expects TIER=ARTIFACT, got {item!r}")
        tiers[tier] = {"artifact": artifact}
    return tiers


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Tier Delivery Controller CLI")
    p.add_argument("--api", default=os.getenv("TDC_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("TDC_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("TDC_ADMIN_PASSWORD", ""))
    sub = p.add_subparsers(dest="cmd", required=True)

    s_rel = sub.add_parser("release", help="Submit a release")
    s_rel.add_argument("--tier", action="append", required=True, metavar="TIER=ARTIFACT")
    s_rel.add_argument("--release-id")
    s_rel.add_argument("--batch-size", type=int)
    s_rel.add_argument("--max-unavailable", type=int)

    s_prov = sub.add_parser("provision", help="Start the first instances of a tier (or more of its current revision)")
    s_prov.add_argument("tier")
    s_prov.add_argument("artifact")
    s_prov.add_argument("--count", type=int, default=1)

    s_status = sub.add_parser("status", help="Show a pipeline run")
    s_status.add_argument("run_id")

    sub.add_parser("runs", help="List pipeline runs")

    s_abort = sub.add_parser("abort", help="Abort a pipeline run")
    s_abort.add_argument("run_id")

    s_prom = sub.add_parser("promote", help="Promote a datastore replica to primary")
    s_prom.add_argument("node_id")
    s_prom.add_argument("--reason", default="manual")

    sub.add_parser("tiers", help="Show tiers, routing tables and instances")
    sub.add_parser("datastore", help="Show datastore roles and replica ranking")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--tier")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "release":
        tiers = _parse_tier_args(args.tier)
        for spec in tiers.values():
            if args.batch_size is not None:
                spec["batch_size"] = args.batch_size
            if args.max_unavailable is not None:
                spec["max_unavailable"] = args.max_unavailable
        payload = {"release_id": args.release_id, "tiers": tiers}
        r = requests.post(f"{base}/releases", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "provision":
        payload = {"artifact": args.artifact, "count": args.count}
        r = requests.post(f"{base}/tiers/{args.tier}/provision", json=payload, auth=auth, timeout=300)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "status":
        r = requests.get(f"{base}/runs/{args.run_id}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "runs":
        _print(requests.get(f"{base}/runs", timeout=10).json())
        return 0

    if args.cmd == "abort":
        r = requests.post(f"{base}/runs/{args.run_id}/abort", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "promote":
        r = requests.post(
            f"{base}/datastore/{args.node_id}/promote", json={"reason": args.reason}, auth=auth, timeout=10
        )
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "tiers":
        _print(requests.get(f"{base}/tiers", timeout=10).json())
        return 0

    if args.cmd == "datastore":
        _print(requests.get(f"{base}/datastore", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.tier:
            params["tier"] = args.tier
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
