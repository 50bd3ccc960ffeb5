"""Command-line client for the action engine service."""

from __future__ import annotations

import argparse
import json
import sys

import httpx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Call the action engine service")
    parser.add_argument("--engine-url", default="http://localhost:7002", help="Engine service base URL")
    parser.add_argument("--timeout", type=float, default=120.0, help="Request timeout seconds")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run an action")
    run.add_argument("goal", nargs="?", help="Goal text, sent as the 'goal' parameter")
    run.add_argument("--action", default="ROUTER", help="Action name")
    run.add_argument("--params", default=None, help="Action parameters as a JSON object")
    run.add_argument("--trace-id", default=None, help="Trace id to use for the run")
    run.add_argument("--verbose", action="store_true", help="Print the full response and trace id")

    trace = sub.add_parser("trace", help="Show one trace tree")
    trace.add_argument("trace_id")

    traces = sub.add_parser("traces", help="List recent traces")
    traces.add_argument("--limit", type=int, default=20)
    return parser


def _params(args: argparse.Namespace) -> dict:
    params = json.loads(args.params) if args.params else {}
    if not isinstance(params, dict):
        raise ValueError("--params must be a JSON object")
    if args.goal:
        params["goal"] = args.goal
    return params


def _print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.engine_url.rstrip("/")

    # Avoid inheriting system proxy settings that can break localhost calls.
    try:
        with httpx.Client(timeout=args.timeout, trust_env=False) as client:
            if args.command == "run":
                try:
                    payload = {"action": args.action, "params": _params(args)}
                except ValueError as exc:
                    print(f"Invalid parameters: {exc}", file=sys.stderr)
                    return 2
                headers = {"x-trace-id": args.trace_id} if args.trace_id else {}
                resp = client.post(f"{base}/v1/run", json=payload, headers=headers)
            elif args.command == "trace":
                resp = client.get(f"{base}/v1/traces/{args.trace_id}")
            else:
                resp = client.get(f"{base}/v1/traces", params={"limit": args.limit})
    except httpx.ReadTimeout:
        print("Request timed out. The server may still be processing the request.")
        print("Try again with a longer timeout, e.g. --timeout 240")
        return 1
    except httpx.RequestError as exc:
        print(f"Request failed: {exc}")
        return 1

    data = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else None
    if args.command != "run":
        if resp.status_code >= 400:
            print(f"Request failed: {resp.status_code}")
            print(resp.text)
            return 1
        _print_json(data)
        return 0

    if data is None or not data.get("ok"):
        print(f"Request failed: {resp.status_code}")
        error = (data or {}).get("error") or {}
        print(error.get("message") or resp.text)
        return 1

    result = data.get("result") or {}
    print(result.get("final_answer") or json.dumps(result, ensure_ascii=False, indent=2))
    if args.verbose:
        # Debug view to inspect the raw result and trace_id.
        print("\n--- trace_id ---")
        print(data.get("trace_id"))
        print("\n--- result ---")
        _print_json(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
