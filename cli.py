from __future__ import annotations

import argparse
import json
import sys

import requests

from wac.errors import EXIT_CODES


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _result(r: requests.Response) -> int:
    """Print a response and map an error body to the CLI exit code."""
    try:
        body = r.json()
    except ValueError:
        body = {"error": "Error", "detail": r.text}
    if r.ok:
        _print(body)
        return 0
    print(f"{body.get('error', 'Error')}: {body.get('detail', '')}", file=sys.stderr)
    return EXIT_CODES.get(body.get("error"), 1)


def _load_manifests(path: str) -> list[dict]:
    if path == "-":
        data = json.load(sys.stdin)
    else:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    return data if isinstance(data, list) else [data]


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Workload Autoscaling Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("-n", "--namespace", default="default")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_apply = sub.add_parser("apply", help="Create or update objects from a JSON manifest")
    s_apply.add_argument("-f", "--file", required=True, help="Manifest file (object or list), '-' for stdin")

    s_get = sub.add_parser("get", help="Show one object, or list a kind")
    s_get.add_argument("kind")
    s_get.add_argument("name", nargs="?")

    s_desc = sub.add_parser("describe", help="Object with instances, endpoints, decisions and events")
    s_desc.add_argument("kind")
    s_desc.add_argument("name")

    s_del = sub.add_parser("delete", help="Delete an object")
    s_del.add_argument("kind")
    s_del.add_argument("name")

    s_watch = sub.add_parser("watch", help="Print an object each time it changes")
    s_watch.add_argument("kind")
    s_watch.add_argument("name")
    s_watch.add_argument("--count", type=int, default=0, help="Stop after N changes (0 = forever)")
    s_watch.add_argument("--timeout-s", type=float, default=30.0)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--workload")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    ns = args.namespace

    try:
        if args.cmd == "apply":
            try:
                manifests = _load_manifests(args.file)
            except (OSError, ValueError) as e:
                print(f"InvalidSpec: cannot read {args.file}: {e}", file=sys.stderr)
                return EXIT_CODES["InvalidSpec"]
            code = 0
            for m in manifests:
                if isinstance(m, dict):
                    m.setdefault("namespace", ns)
                rc = _result(requests.post(f"{base}/apply", json=m, timeout=30))
                code = code or rc
            return code

        if args.cmd == "get":
            if args.name:
                return _result(requests.get(f"{base}/objects/{args.kind}/{ns}/{args.name}", timeout=10))
            return _result(requests.get(f"{base}/objects/{args.kind}", params={"namespace": ns}, timeout=10))

        if args.cmd == "describe":
            return _result(requests.get(f"{base}/objects/{args.kind}/{ns}/{args.name}/describe", timeout=10))

        if args.cmd == "delete":
            return _result(requests.delete(f"{base}/objects/{args.kind}/{ns}/{args.name}", timeout=10))

        if args.cmd == "watch":
            url = f"{base}/objects/{args.kind}/{ns}/{args.name}/watch"
            after, seen = 0, 0
            while True:
                r = requests.get(url, params={"after": after, "timeout_s": args.timeout_s}, timeout=args.timeout_s + 10)
                if not r.ok:
                    return _result(r)
                body = r.json()
                if not body.get("changed"):
                    continue
                _print(body)
                seen += 1
                if body.get("deleted") or (args.count and seen >= args.count):
                    return 0
                after = body.get("resource_version") or after

        if args.cmd == "events":
            params = {"limit": args.limit, "namespace": ns}
            if args.workload:
                params["workload"] = args.workload
            return _result(requests.get(f"{base}/events", params=params, timeout=10))
    except requests.RequestException as e:
        print(f"Error: cannot reach {base}: {e}", file=sys.stderr)
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
