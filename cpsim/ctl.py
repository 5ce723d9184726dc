import argparse
import json
import os
from typing import Optional

import requests

API_BASE = os.getenv("CPSIM_API", "http://localhost:7071")


def _do(method: str, url: str, params: Optional[dict] = None) -> requests.Response:
    resp = requests.request(method, url, params=params, headers={"Connection": "close"}, timeout=120)
    print(f"{method} {resp.url} -> {resp.status_code} {resp.reason}")
    try:
        print(json.dumps(resp.json(), indent=2))
    except ValueError:
        print(resp.text)
    return resp


def authorize(base: str, id_tag: Optional[str]) -> requests.Response:
    params = {"idTag": id_tag} if id_tag else None
    return _do("POST", f"{base}/authorize", params)


def transaction(base: str, id_tag: Optional[str], connector_id: int) -> requests.Response:
    params = {"connectorId": connector_id}
    if id_tag:
        params["idTag"] = id_tag
    return _do("POST", f"{base}/transaction", params)


def set_status(base: str, status: str, connector_id: int) -> requests.Response:
    return _do("POST", f"{base}/status/{status}", {"connectorId": connector_id})


def show(base: str) -> requests.Response:
    return _do("GET", f"{base}/state")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a running cpsim through its HTTP control API")
    parser.add_argument("--api", default=API_BASE, help=f"control API base URL (default {API_BASE})")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_auth = sub.add_parser("authorize", help="send an Authorize request")
    p_auth.add_argument("idTag", nargs="?")

    p_tx = sub.add_parser("transaction", help="run a full authorize/start/meter/stop transaction")
    p_tx.add_argument("idTag", nargs="?")
    p_tx.add_argument("--connector", type=int, default=1)

    p_status = sub.add_parser("status", help="send a StatusNotification")
    p_status.add_argument("status")
    p_status.add_argument("--connector", type=int, default=1)

    sub.add_parser("show", help="print the simulator state")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    base = args.api.rstrip("/")
    if args.cmd == "authorize":
        resp = authorize(base, args.idTag)
    elif args.cmd == "transaction":
        resp = transaction(base, args.idTag, args.connector)
    elif args.cmd == "status":
        resp = set_status(base, args.status, args.connector)
    else:
        resp = show(base)
    return 0 if resp.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
