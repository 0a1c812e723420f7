import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8400"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_result(result: dict) -> None:
    if not result:
        print("No result.")
        return
    status = result.get("status")
    if status == "choice_required":
        print("No usable model selected. Available models:")
        for candidate in result.get("candidates") or []:
            print(f"- {candidate}")
        return
    model = result.get("model")
    requested = result.get("requested_model")
    if requested and model and requested != model:
        print(f"[using {model} instead of {requested}]")
    print(result.get("content") or "")
    stats = result.get("stats") or {}
    if status == "completed":
        print(f"\n[{model}: {stats.get('tokens', 0)} tokens, {stats.get('tokens_per_s', 0)} tok/s]")
    else:
        print(f"\n[{status}: {result.get('error') or 'no detail'}]")


def _fail(resp: httpx.Response, action: str) -> int:
    detail = ""
    try:
        detail = resp.json().get("detail") or ""
    except ValueError:
        detail = resp.text
    print(f"Failed to {action}: HTTP {resp.status_code} {detail}".rstrip())
    return 1


def run_status(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/status"), timeout=10)
        if resp.status_code >= 400:
            return _fail(resp, "fetch status")
        data = resp.json()
    reachable = "reachable" if data.get("server_reachable") else "unreachable"
    print(f"Server: {reachable}")
    print(f"Current model: {data.get('current_model') or '-'}")
    orchestrator = data.get("orchestrator") or {}
    print(f"State: {orchestrator.get('state')}")
    params = (data.get("parameters") or {}).get("modified") or {}
    if params:
        print("Modified parameters: " + ", ".join(f"{k}={v}" for k, v in params.items()))
    return 0


def run_models(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/models"), timeout=10)
        if resp.status_code >= 400:
            return _fail(resp, "list models")
        data = resp.json()
    if not data.get("server_reachable"):
        print("Model server is not reachable.")
    current = data.get("current_model")
    for model in data.get("models") or []:
        marker = "*" if model.get("id") == current else " "
        print(f"{marker} {model.get('id')}")
    return 0


def run_send(args: argparse.Namespace) -> int:
    payload = {"prompt": args.prompt, "model": args.model, "with_history": args.history}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/send"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            return _fail(resp, "send prompt")
        _print_result(resp.json().get("result") or {})
    return 0


def run_multishot(args: argparse.Namespace) -> int:
    payload = {"prompt": args.prompt, "models": args.models}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/multishot"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            return _fail(resp, "run multishot")
        state = resp.json().get("multishot") or {}
    for name, register in (state.get("registers") or {}).items():
        print(f"--- [{name}] {register.get('model')} ({register.get('status')})")
        print(register.get("content") or "")
    if state.get("status") == "halted":
        print(f"Halted at step {state.get('halted_at')}: {state.get('error')}")
        return 1
    return 0


def run_cancel(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/cancel"), timeout=10)
        if resp.status_code >= 400:
            return _fail(resp, "cancel")
        cancelled = resp.json().get("cancelled")
    print("Cancelled." if cancelled else "Nothing to cancel.")
    return 0


def run_history(args: argparse.Namespace) -> int:
    url = _join_url(args.base_url, f"/api/history/{args.model}")
    with httpx.Client() as client:
        if args.clear:
            resp = client.delete(url, timeout=10)
            if resp.status_code >= 400:
                return _fail(resp, "clear history")
            print(f"Cleared history for {args.model}.")
            return 0
        resp = client.get(url, timeout=10)
        if resp.status_code >= 400:
            return _fail(resp, "fetch history")
        messages = resp.json().get("messages") or []
    for message in messages:
        print(f"{message.get('role')}: {message.get('content')}")
    return 0


def run_watch(args: argparse.Namespace) -> int:
    url = _join_url(args.base_url, "/api/events")
    try:
        with httpx.Client(timeout=None) as client:
            with client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    print(f"Failed to watch events: HTTP {resp.status_code}")
                    return 1
                for line in resp.iter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[len("data:"):].strip())
                    except json.JSONDecodeError:
                        continue
                    if event.get("event_type") == "streaming":
                        print(event.get("delta", ""), end="", flush=True)
                    else:
                        print(f"\n[{event.get('event_type')}]", flush=True)
    except KeyboardInterrupt:
        pass
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Parley CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show engine status")
    subparsers.add_parser("models", help="List available models")

    send = subparsers.add_parser("send", help="Send a prompt")
    send.add_argument("prompt")
    send.add_argument("--model", default=None, help="Model to request")
    send.add_argument(
        "--no-history", dest="history", action="store_false", help="Send without the model's history"
    )
    send.add_argument("--timeout", type=float, default=600, help="Max wait seconds")

    multishot = subparsers.add_parser("multishot", help="Send one prompt to several models in turn")
    multishot.add_argument("prompt")
    multishot.add_argument("models", nargs="+", help="Models in order")
    multishot.add_argument("--timeout", type=float, default=1800, help="Max wait seconds")

    subparsers.add_parser("cancel", help="Cancel the active exchange")

    history = subparsers.add_parser("history", help="Show or clear a model's history")
    history.add_argument("model")
    history.add_argument("--clear", action="store_true", help="Clear instead of show")

    subparsers.add_parser("watch", help="Print live events")
    return parser


COMMANDS = {
    "status": run_status,
    "models": run_models,
    "send": run_send,
    "multishot": run_multishot,
    "cancel": run_cancel,
    "history": run_history,
    "watch": run_watch,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = COMMANDS.get(args.command or "")
    if handler is None:
        parser.print_help()
        return 1
    try:
        return handler(args)
    except httpx.HTTPError as exc:
        print(f"Request failed: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
