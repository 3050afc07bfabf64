from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

DEFAULT_API_URL = "http://localhost:8080"
SERVICE_TARGET = "fleetward_api.rollout_service:app"

ROLLOUT_COMMANDS = ("advance", "pause", "resume", "evaluate")


def _resolve_api_url(value: str | None) -> str:
    return (value or os.getenv("FLEETWARD_API_URL", DEFAULT_API_URL)).rstrip("/")


def _request_json(
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    timeout: int = 30,
) -> Any:
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    api_key = os.getenv("FLEET_API_KEY")
    if api_key:
        headers["x-api-key"] = api_key
    req = urllib.request.Request(
        url,
        data=data,
        method=method,
        headers=headers,
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
            if not raw:
                return {}
            return json.loads(raw.decode("utf-8"))
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        detail: str | dict[str, Any] = body
        try:
            detail = json.loads(body)
        except json.JSONDecodeError:
            detail = body or exc.reason
        raise RuntimeError(f"HTTP {exc.code} {detail}") from exc


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _parse_stages(value: str | None) -> list[int] | None:
    if value is None:
        return None
    try:
        return [int(part.strip()) for part in value.split(",") if part.strip()]
    except ValueError as exc:
        raise ValueError(f"Invalid stage list: {value}") from exc


def _uvicorn_cmd(host: str, port: int, log_level: str) -> list[str]:
    return [
        "uvicorn",
        SERVICE_TARGET,
        "--host",
        host,
        "--port",
        str(port),
        "--log-level",
        log_level,
    ]


def cmd_up(args: argparse.Namespace) -> int:
    command = _uvicorn_cmd(args.host, args.port, args.log_level)
    if args.dry_run:
        print(" ".join(command))
        return 0
    env = dict(os.environ)
    if args.scheduler:
        env["ROLLOUT_SCHEDULER_ENABLED"] = "1"
    try:
        return subprocess.call(command, env=env)
    except KeyboardInterrupt:
        return 0


def cmd_status(args: argparse.Namespace) -> int:
    _print_json(_request_json("GET", f"{_resolve_api_url(args.api_url)}/health"))
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    url = f"{_resolve_api_url(args.api_url)}/fleet/rollouts"
    if args.status:
        url = f"{url}?{urllib.parse.urlencode({'status': args.status})}"
    _print_json(_request_json("GET", url))
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    url = f"{_resolve_api_url(args.api_url)}/fleet/rollouts/{args.rollout_id}"
    _print_json(_request_json("GET", url))
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    payload: dict[str, Any] = {"version": args.version}
    stages = _parse_stages(args.stages)
    if stages is not None:
        payload["stage_percentages"] = stages
    if args.auto_expand is not None:
        payload["auto_expand"] = args.auto_expand
    if args.expand_after_minutes is not None:
        payload["expand_after_minutes"] = args.expand_after_minutes
    if args.failure_threshold is not None:
        payload["failure_threshold"] = args.failure_threshold
    response = _request_json(
        "POST",
        f"{_resolve_api_url(args.api_url)}/fleet/rollouts",
        payload=payload,
    )
    _print_json(response)
    return 0


def cmd_rollout_action(args: argparse.Namespace) -> int:
    url = f"{_resolve_api_url(args.api_url)}/fleet/rollouts/{args.rollout_id}/{args.command}"
    _print_json(_request_json("POST", url))
    return 0


def cmd_fail(args: argparse.Namespace) -> int:
    url = f"{_resolve_api_url(args.api_url)}/fleet/rollouts/{args.rollout_id}/fail"
    payload = {"reason": args.reason} if args.reason else None
    _print_json(_request_json("POST", url, payload=payload))
    return 0


def cmd_cancel(args: argparse.Namespace) -> int:
    url = f"{_resolve_api_url(args.api_url)}/fleet/rollouts/{args.rollout_id}"
    _request_json("DELETE", url)
    print(f"Cancelled rollout {args.rollout_id}")
    return 0


def cmd_outcome(args: argparse.Namespace) -> int:
    url = f"{_resolve_api_url(args.api_url)}/fleet/rollouts/{args.rollout_id}/outcomes"
    payload = {"device_id": args.device_id, "outcome": args.outcome}
    _print_json(_request_json("POST", url, payload=payload))
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    payload: dict[str, Any] = {}
    stages = _parse_stages(args.stages)
    if stages is not None:
        payload["stage_percentages"] = stages
    if args.status_filter:
        payload["status_filter"] = args.status_filter
    response = _request_json(
        "POST",
        f"{_resolve_api_url(args.api_url)}/fleet/rollouts/plan",
        payload=payload,
    )
    _print_json(response)
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    from fleetward_core.config import get_config
    from fleetward_core.rollouts import RolloutController, RolloutDefaults, RolloutScheduler
    from fleetward_core.stores import store_bundle_from_config

    config = get_config()
    stores = store_bundle_from_config(config)
    controller = RolloutController(
        store=stores.rollouts,
        registry=stores.fleet,
        firmware=stores.firmware,
        defaults=RolloutDefaults.from_config(config),
    )
    evaluated = RolloutScheduler(controller, config.eval_interval_seconds).run_once()
    _print_json({"evaluated": evaluated})
    return 0


def _add_api_url(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--api-url")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetward")
    subparsers = parser.add_subparsers(dest="command")

    up_parser = subparsers.add_parser("up", help="Run the rollout service")
    up_parser.add_argument("--host", default="0.0.0.0")
    up_parser.add_argument("--port", type=int, default=8080)
    up_parser.add_argument("--log-level", default="info")
    up_parser.add_argument("--scheduler", action="store_true", help="Enable auto-expansion")
    up_parser.add_argument("--dry-run", action="store_true", help="Print command only")
    up_parser.set_defaults(func=cmd_up)

    status_parser = subparsers.add_parser("status", help="Check service health")
    _add_api_url(status_parser)
    status_parser.set_defaults(func=cmd_status)

    list_parser = subparsers.add_parser("list", help="List rollouts")
    list_parser.add_argument("--status")
    _add_api_url(list_parser)
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser("show", help="Show one rollout")
    show_parser.add_argument("rollout_id")
    _add_api_url(show_parser)
    show_parser.set_defaults(func=cmd_show)

    create_parser = subparsers.add_parser("create", help="Start a rollout")
    create_parser.add_argument("--version", required=True)
    create_parser.add_argument("--stages", help="Comma separated percentages")
    create_parser.add_argument(
        "--auto-expand",
        action=argparse.BooleanOptionalAction,
        default=None,
    )
    create_parser.add_argument("--expand-after-minutes", type=int)
    create_parser.add_argument("--failure-threshold", type=int)
    _add_api_url(create_parser)
    create_parser.set_defaults(func=cmd_create)

    for name in ROLLOUT_COMMANDS:
        action_parser = subparsers.add_parser(name, help=f"{name.capitalize()} a rollout")
        action_parser.add_argument("rollout_id")
        _add_api_url(action_parser)
        action_parser.set_defaults(func=cmd_rollout_action)

    fail_parser = subparsers.add_parser("fail", help="Stop a rollout as failed")
    fail_parser.add_argument("rollout_id")
    fail_parser.add_argument("--reason")
    _add_api_url(fail_parser)
    fail_parser.set_defaults(func=cmd_fail)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a rollout")
    cancel_parser.add_argument("rollout_id")
    _add_api_url(cancel_parser)
    cancel_parser.set_defaults(func=cmd_cancel)

    outcome_parser = subparsers.add_parser("outcome", help="Report a device outcome")
    outcome_parser.add_argument("rollout_id")
    outcome_parser.add_argument("--device-id", required=True)
    outcome_parser.add_argument("--outcome", choices=("success", "failure"), required=True)
    _add_api_url(outcome_parser)
    outcome_parser.set_defaults(func=cmd_outcome)

    plan_parser = subparsers.add_parser("plan", help="Preview stage targets")
    plan_parser.add_argument("--stages", help="Comma separated percentages")
    plan_parser.add_argument("--status-filter")
    _add_api_url(plan_parser)
    plan_parser.set_defaults(func=cmd_plan)

    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Evaluate every active rollout once against the local store",
    )
    sweep_parser.set_defaults(func=cmd_sweep)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 2
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
