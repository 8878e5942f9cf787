import argparse
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:4040"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _fail(action: str, resp: httpx.Response) -> int:
    try:
        body = resp.json()
    except ValueError:
        body = None
    detail = (body.get("detail") or "") if isinstance(body, dict) else resp.text
    suffix = f": {detail}" if detail else ""
    print(f"Failed to {action}: HTTP {resp.status_code}{suffix}")
    return 1


def _print_plan(plan: dict) -> None:
    deleted = " (deleted)" if plan.get("deleted_at") else ""
    print(f"{plan['name']}{deleted}  [{plan['id']}]")
    for item in plan.get("items") or []:
        print(f"  {item['order_index'] + 1}. {item['action_name']}  [{item['id']}]")


def _print_execution(execution: dict) -> None:
    state = f"finished {execution['finished_display']}" if execution.get("finished") else "open"
    print(f"{execution['action_plan_name']}  started {execution['started_display']}, {state}  [{execution['id']}]")
    for item in execution.get("items") or []:
        mark = "x" if item.get("finished") else " "
        when = f"  ({item['finished_display']})" if item.get("finished_display") else ""
        print(f"  [{mark}] {item['action_name']}{when}  [{item['id']}]")


def _request(args: argparse.Namespace, method: str, path: str, action: str, **kwargs: Any) -> Optional[Any]:
    with httpx.Client() as client:
        resp = client.request(method, _join_url(args.base_url, path), timeout=args.timeout, **kwargs)
    if resp.status_code >= 400:
        _fail(action, resp)
        return None
    return resp.json()


def run_plans_list(args: argparse.Namespace) -> int:
    plans = _request(
        args, "GET", "/api/plans", "list plans", params={"include_deleted": str(args.all).lower()}
    )
    if plans is None:
        return 1
    if not plans:
        print("No action plans.")
    for plan in plans:
        _print_plan(plan)
    return 0


def run_plans_show(args: argparse.Namespace) -> int:
    plan = _request(args, "GET", f"/api/plans/{args.plan_id}", "fetch plan")
    if plan is None:
        return 1
    _print_plan(plan)
    return 0


def run_plans_create(args: argparse.Namespace) -> int:
    plan = _request(args, "POST", "/api/plans", "create plan", json={"name": args.name, "items": args.item or []})
    if plan is None:
        return 1
    _print_plan(plan)
    return 0


def run_execution_start(args: argparse.Namespace) -> int:
    execution = _request(args, "POST", f"/api/plans/{args.plan_id}/executions", "start execution")
    if execution is None:
        return 1
    _print_execution(execution)
    return 0


def run_execution_show(args: argparse.Namespace) -> int:
    execution = _request(args, "GET", f"/api/executions/{args.execution_id}", "fetch execution")
    if execution is None:
        return 1
    _print_execution(execution)
    return 0


def run_item_toggle(args: argparse.Namespace) -> int:
    finished = args.run_cmd == "check"
    state = _request(
        args,
        "POST",
        f"/api/execution-items/{args.item_id}/finished",
        "update item",
        json={"finished": finished},
    )
    if state is None:
        return 1
    print(f"Checked at {state['finished_display']}" if state["finished"] else "Unchecked")
    return 0


def run_execution_finish(args: argparse.Namespace) -> int:
    execution = _request(args, "POST", f"/api/executions/{args.execution_id}/finish", "finish execution")
    if execution is None:
        return 1
    _print_execution(execution)
    return 0


def run_actions_search(args: argparse.Namespace) -> int:
    actions = _request(args, "GET", "/api/actions/search", "search actions", params={"q": args.query})
    if actions is None:
        return 1
    for action in actions:
        print(f"{action['name']}  [{action['id']}]")
    return 0


def run_backup_export(args: argparse.Namespace) -> int:
    backup = _request(args, "GET", "/api/backup", "export backup")
    if backup is None:
        return 1
    text = json.dumps(backup, indent=2)
    if args.out:
        Path(args.out).write_text(text)
        print(
            f"Wrote {len(backup['action_plans'])} plan(s) and "
            f"{len(backup['action_plan_executions'])} execution(s) to {args.out}"
        )
    else:
        print(text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Maintenance planner CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--timeout", type=float, default=10, help="Request timeout in seconds")
    subparsers = parser.add_subparsers(dest="command")

    plans = subparsers.add_parser("plans", help="Action plans")
    plans_sub = plans.add_subparsers(dest="plans_cmd")
    plans_list = plans_sub.add_parser("list", help="List action plans")
    plans_list.add_argument("--all", action="store_true", help="Include deleted plans")
    plans_show = plans_sub.add_parser("show", help="Show a plan and its items")
    plans_show.add_argument("plan_id")
    plans_create = plans_sub.add_parser("create", help="Create a plan")
    plans_create.add_argument("name")
    plans_create.add_argument("--item", action="append", help="Action name; repeat for each step")

    run = subparsers.add_parser("run", help="Executions")
    run_sub = run.add_subparsers(dest="run_cmd")
    start = run_sub.add_parser("start", help="Start an execution of a plan")
    start.add_argument("plan_id")
    show = run_sub.add_parser("show", help="Show an execution")
    show.add_argument("execution_id")
    check = run_sub.add_parser("check", help="Mark an execution item finished")
    check.add_argument("item_id")
    uncheck = run_sub.add_parser("uncheck", help="Clear an execution item")
    uncheck.add_argument("item_id")
    finish = run_sub.add_parser("finish", help="Complete an execution")
    finish.add_argument("execution_id")

    actions = subparsers.add_parser("actions", help="Actions")
    actions_sub = actions.add_subparsers(dest="actions_cmd")
    search = actions_sub.add_parser("search", help="Search actions by name")
    search.add_argument("query")

    backup = subparsers.add_parser("backup", help="Backups")
    backup_sub = backup.add_subparsers(dest="backup_cmd")
    export = backup_sub.add_parser("export", help="Download a JSON backup")
    export.add_argument("--out", help="Write to this file instead of stdout")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "plans" and args.plans_cmd == "list":
        return run_plans_list(args)
    if args.command == "plans" and args.plans_cmd == "show":
        return run_plans_show(args)
    if args.command == "plans" and args.plans_cmd == "create":
        return run_plans_create(args)
    if args.command == "run" and args.run_cmd == "start":
        return run_execution_start(args)
    if args.command == "run" and args.run_cmd == "show":
        return run_execution_show(args)
    if args.command == "run" and args.run_cmd in ("check", "uncheck"):
        return run_item_toggle(args)
    if args.command == "run" and args.run_cmd == "finish":
        return run_execution_finish(args)
    if args.command == "actions" and args.actions_cmd == "search":
        return run_actions_search(args)
    if args.command == "backup" and args.backup_cmd == "export":
        return run_backup_export(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
