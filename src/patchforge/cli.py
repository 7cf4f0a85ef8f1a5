"""Command-line interface."""

from __future__ import annotations

import argparse
import sys
from typing import Any

from patchforge.change_plan import PlanValidationError, load_change_plan
from patchforge.config import Settings
from patchforge.factory import build_model, build_orchestrator
from patchforge.util.logging import get_logger, set_log_level
from patchforge.util.progress import CallbackProgressSink, ProgressEvent


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="patchforge: multi-agent code changes")
    parser.add_argument("request", nargs="?", type=str, help="Change request to run")
    parser.add_argument("--plan", dest="plan", help="Run a pre-authored change plan (.json/.yaml)")
    parser.add_argument("--yes", action="store_true", dest="yes", help="Approve every change")
    parser.add_argument("--mock", action="store_true", dest="mock", help="Use the offline mock model")
    parser.add_argument("--model", dest="model", help="Use one model for every role")
    parser.add_argument("--base-url", dest="base_url")
    parser.add_argument("--api-key", dest="api_key")
    parser.add_argument("--max-steps", type=int, dest="max_steps")
    parser.add_argument("--timeout", type=float, dest="timeout")
    parser.add_argument("--workspace", dest="workspace")
    parser.add_argument("--repo", dest="repo")
    parser.add_argument("--prompts-dir", dest="prompts_dir")
    parser.add_argument("--read-only", action="store_true", dest="read_only")
    parser.add_argument("--log-level", dest="log_level")
    args = parser.parse_args(argv)
    if not args.request and not args.plan:
        parser.error("a request or --plan is required")
    return args


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    data: dict[str, Any] = settings.model_dump()
    if args.base_url:
        data["openai_base_url"] = args.base_url
    if args.api_key:
        data["openai_api_key"] = args.api_key
    if args.model:
        data["model_override"] = args.model
    if args.max_steps:
        data["max_steps"] = args.max_steps
    if args.timeout:
        data["workflow_timeout_seconds"] = args.timeout
    if args.workspace:
        data["workspace_dir"] = args.workspace
    if args.repo:
        data["repo_root"] = args.repo
    if args.prompts_dir:
        data["prompts_dir"] = args.prompts_dir
    if args.yes:
        data["auto_approve"] = True
    if args.read_only:
        data["read_only"] = True
    if args.log_level:
        data["log_level"] = args.log_level
    return Settings(**data)


def _print_event(event: ProgressEvent) -> None:
    if event.kind in {"telemetry", "run_completed", "run_failed"}:
        return
    print(f"[{event.kind}] {event.message}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = apply_overrides(Settings(), args)
    set_log_level(settings.log_level)
    logger = get_logger("patchforge.cli")

    orchestrator = build_orchestrator(
        settings,
        build_model(settings, use_mock=args.mock),
        progress=CallbackProgressSink(_print_event),
    )
    try:
        if args.plan:
            plan = load_change_plan(args.plan)
            result = orchestrator.run_change_plan(plan, request=args.request)
        else:
            result = orchestrator.run(args.request)
    except PlanValidationError as exc:
        logger.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        orchestrator.terminate()
        print("Cancelled.")
        return 130

    print("Status:", result.status)
    if result.telemetry is not None:
        print(result.telemetry.message())
    for check in result.final_checks:
        print(f"Final check {check.name}:", "passed" if check.passed else check.failure_text())
    print("Result:\n", result.final_output)
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
