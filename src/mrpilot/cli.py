from __future__ import annotations

import argparse
import json
from pathlib import Path

import uvicorn

from mrpilot.codex_adapter import write_codex_config
from mrpilot.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from mrpilot.gitlab_gateway import GitLabGateway
from mrpilot.models import parse_inbound_event
from mrpilot.observability import configure_logging
from mrpilot.orchestrator import Orchestrator, Services
from mrpilot.server import RunDispatcher, create_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mrpilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the GitLab webhook HTTP service")
    _add_common_options(serve_parser)

    process_parser = subparsers.add_parser(
        "process-event",
        help="Run the pipeline once, synchronously, for a saved webhook payload",
    )
    _add_common_options(process_parser)
    process_parser.add_argument(
        "--event",
        type=Path,
        required=True,
        help="Path to a GitLab webhook JSON payload",
    )

    check_parser = subparsers.add_parser(
        "check-config", help="Validate config and probe the GitLab connection"
    )
    _add_common_options(check_parser)

    return parser


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    verbose = "high" if bool(getattr(args, "verbose", False)) else config.runtime.verbose
    configure_logging(verbose, state_dir=config.runtime.state_dir)

    if args.command == "serve":
        _cmd_serve(config)
        return
    if args.command == "process-event":
        _cmd_process_event(config, event_path=args.event)
        return
    if args.command == "check-config":
        _cmd_check_config(config)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_serve(config: AppConfig) -> None:
    if config.codex.enabled and config.codex.generate_config:
        write_codex_config(config.codex, _codex_home(config))
    dispatcher = RunDispatcher(Services.from_config(config))
    app = create_app(config, dispatcher)
    uvicorn.run(app, host=config.server.host, port=config.server.port)


def _cmd_process_event(config: AppConfig, *, event_path: Path) -> None:
    payload = json.loads(event_path.read_text(encoding="utf-8"))
    event = parse_inbound_event(payload)
    outcome = Orchestrator(Services.from_config(config), event).run()
    merge_request = outcome.merge_request.web_url if outcome.merge_request else "<none>"
    print(f"run_id={outcome.run_id} status={outcome.status} stage={outcome.stage.value}")
    print(f"merge_request={merge_request}")
    if outcome.error:
        print(f"error={outcome.error}")


def _cmd_check_config(config: AppConfig) -> None:
    gateway = GitLabGateway(config.gitlab.base_url, config.gitlab.token)
    username = gateway.check_connection()
    providers = [
        name
        for name, enabled in (("claude", config.claude.enabled), ("codex", config.codex.enabled))
        if enabled
    ]
    print(f"GitLab: {config.gitlab.base_url} as @{username}")
    print(f"Workspace root: {config.workspace.root}")
    print(f"Providers: {', '.join(providers) if providers else '<none>'}")


def _codex_home(config: AppConfig) -> Path:
    if config.codex.codex_home is not None:
        return config.codex.codex_home
    return Path.home() / ".codex"
