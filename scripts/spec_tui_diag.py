"""spec-tui diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from spec_tui.config import SettingsLoadError, SpecTuiSettings, load_settings
from spec_tui.protocol import ProtocolClient, ProtocolError, StdioTransport, ToolCompleted, ToolFailed, ToolProgress
from spec_tui.specs import SpecDiscovery, SpecLoadError, WorkflowCommandKind
from spec_tui.worktrees import GitWorktreeBackend, ResourceError, WorktreeManager


def load(args: argparse.Namespace) -> SpecTuiSettings:
    try:
        return load_settings(args.project)
    except SettingsLoadError as exc:
        print(f"Configuration error: {exc}")
        raise SystemExit(2)


def build_client(settings: SpecTuiSettings) -> ProtocolClient:
    return ProtocolClient(
        lambda: StdioTransport(settings.agent_argv, cwd=settings.project_root, framing=settings.framing),
        request_timeout=settings.request_timeout,
        shutdown_timeout=settings.shutdown_timeout,
    )


def cmd_specs(args: argparse.Namespace) -> None:
    settings = load(args)
    try:
        specs = SpecDiscovery(settings.specs_dir).discover()
    except SpecLoadError as exc:
        print(f"Specs unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        payload = [
            {
                "id": spec.id.value,
                "phase": spec.phase.value,
                "next": [kind.value for kind in spec.available_commands()],
                "directory": str(spec.directory),
            }
            for spec in specs
        ]
        print(json.dumps(payload, indent=2))
    else:
        for spec in specs:
            print(f"{spec.id} {spec.phase.badge}")


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = load(args)
    try:
        manager = WorktreeManager(GitWorktreeBackend(settings.project_root, remote=settings.remote), settings.worktree_dir)
        worktrees = manager.list()
        records = [
            {
                "path": str(worktree.path),
                "branch": worktree.branch,
                "main": worktree.is_main,
                "status": manager.status(worktree.path).describe(),
            }
            for worktree in worktrees
        ]
    except ResourceError as exc:
        print(f"Worktrees unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps(records, indent=2))


async def _list_tools(client: ProtocolClient) -> list[dict]:
    try:
        info = await client.initialize()
        tools = await client.list_tools()
    finally:
        await client.shutdown()
    server = info.server_info.name if info.server_info else None
    return [{"server": server, "name": tool.name, "description": tool.description} for tool in tools]


def cmd_tools(args: argparse.Namespace) -> None:
    settings = load(args)
    try:
        payload = asyncio.run(_list_tools(build_client(settings)))
    except ProtocolError as exc:
        print(f"Agent unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps(payload, indent=2))


async def _run_tool(client: ProtocolClient, tool: str, arguments: dict, timeout: float) -> int:
    try:
        await client.initialize()
        call = await client.call_tool(tool, arguments, timeout=timeout)
        async for event in call:
            if isinstance(event, ToolProgress) and event.message:
                print(f"[PROGRESS] {event.message}")
            elif isinstance(event, ToolCompleted):
                for line in event.result.text.splitlines():
                    print(f"[{'ERR' if event.result.is_error else 'OUT'}] {line}")
                return 1 if event.result.is_error else 0
            elif isinstance(event, ToolFailed):
                print(f"[ERR] {event.error}")
                return 1
        return 1
    finally:
        await client.shutdown()


def cmd_run(args: argparse.Namespace) -> None:
    settings = load(args)
    try:
        spec = SpecDiscovery(settings.specs_dir).load(args.spec)
    except SpecLoadError as exc:
        print(f"Specs unavailable: {exc}")
        raise SystemExit(1)

    kind = WorkflowCommandKind(args.kind)
    if kind not in spec.available_commands():
        allowed = ", ".join(command.value for command in spec.available_commands())
        print(f"{kind.display_name} is not available for {spec.id} (allowed: {allowed})")
        raise SystemExit(1)

    arguments = {"spec_directory": str(spec.directory.resolve()), "spec_id": spec.id.value}
    timeout = args.timeout or settings.command_timeout
    try:
        code = asyncio.run(_run_tool(build_client(settings), kind.tool_name, arguments, timeout))
    except ProtocolError as exc:
        print(f"Agent unavailable: {exc}")
        raise SystemExit(1)
    if code:
        raise SystemExit(code)


def cmd_new(args: argparse.Namespace) -> None:
    settings = load(args)
    try:
        spec = SpecDiscovery(settings.specs_dir).create(args.name)
    except SpecLoadError as exc:
        print(f"Cannot create specification: {exc}")
        raise SystemExit(1)
    print(spec.id)
    try:
        manager = WorktreeManager(GitWorktreeBackend(settings.project_root, remote=settings.remote), settings.worktree_dir)
        manager.ensure_branch(spec.branch, settings.main_branch)
    except ResourceError as exc:
        # the specification stays; the branch is created again on switch
        print(f"Branch {spec.branch} not created: {exc}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="spec-tui diagnostics")
    parser.add_argument("--project", type=Path, default=None, help="Project directory")
    sub = parser.add_subparsers(dest="cmd")

    p_specs = sub.add_parser("specs", help="List specifications and their phase")
    p_specs.add_argument("--json", action="store_true", help="Output JSON")
    p_specs.set_defaults(func=cmd_specs)

    p_worktrees = sub.add_parser("worktrees", help="List git worktrees with status")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_tools = sub.add_parser("tools", help="Handshake with the agent and list its tools")
    p_tools.set_defaults(func=cmd_tools)

    p_run = sub.add_parser("run", help="Run one workflow command and stream its output")
    p_run.add_argument("spec", help="Specification id, e.g. 001-feature-auth")
    p_run.add_argument("kind", choices=[kind.value for kind in WorkflowCommandKind])
    p_run.add_argument("--timeout", type=float, default=None, help="Seconds before the call is cancelled")
    p_run.set_defaults(func=cmd_run)

    p_new = sub.add_parser("new", help="Create the next numbered specification")
    p_new.add_argument("name")
    p_new.set_defaults(func=cmd_new)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
