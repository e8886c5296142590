"""CLI entry point for Scribble."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import NotConfigured
from .state import LocalState, TaskStatus
from .store import KeyValueStore
from .sync import SyncOrchestrator


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "sync_id"):
            log_data["sync_id"] = record.sync_id

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.WARNING)
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )

    # httpx logs every sync request at INFO
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(level if level == logging.DEBUG else logging.WARNING)


def _open_state(config: Config) -> tuple[KeyValueStore, LocalState]:
    store = KeyValueStore(config.store.db_path)
    store.connect()
    local = LocalState(store)
    local.load()
    return store, local


def _format_task(task) -> str:
    mark = "x" if task.completed else " "
    group = f" [{task.group}]" if task.group else ""
    return f"[{mark}] {task.task_id}{group} {task.text}"


def cmd_add(args: argparse.Namespace) -> int:
    """Add a task."""
    store, local = _open_state(load_config(args.config))
    try:
        task = local.add_task(args.text, group=args.group or "")
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(f"Added {task.task_id}: {task.text}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List tasks."""
    store, local = _open_state(load_config(args.config))
    try:
        group = args.group
        if group is None and local.state.selected_group:
            group = local.state.selected_group
        tasks = local.tasks(group=group)

        if args.json:
            print(json.dumps([task.to_dict() for task in tasks], indent=2))
            return 0

        if local.state.user_name:
            print(f"{local.state.user_name}'s tasks" + (f" in {group}" if group else ""))
        if not tasks:
            print("No tasks")
        for task in tasks:
            print(_format_task(task))
    finally:
        store.close()

    return 0


def _mutate(args: argparse.Namespace, action) -> int:
    store, local = _open_state(load_config(args.config))
    try:
        message = action(local)
    except KeyError as e:
        print(f"Error: {e.args[0]}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(message)
    return 0


def cmd_done(args: argparse.Namespace) -> int:
    """Mark a task completed."""
    return _mutate(
        args,
        lambda local: f"Completed: {local.set_status(args.task_id, TaskStatus.COMPLETED).text}",
    )


def cmd_undo(args: argparse.Namespace) -> int:
    """Mark a task pending again."""
    return _mutate(
        args,
        lambda local: f"Reopened: {local.set_status(args.task_id, TaskStatus.PENDING).text}",
    )


def cmd_edit(args: argparse.Namespace) -> int:
    """Change a task's text."""
    return _mutate(
        args,
        lambda local: f"Updated: {local.edit_task(args.task_id, args.text).text}",
    )


def cmd_rm(args: argparse.Namespace) -> int:
    """Delete a task."""

    def action(local: LocalState) -> str:
        local.delete_task(args.task_id)
        return f"Deleted {args.task_id}"

    return _mutate(args, action)


def cmd_clear_completed(args: argparse.Namespace) -> int:
    """Delete all completed tasks."""
    return _mutate(args, lambda local: f"Removed {local.clear_completed()} completed tasks")


def cmd_rename_group(args: argparse.Namespace) -> int:
    """Rename a group."""
    return _mutate(
        args,
        lambda local: f"Moved {local.rename_group(args.old, args.new)} tasks to {args.new!r}",
    )


def cmd_select_group(args: argparse.Namespace) -> int:
    """Select the group shown by default."""

    def action(local: LocalState) -> str:
        local.select_group(args.name)
        return f"Selected group {args.name!r}" if args.name else "Showing all groups"

    return _mutate(args, action)


def cmd_set_name(args: argparse.Namespace) -> int:
    """Set the user name."""

    def action(local: LocalState) -> str:
        local.set_user_name(args.name)
        return f"User name set to {args.name!r}"

    return _mutate(args, action)


def cmd_configure(args: argparse.Namespace) -> int:
    """Store the sync endpoint."""
    config = load_config(args.config)
    store, local = _open_state(config)
    try:
        orchestrator = SyncOrchestrator(local, store, config.sync)
        endpoint = orchestrator.configure_endpoint(args.base_url, args.sync_id, args.token)
    except NotConfigured as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(f"Syncing {endpoint.sync_id} with {endpoint.base_url}")
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync attempt."""
    config = load_config(args.config)
    store, local = _open_state(config)
    try:
        orchestrator = SyncOrchestrator(local, store, config.sync)
        result = await orchestrator.sync(force=not args.if_due, adopt=args.adopt)
    finally:
        store.close()

    print(f"Sync {result.status.value}: {result.message}")
    return 0 if result.ok else 1


async def cmd_watch(args: argparse.Namespace) -> int:
    """Run gated sync attempts until interrupted."""
    config = load_config(args.config)
    store, local = _open_state(config)
    orchestrator = SyncOrchestrator(local, store, config.sync)

    print(f"Watching for due syncs every {config.sync.check_interval_minutes} minutes")
    try:
        await orchestrator.sync_loop()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        store.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show sync status."""
    config = load_config(args.config)
    store, local = _open_state(config)
    try:
        status_data = SyncOrchestrator(local, store, config.sync).get_sync_status()
        status_data["store"] = store.get_stats()
    finally:
        store.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("Scribble Sync Status")
    print("====================")
    if status_data["configured"]:
        print(f"Remote: {status_data['base_url']} ({status_data['sync_id']})")
    else:
        print("Remote: not configured (run 'scribble configure')")
    print(f"Enabled: {'Yes' if status_data['enabled'] else 'No'}")
    print(f"Last attempt: {status_data['last_attempt'] or 'never'}")
    print(f"Last success: {status_data['last_success'] or 'never'}")
    print(f"Unpushed changes: {'Yes' if status_data['dirty'] else 'No'}")
    if status_data["lock_until"]:
        print(f"Sync running until: {status_data['lock_until']}")
    print(f"Tasks: {status_data['task_count']} ({status_data['tombstone_count']} deletions tracked)")
    print(f"Store: {status_data['store']['db_path']}")

    return 0


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the blob store server."""
    config = load_config(args.config)

    try:
        from .server import create_app

        import uvicorn
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install scribble[server]", file=sys.stderr)
        return 1

    host = args.host or config.server.host
    port = args.port or config.server.port

    if not config.server.auth_token:
        print("Warning: no auth token configured; blob requests will fail", file=sys.stderr)

    store = KeyValueStore(config.server.db_path)
    store.connect()

    print("Starting Scribble blob store")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, store=store)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        store.close()

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="scribble",
        description="A task list that syncs across devices through a blob store",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    add_parser = subparsers.add_parser("add", help="Add a task")
    add_parser.add_argument("text", help="Task text")
    add_parser.add_argument("-g", "--group", default="", help="Group label")
    add_parser.set_defaults(func=cmd_add)

    list_parser = subparsers.add_parser("list", help="List tasks")
    list_parser.add_argument("-g", "--group", default=None, help="Only this group")
    list_parser.add_argument("--json", action="store_true", help="Output tasks as JSON")
    list_parser.set_defaults(func=cmd_list)

    done_parser = subparsers.add_parser("done", help="Mark a task completed")
    done_parser.add_argument("task_id", type=int)
    done_parser.set_defaults(func=cmd_done)

    undo_parser = subparsers.add_parser("undo", help="Mark a task pending")
    undo_parser.add_argument("task_id", type=int)
    undo_parser.set_defaults(func=cmd_undo)

    edit_parser = subparsers.add_parser("edit", help="Change a task's text")
    edit_parser.add_argument("task_id", type=int)
    edit_parser.add_argument("text")
    edit_parser.set_defaults(func=cmd_edit)

    rm_parser = subparsers.add_parser("rm", help="Delete a task")
    rm_parser.add_argument("task_id", type=int)
    rm_parser.set_defaults(func=cmd_rm)

    clear_parser = subparsers.add_parser("clear-completed", help="Delete completed tasks")
    clear_parser.set_defaults(func=cmd_clear_completed)

    rename_parser = subparsers.add_parser("rename-group", help="Rename a group")
    rename_parser.add_argument("old")
    rename_parser.add_argument("new")
    rename_parser.set_defaults(func=cmd_rename_group)

    select_parser = subparsers.add_parser("select-group", help="Select the default group")
    select_parser.add_argument("name", nargs="?", default="", help="Group (empty for all)")
    select_parser.set_defaults(func=cmd_select_group)

    name_parser = subparsers.add_parser("set-name", help="Set the user name")
    name_parser.add_argument("name")
    name_parser.set_defaults(func=cmd_set_name)

    configure_parser = subparsers.add_parser("configure", help="Set the sync endpoint")
    configure_parser.add_argument("--base-url", required=True, help="Blob store URL")
    configure_parser.add_argument("--sync-id", required=True, help="Sync identifier")
    configure_parser.add_argument("--token", required=True, help="Bearer token")
    configure_parser.set_defaults(func=cmd_configure)

    sync_parser = subparsers.add_parser("sync", help="Sync with the blob store now")
    sync_parser.add_argument(
        "--if-due",
        action="store_true",
        help="Only sync if the sync interval has elapsed since the last attempt",
    )
    sync_parser.add_argument(
        "--adopt",
        action="store_true",
        help="Replace local tasks with the remote copy",
    )
    sync_parser.set_defaults(func=cmd_sync)

    watch_parser = subparsers.add_parser("watch", help="Sync periodically")
    watch_parser.set_defaults(func=cmd_watch)

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    serve_parser = subparsers.add_parser("serve", help="Start the blob store server")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
