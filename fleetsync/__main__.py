"""CLI entry point for fleetsync."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

import httpx

from .config import Config, load_config
from .discovery import StaticDiscovery, StaticIdentification, is_network_url
from .log import LogSyncTask, SQLiteLogStore, SyncStatus
from .repository import FileRepository, NotMasterError, RemoteRepository, RepositoryReplicationTask

logger = logging.getLogger("fleetsync")


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

        # Add exception info if present
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
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

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


def open_log_store(config: Config) -> SQLiteLogStore:
    store = SQLiteLogStore(config.log_sync.db_path, owner_id=config.node.id)
    store.connect()
    return store


def open_repositories(config: Config) -> dict[str, FileRepository]:
    base = Path(config.repository.path).expanduser()
    return {
        name: FileRepository(
            base / name,
            temp_dir=base / ".tmp" / name,
            master=config.repository.master,
            file_extension=config.repository.file_extension,
            limit=config.repository.limit,
        )
        for name in config.repository.names
    }


def build_sync_task(config: Config, store: SQLiteLogStore) -> LogSyncTask:
    return LogSyncTask.from_config(
        config.log_sync,
        store,
        StaticDiscovery(config.server.url),
        StaticIdentification(config.node.id),
    )


def build_replication_task(
    config: Config, repositories: dict[str, FileRepository]
) -> RepositoryReplicationTask:
    task = RepositoryReplicationTask(
        {name: repositories[name] for name in config.replicated_names if name in repositories},
        StaticDiscovery(config.replication.master_url),
        limit=config.replication.limit,
        timeout=config.replication.timeout,
    )
    task.interval_seconds = config.replication.interval_seconds
    return task


async def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the peer endpoints and run the background tasks."""
    config = load_config(args.config)

    from .server import create_app

    import uvicorn

    store = open_log_store(config)
    repositories = open_repositories(config)

    host = args.host or config.server.host
    port = args.port or config.server.port
    print(f"Starting fleetsync node: {config.node.id}")
    print(f"Repositories: {', '.join(repositories) or 'none'} "
          f"({'master' if config.repository.master else 'replica'})")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, log_store=store, repositories=repositories)

    stop_event = asyncio.Event()
    background = []
    if config.log_sync.enabled and config.server.url and not args.no_sync:
        sync_task = build_sync_task(config, store)
        background.append(asyncio.create_task(sync_task.run_forever(stop_event=stop_event)))
    if config.replication.enabled and not args.no_sync:
        replication = build_replication_task(config, repositories)
        background.append(
            asyncio.create_task(replication.run_forever(stop_event=stop_event))
        )

    try:
        verbose = getattr(args, "verbose", False)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="info" if verbose else "warning",
            )
        )
        await server.serve()
    finally:
        stop_event.set()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        store.close()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run log synchronization once or continuously."""
    config = load_config(args.config)
    store = open_log_store(config)
    task = build_sync_task(config, store)

    try:
        if args.loop:
            try:
                await task.run_forever()
            except KeyboardInterrupt:
                print("\nShutting down...")
            return 0

        result = await task.execute()
    finally:
        store.close()

    print(
        f"Log sync {result.status.value}: pushed={result.events_pushed}, "
        f"pulled={result.events_pulled}, failed_logs={result.logs_failed}"
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
    return 0 if result.status in (SyncStatus.SUCCESS, SyncStatus.SKIPPED) else 1


async def cmd_replicate(args: argparse.Namespace) -> int:
    """Mirror repositories from the master once or continuously."""
    config = load_config(args.config)
    task = build_replication_task(config, open_repositories(config))

    if args.loop:
        try:
            await task.run_forever()
        except KeyboardInterrupt:
            print("\nShutting down...")
        return 0

    result = await task.execute()
    print(
        f"Replication {result.status.value}: fetched={result.versions_fetched}, "
        f"failed={result.repositories_failed}"
    )
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
    return 0 if result.status in (SyncStatus.SUCCESS, SyncStatus.SKIPPED) else 1


def cmd_log(args: argparse.Namespace) -> int:
    """Append an event to one of this node's logs."""
    config = load_config(args.config)

    properties = {}
    for item in args.properties:
        key, sep, value = item.partition("=")
        if not sep:
            print(f"Error: property {item!r} is not key=value", file=sys.stderr)
            return 1
        properties[key] = value

    store = open_log_store(config)
    try:
        event = store.log_event(args.log_id, args.type, properties)
    finally:
        store.close()

    print(event.to_representation())
    return 0


def cmd_repo(args: argparse.Namespace) -> int:
    """Work with a repository on a peer."""
    config = load_config(args.config)
    url = args.url or config.server.url
    if not url:
        print("Error: no server URL configured, use --url", file=sys.stderr)
        return 1

    with RemoteRepository(url, args.name, timeout=config.log_sync.timeout) as remote:
        try:
            if args.repo_command == "range":
                print(remote.range().to_representation())
                return 0

            if args.repo_command == "checkout":
                version = args.version or remote.range().high
                if version <= 0:
                    print("Repository is empty", file=sys.stderr)
                    return 1
                data = remote.checkout(version)
                if args.output:
                    Path(args.output).write_bytes(data)
                    print(f"Wrote version {version} to {args.output}")
                else:
                    sys.stdout.buffer.write(data)
                return 0

            data = Path(args.file).read_bytes()
            if args.repo_command == "commit":
                from_version = args.from_version
                if from_version is None:
                    from_version = remote.range().high
                ok = remote.commit(data, from_version)
                print("Committed" if ok else "Conflict: repository has moved on, check out and retry")
            else:
                ok = remote.put(data, args.version)
                print("Stored" if ok else f"Version {args.version} already exists")
            return 0 if ok else 1

        except (ValueError, NotMasterError, IOError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local stores and peer reachability."""
    config = load_config(args.config)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "node": {"id": config.node.id, "revision": config.revision},
    }

    store = open_log_store(config)
    try:
        status_data["log"] = store.stats()
        status_data["log_sync"] = build_sync_task(config, store).get_sync_status()
    finally:
        store.close()

    status_data["repositories"] = {
        name: repository.stats()
        for name, repository in open_repositories(config).items()
    }

    server_status = {"url": config.server.url or None, "reachable": False}
    if is_network_url(config.server.url):
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{config.server.url.rstrip('/')}/api/health")
                server_status["reachable"] = response.status_code == 200
        except httpx.HTTPError as e:
            server_status["error"] = str(e) or repr(e)
    status_data["server"] = server_status

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print(f"Node: {config.node.id} (config revision {config.revision})")
    print(f"Log store: {status_data['log']['local_events']} local events in "
          f"{status_data['log']['local_logs']} logs, "
          f"{status_data['log']['total_events']} total")
    print(f"Sync mode: {status_data['log_sync']['mode']}")
    for name, stats in status_data["repositories"].items():
        role = "master" if stats["master"] else "replica"
        print(f"Repository {name} ({role}): versions {stats['range'] or 'none'}")
    if server_status["url"]:
        state = "reachable" if server_status["reachable"] else "unreachable"
        print(f"Server: {server_status['url']} ({state})")
    else:
        print("Server: not configured")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="fleetsync",
        description="Log and repository reconciliation for intermittently connected nodes",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
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

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Serve peer endpoints")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    serve_parser.add_argument(
        "--no-sync",
        action="store_true",
        help="Do not run log sync and replication in the background",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Synchronize audit logs with the server")
    sync_parser.add_argument("--loop", action="store_true", help="Keep syncing on the configured interval")
    sync_parser.set_defaults(func=cmd_sync)

    # Replicate command
    replicate_parser = subparsers.add_parser("replicate", help="Mirror repositories from the master")
    replicate_parser.add_argument("--loop", action="store_true", help="Keep replicating on the configured interval")
    replicate_parser.set_defaults(func=cmd_replicate)

    # Log command
    log_parser = subparsers.add_parser("log", help="Append an event to a local log")
    log_parser.add_argument("log_id", type=int, help="Log to append to")
    log_parser.add_argument("type", type=int, help="Event type")
    log_parser.add_argument("properties", nargs="*", metavar="KEY=VALUE", help="Event properties")
    log_parser.set_defaults(func=cmd_log)

    # Repository commands
    repo_parser = subparsers.add_parser("repo", help="Work with a remote repository")
    repo_parser.add_argument("--url", type=str, default=None, help="Server URL (default: server.url)")
    repo_parser.add_argument("--name", type=str, default="store", help="Repository name")
    repo_subparsers = repo_parser.add_subparsers(dest="repo_command", help="Repository commands")

    repo_range = repo_subparsers.add_parser("range", help="Show stored versions")
    repo_range.set_defaults(func=cmd_repo)

    repo_checkout = repo_subparsers.add_parser("checkout", help="Fetch a version")
    repo_checkout.add_argument("--version", type=int, default=None, help="Version (default: newest)")
    repo_checkout.add_argument("-o", "--output", type=str, default=None, help="Write to file instead of stdout")
    repo_checkout.set_defaults(func=cmd_repo)

    repo_commit = repo_subparsers.add_parser("commit", help="Commit a new version")
    repo_commit.add_argument("file", help="File with the new content")
    repo_commit.add_argument(
        "--from",
        dest="from_version",
        type=int,
        default=None,
        help="Version the change is based on (default: newest)",
    )
    repo_commit.set_defaults(func=cmd_repo)

    repo_put = repo_subparsers.add_parser("put", help="Store an explicit version")
    repo_put.add_argument("file", help="File with the content")
    repo_put.add_argument("--version", type=int, required=True, help="Version number")
    repo_put.set_defaults(func=cmd_repo)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show local state and server reachability")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "repo" and not args.repo_command:
        repo_parser.print_help()
        return 1

    try:
        if inspect.iscoroutinefunction(args.func):
            return asyncio.run(args.func(args))
        return args.func(args)
    except ValueError as e:
        logger.error(f"{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
