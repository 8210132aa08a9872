"""branchoff CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import subprocess
import sys
from pathlib import Path

DEFAULT_SERVER = "http://127.0.0.1:8000"


def _git(*args: str, cwd: Path) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, timeout=15
    )
    if result.returncode != 0:
        raise RuntimeError(result.stderr.strip() or f"git {args[0]} failed")
    return result.stdout.strip()


def _serve(args) -> None:
    """Run the webhook/request server."""
    from branchoff.config import PortRangeConfig, load_config

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
        if args.start is not None or args.end is not None:
            config.ports = PortRangeConfig(
                start=args.start if args.start is not None else config.ports.start,
                end=args.end if args.end is not None else config.ports.end,
            )
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    host = args.host or config.server.host
    port = args.port or config.server.port

    # Create and run app
    import uvicorn

    from branchoff.server import create_app

    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level.lower())


def _ignite(args) -> None:
    """Run the current checkout in local mode, in the foreground."""
    from branchoff.config import DeploymentConfigError, load_config, load_deployment_config
    from branchoff.models import DeploymentMode
    from branchoff.registry import EcosystemRegistry
    from branchoff.resolver import ContextResolver, ResolutionError
    from branchoff.supervisor import deployment_env

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    cwd = Path.cwd()
    try:
        uri = _git("config", "--get", "remote.origin.url", cwd=cwd)
        branch = _git("symbolic-ref", "--short", "HEAD", cwd=cwd)
    except (RuntimeError, OSError, subprocess.TimeoutExpired) as exc:
        print(f"Error: not a git checkout with an origin remote: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_config(args.config)
        ctx = ContextResolver(config.workspace_root).resolve(
            uri, branch, mode=DeploymentMode.LOCAL, dir=str(cwd)
        )
        deployment = load_deployment_config(cwd)
    except (FileNotFoundError, ResolutionError, DeploymentConfigError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if not deployment.main:
        print("Error: branchoff.yaml declares no main command", file=sys.stderr)
        sys.exit(1)

    async def register() -> None:
        Path(config.data_dir).mkdir(parents=True, exist_ok=True)
        registry = EcosystemRegistry(str(config.registry_path))
        await registry.initialize()
        try:
            await registry.save(ctx)
        finally:
            await registry.close()

    asyncio.run(register())
    print(f"Igniting {ctx.id}: {deployment.main}")

    env = deployment_env(ctx, "start", port=config.ports.start, extra=deployment.env)
    try:
        result = subprocess.run([config.hooks.shell, "-c", deployment.main], cwd=cwd, env=env)
    except KeyboardInterrupt:
        sys.exit(130)
    sys.exit(result.returncode)


def _request(args) -> None:
    """Forward deploy/destroy/ecosystem to a running server."""
    import httpx

    server = args.server.rstrip("/")
    try:
        with httpx.Client(base_url=server, timeout=30) as client:
            if args.command == "ecosystem":
                response = client.get("/ecosystem")
            else:
                data = {"uri": args.uri}
                if args.branch:
                    data["branch"] = args.branch
                if args.mode:
                    data["mode"] = args.mode
                if args.command == "deploy":
                    if args.scale:
                        data["scale"] = str(args.scale)
                    if args.update:
                        data["update"] = "true"
                response = client.post(f"/{args.command}", data=data)
    except httpx.HTTPError as exc:
        print(f"Error: cannot reach branchoff at {server}: {exc}", file=sys.stderr)
        sys.exit(1)

    if response.status_code == 303:
        print(f"{args.command} submitted for {args.uri}@{args.branch or 'default branch'}")
        return
    if response.is_error:
        print(f"Error: {response.status_code} {response.text}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(response.json(), indent=2))


def main():
    parser = argparse.ArgumentParser(
        prog="branchoff",
        description="branchoff — ephemeral per-branch deployments driven by GitHub webhooks",
    )

    subparsers = parser.add_subparsers(dest="command")

    # branchoff serve
    serve_parser = subparsers.add_parser("serve", help="Start the branchoff server")
    serve_parser.add_argument("--config", type=Path, help="Path to a branchoff YAML config")
    serve_parser.add_argument("--host", help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: from config)")
    serve_parser.add_argument(
        "-s", "--start", type=int, help="First port handed to deployments"
    )
    serve_parser.add_argument(
        "-e", "--end", type=int, help="End of the deployment port range (exclusive)"
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # branchoff ignite
    ignite_parser = subparsers.add_parser(
        "ignite", help="Run the current checkout locally in the foreground"
    )
    ignite_parser.add_argument("--config", type=Path, help="Path to a branchoff YAML config")

    # branchoff deploy / destroy / ecosystem
    for name, help_text in (
        ("deploy", "Ask a running server to deploy a branch"),
        ("destroy", "Ask a running server to destroy a branch deployment"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("uri", help="Repository URI")
        sub.add_argument("branch", nargs="?", help="Branch (default: server's default branch)")
        sub.add_argument("--mode", choices=["normal", "test", "local"])
        sub.add_argument("--server", default=DEFAULT_SERVER, help="branchoff server URL")
        if name == "deploy":
            sub.add_argument("--scale", type=int, help="Number of instances to run")
            sub.add_argument("--update", action="store_true", help="Pull and restart instead")

    eco_parser = subparsers.add_parser("ecosystem", help="List registered deployments")
    eco_parser.add_argument("--server", default=DEFAULT_SERVER, help="branchoff server URL")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        _serve(args)
    elif args.command == "ignite":
        _ignite(args)
    else:
        _request(args)


if __name__ == "__main__":
    main()
