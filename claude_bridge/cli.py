"""
Claude Bridge CLI.

Usage:
    claude-bridge run [--stdin]     Run the bridge in the foreground
    claude-bridge server            Run the bridge with the admin HTTP API
    claude-bridge doctor            Check configuration and Docker
    claude-bridge build-image       Build the sandbox image
"""

import argparse
import asyncio
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Optional

from claude_bridge import __version__
from claude_bridge.config import Settings, load_settings, resolve_config_path
from claude_bridge.lib.errors import BridgeError, ConfigError
from claude_bridge.lib.logger import setup_logging


def _load(args: argparse.Namespace) -> Settings:
    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(settings.logging.level, settings.logging.file)
    return settings


def cmd_run(args: argparse.Namespace) -> None:
    """Run the bridge in the foreground until the transport closes."""
    from claude_bridge.bridge import Bridge

    settings = _load(args)
    transport: Optional[str] = "stdin" if args.stdin else None
    try:
        asyncio.run(Bridge(settings).run(transport))
    except BridgeError as e:
        print(f"Startup failed: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


def cmd_server(args: argparse.Namespace) -> None:
    """Run the bridge inside the admin HTTP server."""
    import uvicorn

    from claude_bridge.server import create_app

    settings = _load(args)
    host = args.host or settings.server.host
    port = args.port or settings.server.port
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


def cmd_build_image(args: argparse.Namespace) -> None:
    """Build the sandbox image from Dockerfile.sandbox."""
    from claude_bridge.core.containers import ContainerManager

    settings = _load(args)
    manager = ContainerManager(settings.docker, settings.anthropic_api_key)
    try:
        asyncio.run(manager.build_image())
    except BridgeError as e:
        print(f"Build failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Built {settings.docker.image}")


def cmd_doctor(args: argparse.Namespace) -> None:
    """Run diagnostics and report pass/warn/fail for each check."""
    results = []
    settings: Optional[Settings] = None

    def check(name: str, fn):
        try:
            ok, detail = fn()
            status = "PASS" if ok else "WARN"
            results.append((status, name, detail))
        except Exception as e:
            results.append(("FAIL", name, str(e)))

    def check_python():
        v = sys.version_info
        version_str = f"{v.major}.{v.minor}.{v.micro}"
        if v >= (3, 11):
            return True, version_str
        return False, f"{version_str} (requires >= 3.11)"

    check("Python version", check_python)

    def check_config():
        nonlocal settings
        settings = load_settings(args.config)
        return True, str(resolve_config_path(args.config))

    check("Config file", check_config)

    def check_docker():
        if not shutil.which("docker"):
            return False, "docker CLI not found in PATH"
        result = subprocess.run(
            ["docker", "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            return False, "daemon not running"
        return True, f"engine {result.stdout.strip()}"

    check("Docker", check_docker)

    if settings is not None:
        image = settings.docker.image

        def check_image():
            result = subprocess.run(
                ["docker", "image", "inspect", image],
                capture_output=True,
                timeout=10,
            )
            if result.returncode != 0:
                return False, f"{image} missing (run: claude-bridge build-image)"
            return True, image

        check("Sandbox image", check_image)

        def check_api_key():
            if settings.anthropic_api_key:
                return True, "set"
            return False, "ANTHROPIC_API_KEY not set (containers need their own login)"

        check("Anthropic API key", check_api_key)

        def check_data_dir():
            data_dir = settings.docker.data_dir
            if data_dir.exists():
                return True, str(data_dir)
            return False, f"{data_dir} does not exist yet (created on first use)"

        check("Data directory", check_data_dir)

    width = max(len(name) for _, name, _ in results)
    for status, name, detail in results:
        print(f"[{status}] {name.ljust(width)}  {detail}")
    if any(status == "FAIL" for status, _, _ in results):
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="claude-bridge",
        description="Chat bridge to per-user sandboxed Claude agents",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: $BRIDGE_CONFIG or ./config.yaml)",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the bridge in the foreground")
    run_parser.add_argument(
        "--stdin", action="store_true", help="Use the stdin harness regardless of config"
    )

    server_parser = subparsers.add_parser("server", help="Run the bridge with the admin API")
    server_parser.add_argument("--host", default=None, help="Bind address")
    server_parser.add_argument("--port", type=int, default=None, help="Port")

    subparsers.add_parser("doctor", help="Check configuration and Docker")
    subparsers.add_parser("build-image", help="Build the sandbox image")

    args = parser.parse_args()

    if args.command == "run":
        cmd_run(args)
    elif args.command == "server":
        cmd_server(args)
    elif args.command == "doctor":
        cmd_doctor(args)
    elif args.command == "build-image":
        cmd_build_image(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
