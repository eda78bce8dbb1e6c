"""AgentOS CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path


def _init_config(path: Path, force: bool = False) -> None:
    """Write a default agentos.yaml."""
    from agentos.config import DEFAULT_CONFIG_YAML

    if path.exists() and not force:
        print(f"Error: {path} already exists", file=sys.stderr)
        print("Pass --force to overwrite it.", file=sys.stderr)
        sys.exit(1)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML)

    print(f"Wrote AgentOS config to {path}")
    print()
    print("Next steps:")
    print(f"  1. Review {path}")
    print("  2. Set REDIS_URL to run control and runtime planes in separate processes")
    print(f"  3. Run: agentos serve --config {path}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="agentos",
        description="AgentOS — lifecycle, approval and webhook core for autonomous agents",
    )

    subparsers = parser.add_subparsers(dest="command")

    # agentos init
    init_parser = subparsers.add_parser("init", help="Write a default agentos.yaml")
    init_parser.add_argument(
        "--config",
        type=Path,
        default=Path("agentos.yaml"),
        help="Where to write the config (default: ./agentos.yaml)",
    )
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    # agentos serve
    serve_parser = subparsers.add_parser("serve", help="Start the AgentOS server")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to agentos.yaml (default: $AGENTOS_CONFIG or ./agentos.yaml)",
    )
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    serve_parser.add_argument(
        "--echo-runners",
        action="store_true",
        help="Run every framework on the in-process echo backend (local development)",
    )

    args = parser.parse_args(argv)

    if args.command == "init":
        _init_config(args.config, force=args.force)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    import uvicorn

    from agentos.config import load_config
    from agentos.server import create_app

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(f"Error: invalid config: {e}", file=sys.stderr)
        sys.exit(1)

    app = create_app(config=config, force_echo=args.echo_runners)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
