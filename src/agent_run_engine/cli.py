"""
Command-line interface for the run engine.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table

from agent_run_engine.config import EngineConfig
from agent_run_engine.logging import setup_logging

console = Console()


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Agent run engine",
        prog="agent-run",
    )

    # Global options
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (debug logging)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Serve runs over HTTP")
    serve_parser.add_argument("-c", "--config", help="YAML config file")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("-p", "--port", type=int, default=8080, help="Bind port")

    # Config command with subcommands
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")

    show_parser = config_subparsers.add_parser("show", help="Show effective configuration")
    show_parser.add_argument("-c", "--config", help="YAML config file")
    show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    init_parser = config_subparsers.add_parser("init", help="Write a default config file")
    init_parser.add_argument(
        "-o",
        "--output",
        default="agent-run.yaml",
        help="Output file path",
    )

    args = parser.parse_args(argv)

    if getattr(args, "verbose", False):
        setup_logging("DEBUG", rich=args.command == "serve")
    elif args.command == "serve":
        setup_logging("INFO", rich=True)
    else:
        setup_logging("WARNING")

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "config":
        cmd_config(args)
    else:
        parser.print_help()


def load_config(path: str | None) -> EngineConfig:
    """Load config from ``path`` if given, otherwise from the environment."""
    if path:
        return EngineConfig.from_yaml(Path(path))
    return EngineConfig.from_env()


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the HTTP server."""
    from agent_run_engine.agent import create_state_machine
    from agent_run_engine.server import run_server

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        sys.exit(1)

    machine = create_state_machine(config)
    console.print(
        f"[green]Serving {config.provider}/{config.model} on http://{args.host}:{args.port}[/green]"
    )
    run_server(machine, host=args.host, port=args.port)


def cmd_config(args: argparse.Namespace) -> None:
    """Configuration management commands."""
    if args.config_command == "show":
        _config_show(args.config, as_json=args.json)
    elif args.config_command == "init":
        _config_init(args.output)
    else:
        console.print("[yellow]Usage: agent-run config <show|init>[/yellow]")


def _config_show(path: str | None, as_json: bool = False) -> None:
    try:
        config = load_config(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        sys.exit(1)

    data = config.to_dict()
    if as_json:
        console.print_json(json.dumps(data))
        return

    table = Table(title="Effective Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, list):
            value = ", ".join(value)
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


def _config_init(output: str) -> None:
    """Write the default configuration to ``output``."""
    output_path = Path(output)

    if output_path.exists():
        console.print(f"[red]File already exists: {output_path}[/red]")
        sys.exit(1)

    data = EngineConfig().to_dict()
    data.pop("api_key", None)
    with open(output_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    console.print(f"[green]Created config file: {output_path}[/green]")


if __name__ == "__main__":
    main()
