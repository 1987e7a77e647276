"""
Capstan CLI entry point.
Operator commands for running and inspecting a capability broker.

Usage:
    capstan gateway      --config broker.yaml                 # Start the API gateway
    capstan token        --subject agent-7 --role operator    # Issue a signed JWT
    capstan capabilities --config broker.yaml                 # List config-declared capabilities
    capstan capabilities --gateway http://127.0.0.1:8000      # List a running gateway's capabilities
    capstan check        --config broker.yaml                 # Validate a broker config
"""

import argparse
import asyncio
import logging
import os
import sys
import traceback
from typing import Any, Dict, List

import httpx
from rich.console import Console
from rich.table import Table

from capstan.config import config_path, load_config, load_dotenv_if_available, validate_broker_config
from capstan.errors import BrokerError, ConfigError

console = Console()

# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def cmd_gateway(args) -> None:
    """Start the FastAPI gateway server."""
    from capstan.api import main as run_gateway

    sys.argv = [
        "capstan.api",
        "--config",
        args.config,
        "--host",
        args.host,
        "--port",
        str(args.port),
    ]
    run_gateway()


def cmd_token(args) -> None:
    """Issue a signed JWT for gateway access."""
    from capstan.credentials import TokenIssuer
    from capstan.rbac import Role

    load_dotenv_if_available()

    if not os.getenv("CAPSTAN_JWT_SECRET"):
        print("Error: CAPSTAN_JWT_SECRET is not set in environment or .env file.")
        print("Generate one with: openssl rand -hex 32")
        raise SystemExit(1)

    try:
        role = Role.parse(args.role)
    except ValueError as exc:
        print(f"Error: Invalid role '{args.role}'. Valid: {', '.join(r.value for r in Role)}")
        raise SystemExit(1) from exc

    issuer = TokenIssuer(issuer=args.issuer, audience=args.audience)
    token = issuer.issue(subject=args.subject, role=role, ttl_seconds=int(args.ttl * 3600))
    print(f"\n  Capstan JWT (subject={args.subject}, role={role.value}, ttl={args.ttl:g}h)\n")
    print(f"  {token}\n")


def _capability_table(rows: List[Dict[str, Any]], title: str) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Provider")
    table.add_column("Kind")
    table.add_column("Scope")
    table.add_column("Side effect")
    for cap in rows:
        table.add_row(
            cap["name"],
            str(cap.get("version", "1.0.0")),
            cap.get("provider", ""),
            cap.get("kind", "tool"),
            ",".join(cap.get("required_scope") or []) or "-",
            "[yellow]mutating[/]" if cap.get("side_effect") == "mutating" else "pure",
        )
    return table


async def _fetch_capabilities(url: str, token: str) -> List[Dict[str, Any]]:
    from capstan.client import CapstanAsyncClient

    async with CapstanAsyncClient(url, token=token) as client:
        return await client.capabilities()


def cmd_capabilities(args) -> None:
    """List capabilities from a config file or a running gateway."""
    if args.gateway:
        rows = asyncio.run(_fetch_capabilities(args.gateway, args.token or os.getenv("CAPSTAN_API_TOKEN", "")))
        title = f"Capabilities at {args.gateway}"
    else:
        from capstan.config import BrokerSettings

        settings = BrokerSettings.from_config(load_config(args.config))
        rows = [cap.to_dict() for cap in settings.capabilities]
        title = f"Capabilities in {args.config}"

    console.print()
    console.print(_capability_table(rows, title))
    console.print(f"\n  {len(rows)} capabilities\n")


def cmd_check(args) -> None:
    """Validate a broker config and report every problem found."""
    load_dotenv_if_available()
    config = load_config(args.config)
    ok, errors = validate_broker_config(config)
    if ok:
        from capstan.config import BrokerSettings

        settings = BrokerSettings.from_config(config)
        console.print(f"\n  [green]OK[/] {args.config}")
        console.print(
            f"  {len(settings.providers)} provider(s), {len(settings.capabilities)} capabilities, "
            f"{len(settings.anchor.issuers)} trusted issuer(s)\n"
        )
        return
    console.print(f"\n  [red]INVALID[/] {args.config} ({len(errors)} problem(s))")
    for msg in errors:
        console.print(f"    - {msg}")
    console.print()
    raise SystemExit(1)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="capstan",
        description="Capstan - capability broker for AI agents",
        epilog=(
            "Quick start:\n"
            "  capstan check --config broker.yaml            # Validate config\n"
            "  capstan token --subject me --role operator    # Get a credential\n"
            "  capstan gateway --config broker.yaml          # Serve the gateway\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    # capstan gateway
    p_gateway = sub.add_parser("gateway", help="Start the API gateway")
    p_gateway.add_argument("--config", default=config_path(), help="Broker config file")
    p_gateway.add_argument("--host", default=os.getenv("CAPSTAN_API_HOST", "127.0.0.1"))
    p_gateway.add_argument("--port", type=int, default=int(os.getenv("CAPSTAN_API_PORT", "8000")))

    # capstan token
    p_token = sub.add_parser(
        "token",
        help="Issue a signed JWT",
        epilog="Example: capstan token --subject agent-7 --role operator --ttl 8",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_token.add_argument("--subject", default="cli-user", help="Identity id (sub claim)")
    p_token.add_argument("--role", default="viewer", help="viewer, operator or admin")
    p_token.add_argument("--ttl", type=float, default=24, help="Lifetime in hours (default: 24)")
    p_token.add_argument("--issuer", default=None, help="iss claim (default: CAPSTAN_JWT_ISSUER or capstan)")
    p_token.add_argument("--audience", default=None, help="Optional aud claim")

    # capstan capabilities
    p_caps = sub.add_parser("capabilities", help="List capabilities")
    p_caps.add_argument("--config", default=config_path(), help="Broker config file")
    p_caps.add_argument("--gateway", default=None, help="Query a running gateway instead")
    p_caps.add_argument("--token", default=None, help="Bearer JWT for --gateway")

    # capstan check
    p_check = sub.add_parser("check", help="Validate a broker config")
    p_check.add_argument("--config", default=config_path(), help="Broker config file")

    return parser


def main(argv=None) -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "gateway": cmd_gateway,
        "token": cmd_token,
        "capabilities": cmd_capabilities,
        "check": cmd_check,
    }
    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


def _friendly_error_handler() -> None:
    """Wrap main() with user-friendly error handling and contextual suggestions."""
    try:
        main()
    except KeyboardInterrupt:
        print("\n  Interrupted.\n")
        sys.exit(130)
    except SystemExit:
        raise
    except ConfigError as exc:
        print(f"\n  Config error: {exc.detail}")
        print("  Hint: Run `capstan check --config <file>` for the full list of problems.\n")
        sys.exit(1)
    except BrokerError as exc:
        print(f"\n  {exc.public_kind}: {exc.detail or exc.public_message}\n")
        sys.exit(1)
    except (ConnectionError, httpx.TransportError):
        print("\n  Connection error: Could not reach the gateway.")
        print("  Hint: Start it with `capstan gateway`, or check --gateway.\n")
        sys.exit(1)
    except Exception as exc:
        print(f"\n  Unexpected error: {exc}")
        print("  Set LOG_LEVEL=DEBUG and try again for details.")
        print()
        if os.getenv("LOG_LEVEL", "").upper() == "DEBUG":
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    _friendly_error_handler()
