"""
mindstudio-local: command-line entry point for the local model tunnel.

Usage:
    mindstudio-local auth          # Log in through the browser and store an API key
    mindstudio-local start         # Serve requests for the local models
    mindstudio-local status        # Show environment, auth and provider status
    mindstudio-local models        # List discovered local models
    mindstudio-local register      # Register discovered models with MindStudio
    mindstudio-local env local     # Switch environments
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import webbrowser
from pathlib import Path
from typing import List, Optional

import httpx

from tunnel.api import ControlPlaneClient
from tunnel.config import DEFAULT_PROVIDER_URLS, TunnelConfig, config_path, load_config, save_config
from tunnel.errors import TunnelError
from tunnel.logging_utils import init_logging
from tunnel.registry import ProviderRegistry
from tunnel.runner import TunnelRunner

DEVICE_AUTH_POLL_INTERVAL_S = 2.0
DEVICE_AUTH_MAX_ATTEMPTS = 30


def _print_models(registry: ProviderRegistry) -> None:
    models = registry.models
    if not models:
        print("No local models found.")
        return
    print(f"Found {len(models)} model(s):")
    for model in models:
        extras = [x for x in (model.parameter_size, model.quantization) if x]
        suffix = f" ({', '.join(extras)})" if extras else ""
        hint = f" [{model.status_hint}]" if model.status_hint else ""
        print(f"  - {model.name} [{model.provider}, {model.capability}]{suffix}{hint}")


async def cmd_auth(args: argparse.Namespace, config: TunnelConfig, path: Path) -> int:
    async with ControlPlaneClient(config.api_base_url) as api:
        start = await api.request_device_auth()
        print(f"Open this URL to authorize the tunnel:\n  {start['url']}")
        if not args.no_browser:
            webbrowser.open(start["url"])

        for _ in range(DEVICE_AUTH_MAX_ATTEMPTS):
            await asyncio.sleep(DEVICE_AUTH_POLL_INTERVAL_S)
            result = await api.poll_device_auth(start["token"])
            status = result.get("status")
            if status == "completed" and result.get("apiKey"):
                config.set_credentials(result["apiKey"], result.get("userId"))
                save_config(config, path)
                print(f"Authenticated ({config.active_environment}).")
                return 0
            if status == "expired":
                print("Authorization link expired. Run `mindstudio-local auth` again.", file=sys.stderr)
                return 1

    print("Timed out waiting for authorization.", file=sys.stderr)
    return 1


async def cmd_logout(args: argparse.Namespace, config: TunnelConfig, path: Path) -> int:
    config.clear_credentials()
    save_config(config, path)
    print(f"Logged out of {config.active_environment}.")
    return 0


async def cmd_status(args: argparse.Namespace, config: TunnelConfig, path: Path) -> int:
    print(f"Environment: {config.active_environment} ({config.api_base_url})")
    print(f"Config:      {path}")
    if config.api_key:
        async with ControlPlaneClient.from_config(config) as api:
            valid = await api.verify_api_key()
        print(f"API key:     {'valid' if valid else 'INVALID'}")
    else:
        print("API key:     not set (run `mindstudio-local auth`)")

    registry = ProviderRegistry.from_config(config)
    print("Providers:")
    for status in await registry.statuses():
        state = "running" if status.running else "not running"
        provider = registry.get(status.name)
        print(f"  - {status.display_name:<24} {state:<12} {provider.base_url}")
    return 0


async def cmd_models(args: argparse.Namespace, config: TunnelConfig, path: Path) -> int:
    registry = ProviderRegistry.from_config(config)
    await registry.refresh()
    _print_models(registry)
    return 0


async def cmd_register(args: argparse.Namespace, config: TunnelConfig, path: Path) -> int:
    registry = ProviderRegistry.from_config(config)
    await registry.refresh()
    entries = await registry.sync_entries()
    if not entries:
        print("No local models found; nothing to register.", file=sys.stderr)
        return 1

    async with ControlPlaneClient.from_config(config) as api:
        await api.sync_models(entries)
        synced = {m.name for m in await api.get_synced_models()}
    for entry in entries:
        mark = "ok" if entry.name in synced else "pending"
        print(f"  - {entry.name} [{entry.type}] {mark}")
    print(f"Registered {len(entries)} model(s).")
    return 0


async def cmd_start(args: argparse.Namespace, config: TunnelConfig, path: Path) -> int:
    registry = ProviderRegistry.from_config(config)
    async with ControlPlaneClient.from_config(config) as api:
        runner = TunnelRunner(config, registry, api)
        await runner.start()
    return 0


async def cmd_config(args: argparse.Namespace, config: TunnelConfig, path: Path) -> int:
    if args.config_action == "set-provider-url":
        config.provider_base_urls[args.provider] = args.value
    elif args.config_action == "set-install-path":
        config.provider_install_paths[args.provider] = str(Path(args.value).expanduser())
    elif args.config_action == "set-api-url":
        config.current.api_base_url = args.value
    else:
        print(f"Config file: {path}")
        print(f"Environment: {config.active_environment}")
        print(f"API base URL: {config.api_base_url}")
        for name in DEFAULT_PROVIDER_URLS:
            install = config.install_path(name)
            extra = f" (install: {install})" if install else ""
            print(f"  {name:<18} {config.provider_url(name)}{extra}")
        return 0
    save_config(config, path)
    print("Saved.")
    return 0


async def cmd_env(args: argparse.Namespace, config: TunnelConfig, path: Path) -> int:
    if args.name:
        config.environment = args.name
        config.environment_override = None
        save_config(config, path)
    print(f"Environment: {config.active_environment} ({config.api_base_url})")
    return 0


COMMANDS = {
    "auth": cmd_auth,
    "logout": cmd_logout,
    "status": cmd_status,
    "models": cmd_models,
    "register": cmd_register,
    "start": cmd_start,
    "config": cmd_config,
    "env": cmd_env,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mindstudio-local",
        description="Run MindStudio requests against local model servers.",
    )
    parser.add_argument("--env", choices=["prod", "local"], help="Environment for this invocation only")
    parser.add_argument("--config", type=Path, help="Path to the config file")
    sub = parser.add_subparsers(dest="command", required=True)

    auth = sub.add_parser("auth", help="Authenticate through the browser")
    auth.add_argument("--no-browser", action="store_true", help="Print the URL without opening it")
    sub.add_parser("logout", help="Forget the stored API key")
    sub.add_parser("status", help="Show environment, auth and provider status")
    sub.add_parser("models", help="List discovered local models")
    sub.add_parser("register", help="Register discovered models with MindStudio")
    sub.add_parser("start", help="Start serving requests")

    cfg = sub.add_parser("config", help="Show or change configuration")
    cfg_sub = cfg.add_subparsers(dest="config_action")
    cfg_sub.add_parser("show", help="Print the effective configuration")
    for action, metavar in (("set-provider-url", "URL"), ("set-install-path", "PATH")):
        p = cfg_sub.add_parser(action)
        p.add_argument("provider", choices=sorted(DEFAULT_PROVIDER_URLS))
        p.add_argument("value", metavar=metavar)
    api_url = cfg_sub.add_parser("set-api-url", help="Override the API base URL of the current environment")
    api_url.add_argument("value", metavar="URL")

    env = sub.add_parser("env", help="Show or switch the active environment")
    env.add_argument("name", nargs="?", choices=["prod", "local"])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    path = args.config or config_path()
    try:
        config = load_config(path)
        if args.env:
            config.environment_override = args.env
        init_logging(env=config.active_environment)
        return asyncio.run(COMMANDS[args.command](args, config, path))
    except TunnelError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except httpx.TransportError as e:
        print(f"Error: could not reach {e.request.url.host}: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
