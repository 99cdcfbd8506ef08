"""tunnelgate server - main entry point."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console

from tunnelgate import __version__
from tunnelgate.core.config import GatewaySettings
from tunnelgate.core.store import ConfigError, ConfigStore
from tunnelgate.observability.logging import configure_logging
from tunnelgate.server.app import GatewayServer

console = Console()

BANNER = """
 _                          _             _
| |_ _   _ _ __  _ __   ___| | __ _  __ _| |_ ___
| __| | | | '_ \\| '_ \\ / _ \\ |/ _` |/ _` | __/ _ \\
| |_| |_| | | | | | | |  __/ | (_| | (_| | ||  __/
 \\__|\\__,_|_| |_|_| |_|\\___|_|\\__, |\\__,_|\\__\\___|
                              |___/
                  frp auth plugin
"""


@click.command()
@click.option(
    "--config",
    "config_path",
    envvar=["TUNNELGATE_CONFIG_PATH", "CONFIG_PATH"],
    help="Path to the YAML configuration file (default: ./config.yaml)",
)
@click.option(
    "--tunnel-domain",
    envvar=["TUNNELGATE_TUNNEL_DOMAIN", "TUNNEL_DOMAIN"],
    help="Base domain tunnels are served under, used for liveness probes",
)
@click.option("--host", help="Interface to bind (default: 0.0.0.0)")
@click.option("--probe-timeout", type=float, help="Liveness probe timeout in seconds (default: 5)")
@click.option("--no-watch", is_flag=True, help="Disable config file hot reload")
@click.option("--verbose", "-v", is_flag=True, help="Always emit debug logs")
@click.version_option(__version__, prog_name="tunnelgate")
def main(
    config_path: str | None,
    tunnel_domain: str | None,
    host: str | None,
    probe_timeout: float | None,
    no_watch: bool,
    verbose: bool,
) -> None:
    """Run the tunnelgate authorization server."""
    overrides: dict[str, object] = {}
    if config_path:
        overrides["config_path"] = config_path
    if tunnel_domain:
        overrides["tunnel_domain"] = tunnel_domain
    if host:
        overrides["bind_host"] = host
    if probe_timeout:
        overrides["probe_timeout"] = probe_timeout
    settings = GatewaySettings(**overrides)

    store = ConfigStore(settings.config_path)
    configure_logging(lambda: verbose or (store.loaded and store.config.debug))

    console.print(BANNER, style="cyan")
    console.print(f"Config: {settings.config_path}", style="dim")
    console.print(f"Tunnel domain: {settings.tunnel_domain}", style="dim")

    try:
        asyncio.run(run_server(store, settings, watch=not no_watch))
    except ConfigError as e:
        console.print(f"Cannot start without a valid configuration: {e}", style="red")
        raise SystemExit(1) from e


async def run_server(store: ConfigStore, settings: GatewaySettings, watch: bool = True) -> None:
    """Load the configuration and serve until interrupted.

    Raises:
        ConfigError: If the initial configuration cannot be loaded.
    """
    config = await store.load()
    server = GatewayServer(store, settings, watch=watch)

    try:
        await server.start()
        console.print(
            f"Listening on {settings.bind_host}:{config.server.port}, "
            f"handler path {config.server.path}",
            style="green",
        )
        if not config.admin_enabled:
            console.print("Admin API: open (no admin credentials configured)", style="yellow")
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
