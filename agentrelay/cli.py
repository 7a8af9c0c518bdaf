import click

from agentrelay.relay.settings import DEFAULT_RELAY_PORT


@click.group()
@click.version_option(package_name="agent-relay")
def main() -> None:
    """agent-relay - share one local endpoint between coding-agent CLIs."""


def _load_settings(port: int | None, cwd: str | None = None, label: str = "relay"):
    from agentrelay.relay.log import setup_logging
    from agentrelay.relay.settings import RelaySettings

    settings = RelaySettings()
    overrides = {key: value for key, value in (("port", port), ("cwd", cwd)) if value is not None}
    if overrides:
        settings = settings.model_copy(update=overrides)
    setup_logging(settings.log_level, label=label)
    return settings


@main.command()
@click.option("--provider", "-p", required=True, help="Provider id (see `agent-relay providers`).")
@click.option("--port", default=None, type=int, help=f"Relay port (default: from AGENT_RELAY_PORT or {DEFAULT_RELAY_PORT}).")
@click.option("--cwd", default=None, type=click.Path(file_okay=False), help="Working directory for the provider CLI.")
@click.option("--model", default=None, help="Default model passed to the provider CLI.")
def start(provider: str, port: int | None, cwd: str | None, model: str | None) -> None:
    """Start a provider and join the relay (as host or remote)."""
    import asyncio

    from agentrelay.providers import PROVIDERS, ProcessAdapter

    spec = PROVIDERS.get(provider)
    if spec is None:
        msg = f"Unknown provider {provider!r}. Choose from: {', '.join(sorted(PROVIDERS))}"
        raise click.BadParameter(msg, param_hint="--provider")

    settings = _load_settings(port, cwd, label=spec.agent_id)
    adapter = ProcessAdapter(spec, settings=settings, default_model=model)
    asyncio.run(_serve(adapter, settings))


@main.command()
@click.option("--port", default=None, type=int, help=f"Relay port (default: from AGENT_RELAY_PORT or {DEFAULT_RELAY_PORT}).")
def serve(port: int | None) -> None:
    """Run a relay host without a local provider (remotes register with it)."""
    import asyncio

    settings = _load_settings(port)
    asyncio.run(_serve(None, settings))


async def _serve(handler, settings) -> None:
    import asyncio
    import signal

    from loguru import logger

    from agentrelay.relay.connection import RelayConnection
    from agentrelay.relay.log import set_relay_label

    connection = RelayConnection(handler, settings)
    role = await connection.start()
    set_relay_label(role, handler.agent_id if handler else None)
    click.echo(f"agent-relay: {role} on port {settings.port}", err=True)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    stop_task = asyncio.create_task(stop.wait())
    closed_task = asyncio.create_task(connection.wait_closed())
    await asyncio.wait({stop_task, closed_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in (stop_task, closed_task):
        task.cancel()

    logger.info("Shutting down ({})", role)
    await connection.stop()


@main.command()
def providers() -> None:
    """List the built-in providers."""
    from agentrelay.providers import PROVIDERS

    for agent_id, spec in sorted(PROVIDERS.items()):
        undo = "undo" if spec.supports_undo else "no undo"
        click.echo(f"{agent_id:<12} {spec.binary:<14} {undo:<8} {spec.install_hint}")


@main.command()
@click.option("--port", default=None, type=int, help=f"Relay port (default: from AGENT_RELAY_PORT or {DEFAULT_RELAY_PORT}).")
def health(port: int | None) -> None:
    """Check whether a relay host answers on the port."""
    import httpx

    from agentrelay.relay.settings import RelaySettings

    settings = RelaySettings()
    url = f"http://{settings.host}:{port or settings.port}/health"
    try:
        response = httpx.get(url, timeout=settings.health_check_timeout)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        click.echo(f"No relay at {url}: {exc}", err=True)
        raise SystemExit(1) from None
    click.echo(response.text)


if __name__ == "__main__":
    main()
