"""
taskfeed worker - Run a dispatcher with the built-in plugins.
"""
import asyncio
import logging
import signal
from typing import List, Optional

import typer

from ...context import TaskPlatform
from ...dispatcher import Dispatcher
from ...plugins import PLUGINS

logger = logging.getLogger(__name__)


def check_plugins(names: List[str], param_hint: str = "--plugin") -> None:
    """
    Raises:
        typer.BadParameter: For an unknown plugin name
    """
    for name in names:
        if name not in PLUGINS:
            raise typer.BadParameter(
                f"Unknown plugin '{name}' (available: {', '.join(sorted(PLUGINS))})",
                param_hint=param_hint,
            )


def load_plugins(platform: TaskPlatform, dispatcher: Dispatcher, names: List[str]) -> None:
    """Register the named built-in plugins on a dispatcher."""
    for name in names:
        PLUGINS[name].from_platform(platform, dispatcher).register()


async def serve(platform: TaskPlatform, plugins: List[str], origins: Optional[List[str]]) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await platform.connect()
    dispatcher = platform.dispatcher(origins=origins)
    load_plugins(platform, dispatcher, plugins)

    try:
        await dispatcher.start()
        typer.echo(f"🚀 Worker {dispatcher.worker_id} running ({', '.join(plugins)})")
        typer.echo("   Press Ctrl+C to stop")
        await stop_event.wait()
    finally:
        await dispatcher.stop()
        await platform.close()


def run_worker(
    plugin: List[str] = typer.Option(
        ["direct-message"],
        "--plugin", "-p",
        help="Built-in plugin to load (repeatable).",
    ),
    origin: Optional[List[str]] = typer.Option(
        None,
        "--origin", "-o",
        help="Collection to follow (repeatable, all collections when omitted).",
    ),
):
    """
    Run a dispatcher against the configured store until interrupted.
    """
    check_plugins(plugin)
    platform = TaskPlatform.from_settings()
    try:
        asyncio.run(serve(platform, plugin, origin or None))
    except KeyboardInterrupt:
        pass
    typer.echo("👋 Worker stopped")
