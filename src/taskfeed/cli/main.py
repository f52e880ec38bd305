"""
Taskfeed CLI - Main entry point.

Commands:
    taskfeed worker         - Run a dispatcher with the built-in plugins
    taskfeed submit <type>  - Submit a task and wait for its outcome
    taskfeed version        - Show the version
"""
import logging
from typing import Optional

import typer

from ..config import get_settings
from .commands import submit, worker

app = typer.Typer(
    name="taskfeed",
    help="Taskfeed CLI - Run workers and submit tasks over a replicated document store.",
    no_args_is_help=True,
)

# Register commands
app.command(name="worker", help="Run a dispatcher with the built-in plugins.")(worker.run_worker)
app.command(name="submit", help="Submit a task and print its outcome as JSON.")(submit.submit_task)


@app.callback()
def configure(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (defaults to TASKFEED_LOG_LEVEL).",
    ),
):
    """Configure logging for every command."""
    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@app.command()
def version():
    """
    Show the taskfeed version.
    """
    from taskfeed import __version__
    typer.echo(f"taskfeed v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
