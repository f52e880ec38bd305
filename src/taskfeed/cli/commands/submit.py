"""
taskfeed submit - Submit a task and wait for its outcome.
"""
import asyncio
import json
from typing import Any, Dict, Optional

import typer

from taskfeed_common.errors import CreationError, TaskFailedError

from ...context import TaskPlatform
from ...dispatcher import Dispatcher
from .worker import check_plugins, load_plugins


def parse_payload(value: str) -> Dict[str, Any]:
    try:
        payload = json.loads(value)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e}", param_hint="--payload")
    if not isinstance(payload, dict):
        raise typer.BadParameter("Payload must be a JSON object", param_hint="--payload")
    return payload


async def submit(
    platform: TaskPlatform,
    task_type: str,
    payload: Dict[str, Any],
    origin: str,
    timeout: Optional[float],
    local: bool,
) -> Dict[str, Any]:
    """Submit one task and return the outcome as a JSON-ready mapping."""
    await platform.connect()
    dispatcher: Optional[Dispatcher] = None
    if local:
        dispatcher = platform.dispatcher(origins=[origin])
        load_plugins(platform, dispatcher, [task_type])
        await dispatcher.start()

    client = platform.client(origin)
    try:
        async with client:
            task = await client.add(task_type, payload, timeout=timeout)
        return {"ok": True, "task": task.to_document()}
    except TaskFailedError as e:
        return {
            "ok": False,
            "error": e.error.model_dump(by_alias=True, mode="json", exclude_none=True),
            "task": e.task.to_document() if e.task else None,
        }
    except CreationError as e:
        return {"ok": False, "error": {"kind": "CreationError", "message": str(e)}}
    except asyncio.TimeoutError:
        return {
            "ok": False,
            "error": {"kind": "Timeout", "message": f"No outcome within {timeout}s"},
        }
    finally:
        if dispatcher is not None:
            await dispatcher.stop()
        await platform.close()


def submit_task(
    task_type: str = typer.Argument(
        ...,
        help="Task type (e.g. direct-message).",
    ),
    payload: str = typer.Option(
        "{}",
        "--payload",
        help="Task payload as a JSON object.",
    ),
    origin: str = typer.Option(
        ...,
        "--origin",
        help="Collection the task is created in.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds to wait for the outcome.",
    ),
    local: bool = typer.Option(
        False,
        "--local",
        help="Run the built-in plugin for the task type in-process.",
    ),
):
    """
    Submit a task and print its outcome as JSON. Exits with 1 on failure.
    """
    data = parse_payload(payload)
    if local:
        check_plugins([task_type], param_hint="--local")
    platform = TaskPlatform.from_settings()
    outcome = asyncio.run(submit(platform, task_type, data, origin, timeout, local))

    typer.echo(json.dumps(outcome, indent=2))
    if not outcome["ok"]:
        raise typer.Exit(1)
