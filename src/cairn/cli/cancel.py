"""cairn cancel: cancel a queued or running task."""

from __future__ import annotations

from typing import Annotated

import typer

from cairn.cli.errors import err_task_not_found, render_error
from cairn.cli.runtime import console, default_owner, get_config, open_db
from cairn.db.tasks import TaskQueue
from cairn.errors import NotFoundError, OwnershipError


def cancel_cmd(
    task_id: Annotated[str, typer.Argument(help="Task id (see cairn status).")],
) -> None:
    """Cancel a task. Results already stored by a running task are kept."""
    cfg = get_config()
    conn = open_db(cfg)
    try:
        removed = TaskQueue(conn, cfg.queue).cancel(task_id, default_owner())
    except NotFoundError as exc:
        console.print(err_task_not_found(task_id))
        raise typer.Exit(1) from exc
    except OwnershipError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
    finally:
        conn.close()

    if removed:
        console.print(f"[green]✓[/] Cancelled task {task_id}")
    else:
        console.print(
            f"[yellow]↻[/] Task {task_id} is running; it will stop after its current stage."
        )
