"""Cairn persistence layer: task queue, graph store, vector indexes."""

from cairn.db.connection import Database
from cairn.db.migrations import MIGRATIONS, run_migrations
from cairn.db.repository import QueryFilters, Repository
from cairn.db.schema import initialize
from cairn.db.tasks import TaskQueue
from cairn.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "QueryFilters",
    "Repository",
    "TaskQueue",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
