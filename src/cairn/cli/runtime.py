"""Shared wiring for CLI commands: config, database, owner, providers."""

from __future__ import annotations

import getpass
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console

from cairn.cli.errors import err_config
from cairn.config import CairnConfig, load_config
from cairn.db.connection import Database
from cairn.db.schema import initialize
from cairn.errors import ConfigurationError

console = Console()


@dataclass
class CliState:
    """Options from the top-level callback, shared by every command."""

    db: Path | None = None
    owner: str | None = None
    verbose: bool = False


state = CliState()


def default_owner() -> str:
    return state.owner or os.environ.get("CAIRN_OWNER") or getpass.getuser()


def get_config() -> CairnConfig:
    """Load configuration or exit with an actionable message."""
    try:
        cfg = load_config()
    except ConfigurationError as exc:
        console.print(err_config(exc))
        raise typer.Exit(1) from exc
    if state.db is not None:
        cfg.storage.database = str(state.db)
    return cfg


def db_path(cfg: CairnConfig) -> Path:
    return Path(cfg.storage.database)


def open_db(cfg: CairnConfig) -> sqlite3.Connection:
    """Open (creating if needed) the configured database with schema applied."""
    conn = Database(db_path(cfg)).connect()
    initialize(conn)
    return conn
