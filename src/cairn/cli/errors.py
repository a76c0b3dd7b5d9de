"""Cairn rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from cairn.cli.errors import err_no_api_key
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from cairn.errors import CairnError, ConfigurationError, DimensionMismatchError, OwnershipError


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".cairn.db") -> str:
    """No database at the configured path."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Submit content first:  cairn submit text \"...\"  (the database is created on demand)\n"
        "  or point at an existing one:  cairn --db PATH ..."
    )


def err_dimension_mismatch(exc: DimensionMismatchError) -> str:
    """Stored vectors were written with another embedding dimension."""
    return (
        f"[red]Error:[/] Embedding dimension mismatch"
        f"{f' in {exc.index}' if exc.index else ''}.\n"
        f"  Stored vectors:  {exc.expected} dims\n"
        f"  Configured:      {exc.actual} dims\n"
        "  Rebuild the vector indexes:  cairn reembed\n"
        "  or restore embedding.dimensions in cairn.yaml."
    )


def err_file_not_found(path: str) -> str:
    return (
        f"[red]Error:[/] File not found: '{path}'\n"
        "  Check the path and try again."
    )


def err_task_not_found(task_id: str) -> str:
    return (
        f"[yellow]Task not found:[/] '{task_id}'.\n"
        "  Run:  cairn status --all  to list recent tasks."
    )


def err_config(exc: ConfigurationError) -> str:
    return (
        f"[red]Configuration error:[/] {exc}\n"
        "  Fix cairn.yaml / ~/.cairn/config.yaml or the CAIRN_* environment variables."
    )


def err_ownership(exc: OwnershipError) -> str:
    return (
        f"[red]Error:[/] {exc}\n"
        "  Use --owner to act as the owner of this record."
    )


def render_error(exc: CairnError) -> str:
    """Pick the actionable message for a classified error."""
    if isinstance(exc, DimensionMismatchError):
        return err_dimension_mismatch(exc)
    if isinstance(exc, ConfigurationError):
        return err_config(exc)
    if isinstance(exc, OwnershipError):
        return err_ownership(exc)
    return f"[red]Error:[/] {exc}"
