"""Utility functions for crabgate."""

from datetime import datetime, timezone
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the crabgate data directory (~/.crabgate)."""
    return ensure_dir(Path.home() / ".crabgate")


def get_workspace_path(workspace: str | None = None) -> Path:
    """
    Get the workspace path.

    Args:
        workspace: Optional workspace path. Defaults to ~/.crabgate/workspace.

    Returns:
        Expanded and ensured workspace path.
    """
    if workspace:
        path = Path(workspace).expanduser()
    else:
        path = Path.home() / ".crabgate" / "workspace"
    return ensure_dir(path)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def truncate(text: str, limit: int = 80) -> str:
    """Shorten text for log previews."""
    return text[:limit] + "..." if len(text) > limit else text
