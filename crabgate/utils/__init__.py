"""Utility functions for crabgate."""

from crabgate.utils.helpers import ensure_dir, get_data_path, get_workspace_path, now_ms, truncate

__all__ = ["ensure_dir", "get_workspace_path", "get_data_path", "now_ms", "truncate"]
