"""Helpers for the ``/``-delimited remote paths used by the service.

All remote paths are absolute and use ``/`` as the separator.
"""

from __future__ import annotations

ROOT = "/"


def split_path(path: str) -> tuple[str, str]:
    """Split a path into its parent directory and its last component.

    Examples:
        >>> split_path("/a/b")
        ('/a', 'b')
        >>> split_path("/a")
        ('/', 'a')
    """
    index = path.rfind("/")
    if index < 0:
        raise ValueError(f"Remote paths must be absolute: {path!r}")
    parent = ROOT if index == 0 else path[:index]
    return parent, path[index + 1 :]


def join_path(directory: str, name: str) -> str:
    """Join a directory and a name without doubling the root separator."""
    return f"{'' if directory == ROOT else directory}/{name}"
