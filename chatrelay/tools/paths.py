"""
Path boundary check for file-system tools.

A path is accepted when, after resolving symlinks and `..`, it is one of
the allowed roots or lies underneath one. Comparison is by path
component, so /work is not a parent of /workspace.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from ..core.errors import PathRejected


class PathValidator:
    def __init__(self, allowed_roots: Iterable[Path | str]) -> None:
        self._roots = tuple(Path(r).expanduser().resolve() for r in allowed_roots)

    @property
    def roots(self) -> tuple[Path, ...]:
        return self._roots

    def is_allowed(self, path: Path | str) -> bool:
        resolved = Path(path).expanduser().resolve()
        return any(resolved == root or resolved.is_relative_to(root) for root in self._roots)

    def validate(self, path: Path | str) -> Path:
        """Return the resolved path or raise PathRejected."""
        resolved = Path(path).expanduser().resolve()
        for root in self._roots:
            if resolved == root or resolved.is_relative_to(root):
                return resolved
        raise PathRejected(f"Path is outside allowed directories: {path}", path=str(path))

    def with_root(self, root: Path | str) -> "PathValidator":
        """A new validator that additionally allows `root`."""
        return PathValidator([*self._roots, root])

    def __repr__(self) -> str:
        return f"PathValidator(roots={[str(r) for r in self._roots]!r})"
