"""Shared template library.

The framework scaffold and the UI component library every generated app
starts from. Loaded once, never mutated: workspaces reference template
files by path and only the selected subset is materialized into context.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

from techne.utils import fingerprint

logger = logging.getLogger(__name__)

COMPONENT_DIR = "src/components/ui"

# Template files sent on every turn (scaffold config, shared helpers)
_ALWAYS_INCLUDED_PREFIXES = ("src/lib/",)
_ALWAYS_INCLUDED_FILES = ("package.json", "tailwind.config.ts", "src/index.css")

_TEXT_SUFFIXES = {
    ".ts", ".tsx", ".js", ".jsx", ".json", ".css", ".html", ".md", ".cjs", ".mjs",
}


class TemplateLibrary:
    """Immutable, content-addressed set of template files."""

    def __init__(self, files: Mapping[str, str] | None = None) -> None:
        self._files = MappingProxyType(dict(files or {}))
        self._digests = MappingProxyType({p: fingerprint(c) for p, c in self._files.items()})

    @classmethod
    def from_directory(cls, root: str | Path) -> TemplateLibrary:
        root = Path(root)
        if not root.is_dir():
            logger.warning("Template directory %s not found, using empty library", root)
            return cls()
        files: dict[str, str] = {}
        for path in sorted(root.rglob("*")):
            if not path.is_file() or path.suffix not in _TEXT_SUFFIXES:
                continue
            if "node_modules" in path.parts:
                continue
            files[path.relative_to(root).as_posix()] = path.read_text(encoding="utf-8")
        logger.info("Loaded %d template files from %s", len(files), root)
        return cls(files)

    def __contains__(self, path: object) -> bool:
        return path in self._files

    def __len__(self) -> int:
        return len(self._files)

    @property
    def files(self) -> Mapping[str, str]:
        return self._files

    def get(self, path: str) -> str | None:
        return self._files.get(path)

    def digest(self, path: str) -> str | None:
        return self._digests.get(path)

    def paths(self) -> list[str]:
        return sorted(self._files)

    def component_names(self) -> list[str]:
        """Names of UI components available (src/components/ui/<name>.tsx)."""
        names = []
        for path in self._files:
            directory, filename = posixpath.split(path)
            if directory == COMPONENT_DIR and filename.endswith(".tsx"):
                names.append(filename[: -len(".tsx")])
        return sorted(names)

    def component_path(self, name: str) -> str | None:
        path = f"{COMPONENT_DIR}/{name.strip().lower()}.tsx"
        return path if path in self._files else None

    def base_paths(self) -> list[str]:
        """Template files that always enter context (not optional components)."""
        return [
            p
            for p in self.paths()
            if p in _ALWAYS_INCLUDED_FILES or p.startswith(_ALWAYS_INCLUDED_PREFIXES)
        ]
