"""Workspace file store.

Every generated application lives in its own workspace, addressed by
workspace id. Paths are workspace-relative POSIX paths ("src/App.tsx").
Content is text (str) for source files and bytes for binary assets such
as generated images.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import shutil
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

FileContent = str | bytes


class FileNotFound(LookupError):
    """Raised when a workspace path does not exist."""


def normalize_path(path: str) -> str:
    """Normalize a workspace-relative path.

    A leading "/" is read as the workspace root, so "/src/App.tsx" and
    "src/App.tsx" name the same file. Raises ValueError if the path is
    empty or escapes the workspace.
    """
    cleaned = path.strip().replace("\\", "/")
    cleaned = cleaned.lstrip("/")
    if cleaned.startswith("./"):
        cleaned = cleaned[2:]
    if not cleaned:
        raise ValueError("Path must not be empty")
    normalized = posixpath.normpath(cleaned)
    if normalized == ".." or normalized.startswith("../"):
        raise ValueError(
            f"Path '{path}' is outside the workspace. "
            "Only paths within the workspace are allowed."
        )
    return normalized


class FileStore(Protocol):
    async def read(self, workspace_id: str, path: str) -> FileContent: ...

    async def write(self, workspace_id: str, path: str, content: FileContent) -> None: ...

    async def delete(self, workspace_id: str, path: str) -> bool: ...

    async def list(self, workspace_id: str, prefix: str = "") -> list[str]: ...


class InMemoryFileStore:
    """Dict-backed store, mainly for tests and ephemeral runs."""

    def __init__(self, files: dict[str, dict[str, FileContent]] | None = None) -> None:
        self._files: dict[str, dict[str, FileContent]] = {
            ws: {normalize_path(p): c for p, c in entries.items()}
            for ws, entries in (files or {}).items()
        }

    async def read(self, workspace_id: str, path: str) -> FileContent:
        key = normalize_path(path)
        try:
            return self._files[workspace_id][key]
        except KeyError:
            raise FileNotFound(f"File not found: {key}") from None

    async def write(self, workspace_id: str, path: str, content: FileContent) -> None:
        self._files.setdefault(workspace_id, {})[normalize_path(path)] = content

    async def delete(self, workspace_id: str, path: str) -> bool:
        return self._files.get(workspace_id, {}).pop(normalize_path(path), None) is not None

    async def list(self, workspace_id: str, prefix: str = "") -> list[str]:
        return sorted(p for p in self._files.get(workspace_id, {}) if p.startswith(prefix))


class LocalFileStore:
    """One directory per workspace under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _workspace(self, workspace_id: str) -> Path:
        if not workspace_id or "/" in workspace_id or workspace_id in (".", ".."):
            raise ValueError(f"Invalid workspace id: {workspace_id!r}")
        return self.root / workspace_id

    def _resolve(self, workspace_id: str, path: str) -> Path:
        workspace = self._workspace(workspace_id).resolve()
        target = (workspace / normalize_path(path)).resolve()
        # Symlinks could still point outside
        if not target.is_relative_to(workspace):
            raise ValueError(f"Path '{path}' is outside workspace '{workspace_id}'.")
        return target

    async def read(self, workspace_id: str, path: str) -> FileContent:
        target = self._resolve(workspace_id, path)
        if not target.is_file():
            raise FileNotFound(f"File not found: {normalize_path(path)}")
        data = await asyncio.to_thread(target.read_bytes)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data

    async def write(self, workspace_id: str, path: str, content: FileContent) -> None:
        target = self._resolve(workspace_id, path)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        if isinstance(content, bytes):
            await asyncio.to_thread(target.write_bytes, content)
        else:
            await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        logger.debug("Wrote %s/%s (%d chars)", workspace_id, path, len(content))

    async def delete(self, workspace_id: str, path: str) -> bool:
        target = self._resolve(workspace_id, path)
        if not target.is_file():
            return False
        await asyncio.to_thread(target.unlink)
        return True

    async def list(self, workspace_id: str, prefix: str = "") -> list[str]:
        workspace = self._workspace(workspace_id)
        if not workspace.is_dir():
            return []

        def _walk() -> list[str]:
            return sorted(
                p.relative_to(workspace).as_posix()
                for p in workspace.rglob("*")
                if p.is_file()
            )

        paths = await asyncio.to_thread(_walk)
        return [p for p in paths if p.startswith(prefix)]

    async def remove_workspace(self, workspace_id: str) -> None:
        workspace = self._workspace(workspace_id)
        if workspace.is_dir():
            await asyncio.to_thread(shutil.rmtree, workspace)
