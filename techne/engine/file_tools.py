"""Workspace file tools: write, patch, read, delete, rename, search, load_component.

Every mutating handler commits through the file store and then reports
the write to the ChangeTracker before returning, so the invalidation is
visible to the very next context assembly.
"""

from __future__ import annotations

import difflib
import fnmatch
import logging
import re
from typing import Any

from techne.engine.schemas import ToolOutcome
from techne.engine.tools import ToolContext, ToolDispatcher, path_args
from techne.storage.files import FileNotFound, normalize_path

logger = logging.getLogger(__name__)

_MAX_SEARCH_MATCHES = 100
_MAX_READ_CHARS = 1024 * 1024
# line_replace looks this many lines around a mismatched range for the search text
_RELOCATE_WINDOW = 10
_MIN_SIMILARITY = 0.8

# Placeholders models emit instead of real code
_PLACEHOLDER_RE = re.compile(
    r"(//|/\*|\{/\*|#|<!--)\s*\.{3}\s*(keep|rest of|existing|remaining|unchanged)"
    r"|(//|/\*|\{/\*|#|<!--)\s*(keep existing code|rest of (the )?(code|file|component))",
    re.IGNORECASE,
)

_CODE_START_RE = re.compile(
    r"^(import |export |const |let |var |function |class |interface |type |from |require\(|<)",
    re.MULTILINE,
)


def normalize_escapes(content: str) -> str:
    """Turn literal escape sequences back into the characters they stand for.

    Only applies to code that arrived on (almost) a single line with
    literal backslash-n separators; intentional "\\n" string literals in
    ordinary multi-line files are left alone.
    """
    if '"\\n"' in content or "'\\n'" in content:
        return content
    literal = len(re.findall(r"(?<!\\)\\n", content))
    if literal == 0 or content.count("\n") > 1:
        return content
    if not _CODE_START_RE.search(content.replace("\\n", "\n")):
        return content

    lines = re.split(r"(?<!\\)\\n", content)
    lines = [re.sub(r"(?<![\"'])\\\"", '"', line).replace("\\t", "\t") for line in lines]
    return "\n".join(lines)


def parse_line_ranges(spec: str, total: int) -> list[tuple[int, int]]:
    """Parse "1-20, 40-50, 77" into 1-based inclusive ranges clamped to total."""
    ranges: list[tuple[int, int]] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        match = re.fullmatch(r"(\d+)\s*(?:-\s*(\d+))?", part)
        if not match:
            raise ValueError(f"Invalid line range: {part!r}")
        start = int(match.group(1))
        end = int(match.group(2) or start)
        if start < 1 or end < start:
            raise ValueError(f"Invalid line range: {part!r}")
        if start > total:
            continue
        ranges.append((start, min(end, total)))
    return ranges


def _numbered(lines: list[str], start: int = 1) -> str:
    return "\n".join(f"{n:>5}\t{line}" for n, line in enumerate(lines, start))


def _squash(text: str) -> str:
    return " ".join(text.split())


def _shifted(shifts: list[tuple[int, int, int]], line: int) -> int:
    """Map a line number from the model's view onto the file after earlier replacements."""
    return max(line + sum(delta for _, last, delta in shifts if last < line), 1)


def _locate(lines: list[str], search: str, first: int, last: int) -> tuple[int, int, float] | None:
    """Find search near first..last, returning (first, last, similarity) or None.

    Tries, in order: a whitespace-insensitive match within _RELOCATE_WINDOW
    lines (nearest first), a unique whitespace-insensitive match anywhere
    in the file, and the most similar span within the window.
    """
    target = _squash(search)
    if not target:
        return None
    size = len(search.strip("\n").split("\n"))
    if size > len(lines):
        return None

    def span(start: int) -> str:
        return _squash("\n".join(lines[start - 1 : start - 1 + size]))

    lo = max(first - _RELOCATE_WINDOW, 1)
    hi = min(last + _RELOCATE_WINDOW, len(lines)) - size + 1
    nearby = sorted(range(lo, hi + 1), key=lambda s: abs(s - first))
    for start in nearby:
        if span(start) == target:
            return start, start + size - 1, 1.0

    anywhere = [s for s in range(1, len(lines) - size + 2) if span(s) == target]
    if len(anywhere) == 1:
        return anywhere[0], anywhere[0] + size - 1, 1.0

    best: tuple[int, int, float] | None = None
    for start in nearby:
        ratio = difflib.SequenceMatcher(None, target, span(start)).ratio()
        if ratio >= _MIN_SIMILARITY and (best is None or ratio > best[2]):
            best = (start, start + size - 1, ratio)
    return best


async def _commit(context: ToolContext, path: str, content: str | bytes) -> bool:
    """Write a file and record it with the tracker. Returns changed."""
    await context.file_store.write(context.workspace_id, path, content)
    outcome = await context.tracker.record_write(context.workspace_id, path, content)
    return outcome.changed


def _reset_line_shifts(context: ToolContext, *paths: str) -> None:
    """Whole-file changes invalidate the line numbers the model patched against."""
    for path in paths:
        context.line_shifts.pop(path, None)


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def write_file(context: ToolContext, path: str, content: str) -> ToolOutcome:
    try:
        path = normalize_path(path)
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    content = normalize_escapes(content)
    if _PLACEHOLDER_RE.search(content):
        return ToolOutcome.fail(
            f"Refusing to write {path}: content contains a placeholder such as "
            "'// ... keep existing code'. Write the complete file, or use "
            "line_replace to change part of it."
        )

    changed = await _commit(context, path, content)
    _reset_line_shifts(context, path)
    lines = content.count("\n") + 1
    if not changed:
        return ToolOutcome.ok(f"File unchanged: {path} (content identical)")
    return ToolOutcome.ok(f"File written: {path} ({lines} lines)", changed_paths=[path])


async def line_replace(
    context: ToolContext,
    path: str,
    first_line: int,
    last_line: int,
    search: str,
    replacement: str,
) -> ToolOutcome:
    """Replace lines first_line..last_line (1-based, inclusive) if they match search.

    Line numbers refer to the file as the model last read it: earlier
    replacements in the same batch shift later ranges accordingly. When
    the addressed lines do not match, the search text is looked for near
    the range (then anywhere in the file) before giving up.
    """
    try:
        path = normalize_path(path)
        current = await context.file_store.read(context.workspace_id, path)
    except (ValueError, FileNotFound) as e:
        return ToolOutcome.fail(str(e))
    if isinstance(current, bytes):
        return ToolOutcome.fail(f"Cannot patch binary file: {path}")
    if not 1 <= first_line <= last_line:
        return ToolOutcome.fail(f"Invalid line range {first_line}-{last_line}")

    lines = current.split("\n")
    shifts = context.line_shifts.get(path, [])
    start, end = _shifted(shifts, first_line), _shifted(shifts, last_line)
    if (start, end) != (first_line, last_line):
        logger.debug("line_replace %s: lines %d-%d shifted to %d-%d", path, first_line, last_line, start, end)

    search = normalize_escapes(search)
    in_range = end <= len(lines)
    if not (in_range and _squash("\n".join(lines[start - 1 : end])) == _squash(search)):
        located = _locate(lines, search, start, min(end, len(lines)))
        if located is None:
            if not in_range:
                return ToolOutcome.fail(
                    f"Line range {first_line}-{last_line} is outside {path} (1-{len(lines)})"
                )
            actual = lines[start - 1 : end]
            return ToolOutcome.fail(
                f"Search content does not match lines {start}-{end} of {path}. "
                f"Actual content:\n{_numbered(actual, start)}"
            )
        logger.info(
            "line_replace %s: search found at lines %d-%d instead of %d-%d (similarity %.0f%%)",
            path,
            located[0],
            located[1],
            start,
            end,
            located[2] * 100,
        )
        start, end = located[0], located[1]

    replacement = normalize_escapes(replacement)
    if _PLACEHOLDER_RE.search(replacement):
        return ToolOutcome.fail("Replacement contains a 'keep existing code' placeholder")

    new_lines = replacement.split("\n") if replacement else []
    updated = "\n".join(lines[: start - 1] + new_lines + lines[end:])
    changed = await _commit(context, path, updated)
    context.line_shifts.setdefault(path, []).append(
        (first_line, last_line, len(new_lines) - (end - start + 1))
    )
    return ToolOutcome.ok(
        f"Replaced lines {start}-{end} of {path} with {len(new_lines)} line(s)",
        changed_paths=[path] if changed else [],
    )


async def read_file(context: ToolContext, path: str, lines: str | None = None) -> ToolOutcome:
    """Read a workspace file, falling back to the shared template library."""
    try:
        path = normalize_path(path)
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    source = "workspace"
    try:
        content = await context.file_store.read(context.workspace_id, path)
    except FileNotFound:
        template = context.templates.get(path)
        if template is None:
            return ToolOutcome.fail(f"File not found: {path}")
        content, source = template, "template library"

    if isinstance(content, bytes):
        return ToolOutcome.ok(f"{path} is a binary file ({len(content):,} bytes)")
    if len(content) > _MAX_READ_CHARS:
        return ToolOutcome.fail(
            f"File too large: {len(content):,} chars. Use the lines argument to read portions."
        )

    all_lines = content.split("\n")
    header = f"{path} ({len(all_lines)} lines, from {source})"
    if not lines:
        return ToolOutcome.ok(f"{header}\n{_numbered(all_lines)}")

    try:
        ranges = parse_line_ranges(lines, len(all_lines))
    except ValueError as e:
        return ToolOutcome.fail(str(e))
    if not ranges:
        return ToolOutcome.fail(f"No lines in range {lines!r}; {path} has {len(all_lines)} lines")
    parts = [_numbered(all_lines[start - 1 : end], start) for start, end in ranges]
    return ToolOutcome.ok(header + "\n" + "\n   ...\n".join(parts))


async def delete_file(context: ToolContext, path: str) -> ToolOutcome:
    try:
        path = normalize_path(path)
    except ValueError as e:
        return ToolOutcome.fail(str(e))
    if not await context.file_store.delete(context.workspace_id, path):
        return ToolOutcome.fail(f"File not found: {path}")
    await context.tracker.record_delete(context.workspace_id, path)
    _reset_line_shifts(context, path)
    return ToolOutcome.ok(f"File deleted: {path}", changed_paths=[path])


async def rename_file(context: ToolContext, old_path: str, new_path: str) -> ToolOutcome:
    try:
        old_path = normalize_path(old_path)
        new_path = normalize_path(new_path)
        content = await context.file_store.read(context.workspace_id, old_path)
    except (ValueError, FileNotFound) as e:
        return ToolOutcome.fail(str(e))
    if old_path == new_path:
        return ToolOutcome.fail("Source and destination are the same path")
    if new_path in await context.file_store.list(context.workspace_id, new_path):
        return ToolOutcome.fail(f"Destination already exists: {new_path}")

    await _commit(context, new_path, content)
    await context.file_store.delete(context.workspace_id, old_path)
    await context.tracker.record_delete(context.workspace_id, old_path)
    _reset_line_shifts(context, old_path, new_path)
    return ToolOutcome.ok(
        f"File renamed: {old_path} -> {new_path}", changed_paths=[old_path, new_path]
    )


async def search_files(
    context: ToolContext,
    query: str,
    include_pattern: str | None = None,
    exclude_pattern: str | None = None,
    case_sensitive: bool = False,
) -> ToolOutcome:
    """Regex search across workspace files."""
    try:
        regex = re.compile(query, 0 if case_sensitive else re.IGNORECASE)
    except re.error as e:
        return ToolOutcome.fail(f"Invalid search pattern: {e}")

    matches: list[str] = []
    files_matched = 0
    for path in await context.file_store.list(context.workspace_id):
        if include_pattern and not fnmatch.fnmatch(path, include_pattern):
            continue
        if exclude_pattern and fnmatch.fnmatch(path, exclude_pattern):
            continue
        content = await context.file_store.read(context.workspace_id, path)
        if isinstance(content, bytes):
            continue
        hit = False
        for number, line in enumerate(content.split("\n"), 1):
            if regex.search(line):
                hit = True
                if len(matches) < _MAX_SEARCH_MATCHES:
                    matches.append(f"{path}:{number}: {line.strip()[:200]}")
        files_matched += hit

    if not matches:
        return ToolOutcome.ok(f"No matches for: {query}")
    summary = f"{len(matches)} match(es) in {files_matched} file(s) for: {query}"
    if len(matches) >= _MAX_SEARCH_MATCHES:
        summary += f" (showing first {_MAX_SEARCH_MATCHES})"
    return ToolOutcome.ok(summary + "\n" + "\n".join(matches))


async def load_component(context: ToolContext, name: str) -> ToolOutcome:
    """Bring a library component into context from the next turn on."""
    name = name.strip().lower()
    path = context.templates.component_path(name)
    if path is None:
        available = ", ".join(context.templates.component_names()) or "none"
        return ToolOutcome.fail(f"Unknown component: {name}. Available components: {available}")

    conversation = context.conversation
    already = name in conversation.loaded_components or (
        conversation.prediction is not None and name in conversation.prediction.components
    )
    if not already:
        conversation.loaded_components.append(name)
    content = context.templates.get(path) or ""
    return ToolOutcome.ok(
        f"Component {name} ({path}) {'is already' if already else 'is now'} in context.\n\n{content}"
    )


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Write a complete file to the project. Overwrites existing files. "
        "Never use placeholders like '// ... keep existing code'; use line_replace "
        "to change part of a file."
    ),
    "properties": {
        "path": {"type": "string", "description": "Project-relative path, e.g. src/App.tsx"},
        "content": {"type": "string", "description": "Complete file content"},
    },
    "required": ["path", "content"],
}

_LINE_REPLACE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Replace a range of lines in an existing file. The lines first_line..last_line "
        "must match search (whitespace-insensitive); read_file shows line numbers."
    ),
    "properties": {
        "path": {"type": "string", "description": "Project-relative path"},
        "first_line": {"type": "integer", "minimum": 1, "description": "First line to replace (1-based)"},
        "last_line": {"type": "integer", "minimum": 1, "description": "Last line to replace (inclusive)"},
        "search": {"type": "string", "description": "Current content of those lines"},
        "replacement": {"type": "string", "description": "New content for those lines"},
    },
    "required": ["path", "first_line", "last_line", "search", "replacement"],
}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Read a project file with line numbers. Falls back to the shared template "
        "library for files not yet in the project."
    ),
    "properties": {
        "path": {"type": "string", "description": "Project-relative path"},
        "lines": {"type": "string", "description": "Optional line ranges, e.g. '1-20, 40-50'"},
    },
    "required": ["path"],
}

_DELETE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Delete a file from the project",
    "properties": {"path": {"type": "string", "description": "Project-relative path"}},
    "required": ["path"],
}

_RENAME_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Rename or move a project file",
    "properties": {
        "old_path": {"type": "string", "description": "Current path"},
        "new_path": {"type": "string", "description": "New path"},
    },
    "required": ["old_path", "new_path"],
}

_SEARCH_FILES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Regex search across project files. Returns path:line: text matches.",
    "properties": {
        "query": {"type": "string", "description": "Regular expression to search for"},
        "include_pattern": {"type": "string", "description": "Glob of files to include, e.g. src/**/*.tsx"},
        "exclude_pattern": {"type": "string", "description": "Glob of files to exclude"},
        "case_sensitive": {"type": "boolean", "default": False},
    },
    "required": ["query"],
}

_LOAD_COMPONENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Load a UI component from the shared library (src/components/ui/<name>.tsx) "
        "that is not in context yet. It stays in context for the following turns."
    ),
    "properties": {"name": {"type": "string", "description": "Component name, e.g. dialog"}},
    "required": ["name"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_file_tools(dispatcher: ToolDispatcher) -> None:
    """Register the workspace file tools with the dispatcher."""
    dispatcher.register(
        "write_file", write_file, _WRITE_FILE_SCHEMA, parallel_safe=True, touches=path_args("path")
    )
    dispatcher.register(
        "line_replace", line_replace, _LINE_REPLACE_SCHEMA, parallel_safe=True, touches=path_args("path")
    )
    dispatcher.register(
        "read_file", read_file, _READ_FILE_SCHEMA, parallel_safe=True, touches=path_args("path")
    )
    dispatcher.register(
        "delete_file", delete_file, _DELETE_FILE_SCHEMA, parallel_safe=True, touches=path_args("path")
    )
    dispatcher.register(
        "rename_file",
        rename_file,
        _RENAME_FILE_SCHEMA,
        parallel_safe=True,
        touches=path_args("old_path", "new_path"),
    )
    # Reads every file, so never overlaps safely with a write
    dispatcher.register("search_files", search_files, _SEARCH_FILES_SCHEMA)
    dispatcher.register("load_component", load_component, _LOAD_COMPONENT_SCHEMA, parallel_safe=True)
