"""File capabilities confined to a workspace root.

read_file, write_to_file, replace_in_file, list_files, search_files.
Every path is resolved against the workspace and rejected if it escapes it.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
from pathlib import Path

from conductor.capabilities import CapabilityRegistry
from conductor.errors import CapabilityError

logger = logging.getLogger(__name__)

MAX_LIST_ENTRIES = 500
MAX_SEARCH_MATCHES = 200
_SKIP_DIRS = {".git", "__pycache__", "node_modules", ".venv", ".mypy_cache", ".pytest_cache"}

_DIFF_BLOCK = re.compile(
    r"<<<<<<< SEARCH\n(?P<search>.*?)\n?=======\n(?P<replace>.*?)\n?>>>>>>> REPLACE",
    re.DOTALL,
)


def _flag(value: str | None) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes")


def _require(params: dict, name: str) -> str:
    value = params.get(name)
    if value is None or value == "":
        raise CapabilityError(f"Missing required parameter '{name}'")
    return value


def parse_diff(diff: str) -> list[tuple[str, str]]:
    """Parse SEARCH/REPLACE blocks into (search, replace) pairs."""
    return [(m.group("search"), m.group("replace")) for m in _DIFF_BLOCK.finditer(diff)]


class FileTools:
    def __init__(self, workspace: str | Path = ".", max_output_chars: int = 20000):
        self.workspace = Path(workspace).expanduser().resolve()
        self.max_output_chars = max_output_chars

    def resolve(self, raw_path: str) -> Path:
        """Resolve ``raw_path`` strictly inside the workspace."""
        incoming = Path(raw_path or ".").expanduser()
        candidate = incoming if incoming.is_absolute() else (self.workspace / incoming)
        resolved = candidate.resolve()
        if resolved != self.workspace and self.workspace not in resolved.parents:
            raise CapabilityError(f"Path escapes workspace: {raw_path}")
        return resolved

    def _relative(self, path: Path) -> str:
        rel = path.relative_to(self.workspace).as_posix()
        return rel or "."

    def _clip(self, text: str) -> str:
        if len(text) <= self.max_output_chars:
            return text
        return text[: self.max_output_chars] + f"\n... [truncated {len(text) - self.max_output_chars} chars]"

    # --- blocking bodies, run off the event loop ---

    def _read_file(self, params: dict) -> str:
        path = self.resolve(_require(params, "path"))
        if not path.exists():
            raise CapabilityError(f"File not found: {params['path']}")
        if path.is_dir():
            raise CapabilityError(f"Path is a directory: {params['path']}")
        return self._clip(path.read_text(errors="replace"))

    def _write_to_file(self, params: dict) -> str:
        path = self.resolve(_require(params, "path"))
        content = params.get("content", "")
        if path.is_dir():
            raise CapabilityError(f"Path is a directory: {params['path']}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        logger.info(f"Wrote {len(content)} chars to {path}")
        return f"Wrote {len(content)} characters to {self._relative(path)}"

    def _replace_in_file(self, params: dict) -> str:
        path = self.resolve(_require(params, "path"))
        if not path.is_file():
            raise CapabilityError(f"File not found: {params['path']}")
        if params.get("diff"):
            edits = parse_diff(params["diff"])
            if not edits:
                raise CapabilityError("No SEARCH/REPLACE blocks found in diff")
        else:
            edits = [(_require(params, "search"), params.get("replace", ""))]

        text = path.read_text()
        for search, replacement in edits:
            if search not in text:
                preview = search.splitlines()[0][:80] if search else ""
                raise CapabilityError(f"Search text not found in {params['path']}: {preview!r}")
            text = text.replace(search, replacement, 1)
        path.write_text(text)
        return f"Applied {len(edits)} edit(s) to {self._relative(path)}"

    def _list_files(self, params: dict) -> str:
        root = self.resolve(params.get("path") or ".")
        if not root.exists():
            raise CapabilityError(f"Directory not found: {params.get('path')}")
        if not root.is_dir():
            raise CapabilityError(f"Not a directory: {params.get('path')}")

        entries: list[str] = []
        if _flag(params.get("recursive")):
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
                base = Path(dirpath)
                for d in dirnames:
                    entries.append(f"{(base / d).relative_to(root).as_posix()}/")
                for f in sorted(filenames):
                    entries.append((base / f).relative_to(root).as_posix())
        else:
            for child in sorted(root.iterdir(), key=lambda p: p.name):
                entries.append(f"{child.name}/" if child.is_dir() else child.name)

        if not entries:
            return "(empty directory)"
        if len(entries) > MAX_LIST_ENTRIES:
            extra = len(entries) - MAX_LIST_ENTRIES
            entries = entries[:MAX_LIST_ENTRIES] + [f"... and {extra} more"]
        return "\n".join(entries)

    def _search_files(self, params: dict) -> str:
        root = self.resolve(params.get("path") or ".")
        pattern = _require(params, "regex")
        file_pattern = params.get("file_pattern") or "*"
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise CapabilityError(f"Invalid regex {pattern!r}: {e}") from e

        matches: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for name in sorted(filenames):
                if not fnmatch.fnmatch(name, file_pattern):
                    continue
                path = Path(dirpath) / name
                try:
                    lines = path.read_text(errors="replace").splitlines()
                except OSError:
                    continue
                for lineno, line in enumerate(lines, 1):
                    if regex.search(line):
                        matches.append(f"{self._relative(path)}:{lineno}: {line.strip()}")
                        if len(matches) >= MAX_SEARCH_MATCHES:
                            matches.append(f"... stopped after {MAX_SEARCH_MATCHES} matches")
                            return "\n".join(matches)
        return "\n".join(matches) if matches else f"No matches for {pattern!r}"

    # --- handlers ---

    async def read_file(self, params: dict) -> str:
        return await asyncio.to_thread(self._read_file, params)

    async def write_to_file(self, params: dict) -> str:
        return await asyncio.to_thread(self._write_to_file, params)

    async def replace_in_file(self, params: dict) -> str:
        return await asyncio.to_thread(self._replace_in_file, params)

    async def list_files(self, params: dict) -> str:
        return await asyncio.to_thread(self._list_files, params)

    async def search_files(self, params: dict) -> str:
        return await asyncio.to_thread(self._search_files, params)

    def register(self, registry: CapabilityRegistry) -> None:
        registry.register("read_file", self.read_file, "Read a text file (path)")
        registry.register("write_to_file", self.write_to_file, "Create or overwrite a file (path, content)")
        registry.register(
            "replace_in_file", self.replace_in_file,
            "Edit a file with SEARCH/REPLACE blocks (path, diff) or (path, search, replace)",
        )
        registry.register("list_files", self.list_files, "List a directory (path, recursive)")
        registry.register("search_files", self.search_files, "Regex search (path, regex, file_pattern)")
