"""Message parser: raw model output -> ordered text / tool_use blocks.

Two delimiter forms open a tool invocation:

    <tool name="list_files"><path>.</path></tool>
    <list_files><path>.</path></list_files>      (bare form, known names only)

Inside a tool body every ``<param>value</param>`` (or ``<param/>``) becomes one
string parameter. Unknown parameter names are kept; unknown capability names
are rejected later by the dispatcher, not here.

The parser is a character-level state machine, so feeding a message one
character at a time yields exactly the blocks that parsing it in one call
does. It never raises on malformed input: anything that does not match a
delimiter stays text, and a tool block still open when the input ends is
returned with ``partial=True``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable

from conductor.capabilities import CAPABILITY_NAMES

logger = logging.getLogger(__name__)

_TOOL_OPEN = re.compile(r'<tool\s+name\s*=\s*"([A-Za-z_][A-Za-z0-9_]*)"\s*>$')
_BARE_OPEN = re.compile(r"<([A-Za-z_][A-Za-z0-9_]*)>$")
_PARAM_OPEN = re.compile(r"<([A-Za-z_][A-Za-z0-9_\-]*)\s*(/?)>$")
_TOOL_CLOSE = "</tool>"

# Longest tail we need to inspect when a '>' arrives.
_TAG_WINDOW = 256

# Parameters whose body is verbatim content; only one wrapping newline is removed.
_VERBATIM_PARAMS = frozenset({"content", "diff"})


class BlockKind(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"


@dataclass(frozen=True)
class ToolInvocation:
    """A parsed capability request. ``partial`` is set when the closing delimiter never arrived."""

    name: str
    params: dict[str, str] = field(default_factory=dict)
    partial: bool = False


@dataclass
class ContentBlock:
    kind: BlockKind
    content: str
    partial: bool = False
    invocation: ToolInvocation | None = None
    id: str = ""

    @property
    def is_tool(self) -> bool:
        return self.kind == BlockKind.TOOL_USE


def block_id(index: int) -> str:
    """Stable identifier for the block at ``index`` of a round."""
    return f"block-{index}"


def _clean_param(name: str, value: str) -> str:
    if name in _VERBATIM_PARAMS:
        if value.startswith("\n"):
            value = value[1:]
        if value.endswith("\n"):
            value = value[:-1]
        return value
    return value.strip()


class _Mode(Enum):
    TEXT = "text"
    TOOL = "tool"
    PARAM = "param"


class MessageParser:
    """Incremental parser. Call feed() with arbitrary fragments, then finish()."""

    def __init__(self, capability_names: Iterable[str] = CAPABILITY_NAMES):
        self._names = frozenset(capability_names)
        self._done: list[ContentBlock] = []
        self._mode = _Mode.TEXT
        self._text = ""
        self._tool_name = ""
        self._tool_close = ""
        self._tool_raw = ""
        self._params: dict[str, str] = {}
        self._param_name = ""
        self._param_value = ""
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, fragment: str) -> list[ContentBlock]:
        """Consume a fragment of model output and return the current block snapshot."""
        if self._finished:
            logger.warning("MessageParser.feed() called after finish(); ignoring fragment")
            return self.blocks
        for ch in fragment:
            self._step(ch)
        return self.blocks

    def finish(self) -> list[ContentBlock]:
        """Mark the input as ended and return the final block list."""
        if self._finished:
            return self.blocks
        if self._mode == _Mode.TEXT:
            self._close_text(self._text)
        else:
            self._append(self._current_tool_block())
            logger.debug(f"Input ended inside tool block '{self._tool_name}'")
        self._text = ""
        self._mode = _Mode.TEXT
        self._finished = True
        return self.blocks

    @property
    def blocks(self) -> list[ContentBlock]:
        """Snapshot of the blocks so far; only the last one may be partial."""
        snapshot = [replace(b) for b in self._done]
        if self._finished:
            return snapshot
        if self._mode == _Mode.TEXT:
            text = self._text.strip()
            if text:
                snapshot.append(ContentBlock(
                    kind=BlockKind.TEXT,
                    content=text,
                    partial=True,
                    id=block_id(len(snapshot)),
                ))
        else:
            block = self._current_tool_block()
            block.id = block_id(len(snapshot))
            snapshot.append(block)
        return snapshot

    # --- state machine ---

    def _step(self, ch: str) -> None:
        if self._mode == _Mode.TEXT:
            self._text += ch
            if ch == ">":
                self._try_open_tool()
        elif self._mode == _Mode.TOOL:
            self._tool_raw += ch
            if ch == ">":
                self._on_tool_tag()
        else:
            self._tool_raw += ch
            self._param_value += ch
            if ch == ">":
                self._on_param_tag()

    def _try_open_tool(self) -> None:
        tail = self._text[-_TAG_WINDOW:]
        match = _TOOL_OPEN.search(tail)
        if match:
            close = _TOOL_CLOSE
        else:
            match = _BARE_OPEN.search(tail)
            if not match or match.group(1) not in self._names:
                return
            close = f"</{match.group(1)}>"
        opening = match.group(0)
        self._close_text(self._text[: -len(opening)])
        self._text = ""
        self._mode = _Mode.TOOL
        self._tool_name = match.group(1)
        self._tool_close = close
        self._tool_raw = opening
        self._params = {}

    def _on_tool_tag(self) -> None:
        if self._tool_raw.endswith(self._tool_close):
            self._close_tool()
            return
        match = _PARAM_OPEN.search(self._tool_raw[-_TAG_WINDOW:])
        if not match:
            return
        name, self_closing = match.group(1), match.group(2)
        if self_closing:
            self._params[name] = ""
            return
        self._mode = _Mode.PARAM
        self._param_name = name
        self._param_value = ""

    def _on_param_tag(self) -> None:
        close = f"</{self._param_name}>"
        if self._param_value.endswith(close):
            self._params[self._param_name] = _clean_param(
                self._param_name, self._param_value[: -len(close)]
            )
            self._mode = _Mode.TOOL
            return
        # Tool closed while a parameter was still open: keep what we have.
        if self._param_name not in _VERBATIM_PARAMS and self._param_value.endswith(self._tool_close):
            self._params[self._param_name] = _clean_param(
                self._param_name, self._param_value[: -len(self._tool_close)]
            )
            self._close_tool()

    def _close_text(self, raw: str) -> None:
        text = raw.strip()
        if text:
            self._append(ContentBlock(kind=BlockKind.TEXT, content=text, partial=False))

    def _close_tool(self) -> None:
        self._append(ContentBlock(
            kind=BlockKind.TOOL_USE,
            content=self._tool_raw,
            partial=False,
            invocation=ToolInvocation(name=self._tool_name, params=dict(self._params), partial=False),
        ))
        self._mode = _Mode.TEXT
        self._text = ""
        self._tool_raw = ""
        self._params = {}
        self._param_name = ""
        self._param_value = ""

    def _current_tool_block(self) -> ContentBlock:
        params = dict(self._params)
        if self._mode == _Mode.PARAM:
            params[self._param_name] = _clean_param(self._param_name, self._param_value)
        return ContentBlock(
            kind=BlockKind.TOOL_USE,
            content=self._tool_raw,
            partial=True,
            invocation=ToolInvocation(name=self._tool_name, params=params, partial=True),
            id=block_id(len(self._done)),
        )

    def _append(self, block: ContentBlock) -> None:
        block.id = block_id(len(self._done))
        self._done.append(block)


def parse_assistant_message(text: str, capability_names: Iterable[str] = CAPABILITY_NAMES) -> list[ContentBlock]:
    """Parse a complete model response into its ordered block list."""
    parser = MessageParser(capability_names)
    parser.feed(text)
    return parser.finish()
