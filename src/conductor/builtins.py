"""Registration of the built-in capability handlers."""

from __future__ import annotations

import logging

from conductor.capabilities import CapabilityRegistry
from conductor.config import ToolConfig
from conductor.errors import CapabilityError
from conductor.file_tools import FileTools
from conductor.memory import MemoryStore
from conductor.memory_tools import MemoryTools
from conductor.shell_tools import ShellTools
from conductor.web_tools import WebTools

logger = logging.getLogger(__name__)


async def ask_followup_question(params: dict) -> str:
    """Surface a clarifying question to the user as part of the reply."""
    question = (params.get("question") or "").strip()
    if not question:
        raise CapabilityError("Missing required parameter 'question'")
    options = (params.get("options") or "").strip()
    return f"{question}\nOptions: {options}" if options else question


async def continue_reasoning(params: dict) -> str:
    """Silent marker the model uses to ask for another round."""
    if params.get("reason"):
        logger.debug(f"Model requested another round: {params['reason']}")
    return ""


def register_control_tools(registry: CapabilityRegistry) -> None:
    registry.register("ask_followup_question", ask_followup_question, "Ask the user a question (question, options)")
    registry.register("continue_reasoning", continue_reasoning, "Request another reasoning round (reason)")


def build_registry(tools: ToolConfig, store: MemoryStore | None = None) -> CapabilityRegistry:
    """Registry with every built-in handler. Memory capabilities need a store."""
    registry = CapabilityRegistry()
    FileTools(tools.workspace, tools.max_output_chars).register(registry)
    ShellTools(tools.workspace, tools.command_timeout_seconds, tools.max_output_chars).register(registry)
    WebTools(tools.web_timeout_seconds, tools.max_output_chars).register(registry)
    if store is not None:
        MemoryTools(store).register(registry)
    register_control_tools(registry)
    logger.debug(f"Registered {len(registry)} built-in capabilities")
    return registry
