"""Conductor: conversational agent runtime with streamed tool use."""

__version__ = "0.1.0"

from conductor.approval import ApprovalGate, StaticSafetyPolicy
from conductor.capabilities import CAPABILITY_NAMES, CapabilityRegistry
from conductor.config import ConductorConfig
from conductor.context_window import ContextWindowManager, ContextWindowProfile, TruncationStrategy
from conductor.dispatcher import CapabilityDispatcher, DispatchBatch
from conductor.events import EventBus
from conductor.memory import MemoryStore
from conductor.message_parser import ContentBlock, MessageParser, parse_assistant_message
from conductor.orchestrator import TaskOrchestrator, TaskResult, TaskStatus
from conductor.providers import OpenAICompatibleProvider, ScriptedProvider
from conductor.reasoning import ReasoningController
from conductor.recovery import RecoverySupervisor, RetryPolicy
from conductor.stream_assembler import StreamAssembler, StreamChunk

__all__ = [
    "ApprovalGate",
    "StaticSafetyPolicy",
    "CAPABILITY_NAMES",
    "CapabilityRegistry",
    "ConductorConfig",
    "ContextWindowManager",
    "ContextWindowProfile",
    "TruncationStrategy",
    "CapabilityDispatcher",
    "DispatchBatch",
    "EventBus",
    "MemoryStore",
    "ContentBlock",
    "MessageParser",
    "parse_assistant_message",
    "TaskOrchestrator",
    "TaskResult",
    "TaskStatus",
    "OpenAICompatibleProvider",
    "ScriptedProvider",
    "ReasoningController",
    "RecoverySupervisor",
    "RetryPolicy",
    "StreamAssembler",
    "StreamChunk",
]
