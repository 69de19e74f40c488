"""Conductor configuration management."""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from conductor.errors import ConfigurationError

CONDUCTOR_HOME = Path.home() / ".conductor"
CONDUCTOR_DB = CONDUCTOR_HOME / "conductor.db"
CONDUCTOR_CONFIG = CONDUCTOR_HOME / "config.json"
CONDUCTOR_LOGS = CONDUCTOR_HOME / "logs"

PROVIDER_KINDS = ("openai", "scripted")
REASONING_POLICIES = ("never", "on_request")


@dataclass
class ProviderConfig:
    """Model backend settings.

    ``openai`` talks to any OpenAI-compatible /chat/completions endpoint;
    ``scripted`` replays canned replies (tests, demos).
    """

    kind: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 60.0
    temperature: float = 0.0


@dataclass
class ContextConfig:
    """Context window settings."""

    preserve_recent: int = 3  # Never below 3
    profiles: dict = field(default_factory=dict)  # {model_id: {max_tokens, buffer_tokens}}


@dataclass
class ReasoningConfig:
    """Continuation loop settings."""

    max_iterations: int = 3
    policy: str = "never"


@dataclass
class RetryConfig:
    """Backoff for model and tool calls."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_errors: list = field(default_factory=list)  # empty = built-in signatures


@dataclass
class ApprovalConfig:
    """Which capabilities need interactive confirmation."""

    auto_run: bool = False
    auto_approve_read: bool = True
    auto_approve_list: bool = True
    confirm_dangerous: bool = True


@dataclass
class ToolConfig:
    """Built-in capability handler settings."""

    workspace: str = "."
    command_timeout_seconds: float = 120.0
    max_output_chars: int = 20000
    web_timeout_seconds: float = 15.0


@dataclass
class ServerConfig:
    """WebSocket confirmation bridge."""

    host: str = "127.0.0.1"
    port: int = 9850


_SECTIONS = {
    "provider": ProviderConfig,
    "context": ContextConfig,
    "reasoning": ReasoningConfig,
    "retry": RetryConfig,
    "approval": ApprovalConfig,
    "tools": ToolConfig,
    "server": ServerConfig,
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _coerce(value, current, key: str):
    """Convert a raw value (often a CLI/env string) to the type of ``current``."""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(f"Invalid boolean for {key}: {value!r}")
    if isinstance(current, (int, float)) and not isinstance(value, (int, float)):
        try:
            return type(current)(value)
        except ValueError:
            raise ConfigurationError(f"Invalid number for {key}: {value!r}") from None
    if isinstance(current, float) and isinstance(value, int):
        return float(value)
    if isinstance(current, (list, dict)) and isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            raise ConfigurationError(f"Expected JSON for {key}: {value!r}") from None
    if isinstance(current, list) and not isinstance(value, list):
        raise ConfigurationError(f"Expected a list for {key}")
    if isinstance(current, dict) and not isinstance(value, dict):
        raise ConfigurationError(f"Expected an object for {key}")
    return value


@dataclass
class ConductorConfig:
    """Top-level Conductor configuration."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    reasoning: ReasoningConfig = field(default_factory=ReasoningConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "ConductorConfig":
        """Load config from disk or return defaults.

        CONDUCTOR_API_KEY, CONDUCTOR_BASE_URL, CONDUCTOR_MODEL and
        CONDUCTOR_AUTO_RUN override the file.
        """
        config = cls()
        path = Path(path) if path else CONDUCTOR_CONFIG
        if path.exists():
            try:
                data = json.loads(path.read_text())
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Config file {path} is not valid JSON", details=str(e)) from e
            if not isinstance(data, dict):
                raise ConfigurationError(f"Config file {path} must contain a JSON object")
            for section, values in data.items():
                if section not in _SECTIONS:
                    raise ConfigurationError(f"Unknown config section: {section}")
                if not isinstance(values, dict):
                    raise ConfigurationError(f"Config section {section} must be an object")
                for k, v in values.items():
                    config.set_value(f"{section}.{k}", v, validate=False)

        api_key = os.environ.get("CONDUCTOR_API_KEY")
        base_url = os.environ.get("CONDUCTOR_BASE_URL")
        model = os.environ.get("CONDUCTOR_MODEL")
        auto_run = os.environ.get("CONDUCTOR_AUTO_RUN")

        if api_key:
            config.provider.api_key = api_key
        if base_url:
            config.provider.base_url = base_url
        if model:
            config.provider.model = model
        if auto_run is not None:
            config.approval.auto_run = _coerce(auto_run, False, "CONDUCTOR_AUTO_RUN")

        config.validate()
        return config

    def set_value(self, dotted_key: str, value, validate: bool = True) -> None:
        """Set ``section.field`` from a raw value, e.g. ``provider.model=gpt-4o``."""
        section_name, _, key = dotted_key.partition(".")
        if section_name not in _SECTIONS or not key:
            raise ConfigurationError(f"Unknown config key: {dotted_key}")
        section = getattr(self, section_name)
        if key not in {f.name for f in fields(section)}:
            raise ConfigurationError(f"Unknown config key: {dotted_key}")
        setattr(section, key, _coerce(value, getattr(section, key), dotted_key))
        if validate:
            self.validate()

    def validate(self) -> None:
        """Check cross-field constraints; clamps preserve_recent to >= 3."""
        if self.provider.kind not in PROVIDER_KINDS:
            raise ConfigurationError(
                f"provider.kind must be one of {PROVIDER_KINDS}, got {self.provider.kind!r}"
            )
        if self.provider.timeout_seconds <= 0:
            raise ConfigurationError("provider.timeout_seconds must be positive")
        if self.reasoning.policy not in REASONING_POLICIES:
            raise ConfigurationError(
                f"reasoning.policy must be one of {REASONING_POLICIES}, got {self.reasoning.policy!r}"
            )
        if self.reasoning.max_iterations < 0:
            raise ConfigurationError("reasoning.max_iterations must be >= 0")
        if self.retry.max_retries < 0:
            raise ConfigurationError("retry.max_retries must be >= 0")
        if self.retry.base_delay < 0 or self.retry.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")
        if self.retry.backoff_multiplier < 1:
            raise ConfigurationError("retry.backoff_multiplier must be >= 1")
        if not 0 < self.server.port < 65536:
            raise ConfigurationError(f"server.port out of range: {self.server.port}")
        for model_id, profile in self.context.profiles.items():
            if not isinstance(profile, dict) or "max_tokens" not in profile:
                raise ConfigurationError(f"context.profiles.{model_id} needs max_tokens")
            if profile.get("buffer_tokens", 0) >= profile["max_tokens"]:
                raise ConfigurationError(f"context.profiles.{model_id}: buffer_tokens must be below max_tokens")
        self.context.preserve_recent = max(3, int(self.context.preserve_recent))

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["provider"]["api_key"]:
            data["provider"]["api_key"] = "***"
        return data

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk."""
        path = Path(path) if path else CONDUCTOR_CONFIG
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2))


def ensure_conductor_home() -> None:
    """Create Conductor home directory structure."""
    CONDUCTOR_HOME.mkdir(parents=True, exist_ok=True)
    CONDUCTOR_LOGS.mkdir(parents=True, exist_ok=True)
