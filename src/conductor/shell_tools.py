"""execute_command: run a shell command in the workspace with a timeout."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from conductor.capabilities import CapabilityRegistry
from conductor.errors import CapabilityError

logger = logging.getLogger(__name__)


async def run_shell(command: str, cwd: str | None = None, timeout: float = 120.0) -> dict:
    """Execute a shell command and return exit code and output."""
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CapabilityError(f"Command exceeded its {timeout:g}s limit and was killed: {command}") from None
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        await proc.wait()
        raise
    return {
        "exit_code": proc.returncode,
        "stdout": stdout.decode(errors="replace").strip(),
        "stderr": stderr.decode(errors="replace").strip(),
    }


class ShellTools:
    def __init__(self, workspace: str | Path = ".", timeout: float = 120.0, max_output_chars: int = 20000):
        self.workspace = Path(workspace).expanduser().resolve()
        self.timeout = timeout
        self.max_output_chars = max_output_chars

    def _cwd(self, raw: str | None) -> str:
        if not raw:
            return str(self.workspace)
        path = Path(raw).expanduser()
        resolved = (path if path.is_absolute() else self.workspace / path).resolve()
        if not resolved.is_dir():
            raise CapabilityError(f"Working directory not found: {raw}")
        return str(resolved)

    async def execute_command(self, params: dict) -> str:
        command = (params.get("command") or "").strip()
        if not command:
            raise CapabilityError("Missing required parameter 'command'")
        cwd = self._cwd(params.get("cwd"))
        logger.info(f"Running command in {cwd}: {command}")
        result = await run_shell(command, cwd=cwd, timeout=self.timeout)

        parts = []
        if result["stdout"]:
            parts.append(result["stdout"])
        if result["stderr"]:
            parts.append(f"[stderr]\n{result['stderr']}")
        if result["exit_code"] != 0:
            parts.append(f"Exit code: {result['exit_code']}")
        output = "\n".join(parts) or "(no output)"
        if len(output) > self.max_output_chars:
            output = output[: self.max_output_chars] + "\n... [output truncated]"
        return output

    def register(self, registry: CapabilityRegistry) -> None:
        registry.register("execute_command", self.execute_command, "Run a shell command (command, cwd)")
