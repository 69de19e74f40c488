"""WebSocket confirmation bridge for UI clients.

Protocol: JSON messages over ws://127.0.0.1:9850
Commands: approve, reject, run_task, cancel, stop_reasoning, get_status, get_pending
Events: every EventBus event is pushed to all connected clients
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any

import websockets

if TYPE_CHECKING:
    from conductor.events import EventBus
    from conductor.orchestrator import TaskOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9850


class ConfirmationBridge:
    """WebSocket server relaying engine events out and confirmations in."""

    def __init__(
        self,
        events: EventBus,
        orchestrator: TaskOrchestrator | None = None,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
    ):
        self._events = events
        self._orchestrator = orchestrator
        self._host = host
        self._port = port
        self._clients: set = set()
        self._server = None
        self._tasks: set[asyncio.Task] = set()
        self._active_run: asyncio.Task | None = None
        self._started_at = time.time()

        self._events.add_listener(self._broadcast_event)

    @property
    def clients(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        """Start the WebSocket server."""
        self._server = await websockets.serve(self._handler, self._host, self._port)
        logger.info(f"Confirmation bridge listening on ws://{self._host}:{self._port}")

    async def stop(self) -> None:
        """Close the server and all connections."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            logger.info("Confirmation bridge stopped")
        for task in list(self._tasks):
            task.cancel()
        self._events.remove_listener(self._broadcast_event)

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    async def _handler(self, websocket) -> None:
        """Handle a single client connection."""
        self._clients.add(websocket)
        remote = getattr(websocket, "remote_address", None)
        logger.info(f"Client connected: {remote}")

        try:
            async for raw in websocket:
                try:
                    cmd_data = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send(json.dumps({
                        "type": "error",
                        "data": {"message": "Invalid JSON"},
                    }))
                    continue
                if not isinstance(cmd_data, dict):
                    await websocket.send(json.dumps({
                        "type": "error",
                        "data": {"message": "Expected a JSON object"},
                    }))
                    continue

                await self.handle_command(websocket, cmd_data)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)
            logger.info(f"Client disconnected: {remote}")

    async def handle_command(self, ws, cmd_data: dict) -> dict:
        """Dispatch a command from a client and send the response.

        Expected format: {"type": "command", "action": "...", "data": {...}, "id": ...}
        """
        action = cmd_data.get("action", "")
        data = cmd_data.get("data") or {}
        request_id = cmd_data.get("id")
        result: Any = None
        started_at = time.time()

        try:
            if self._orchestrator is None:
                result = {"error": "Orchestrator not connected"}

            elif action in ("approve", "reject"):
                confirmation_id = data.get("id", "")
                if not confirmation_id:
                    result = {"error": "Missing 'id'"}
                else:
                    resolve = self._orchestrator.approve if action == "approve" else self._orchestrator.reject
                    found = resolve(confirmation_id)
                    result = {"id": confirmation_id, "resolved": found}
                    if not found:
                        result["error"] = f"No pending confirmation {confirmation_id}"

            elif action == "run_task":
                message = data.get("message", "")
                if not message:
                    result = {"error": "Missing 'message'"}
                elif self._run_in_flight():
                    result = {"error": f"Task {self._orchestrator.task_id or 'queued'} is still running"}
                else:
                    task = asyncio.create_task(self._run_task(ws, message, request_id))
                    self._active_run = task
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                    result = {"queued": message[:100]}

            elif action == "cancel":
                result = {"cancelled": self._orchestrator.cancel()}

            elif action == "stop_reasoning":
                self._orchestrator.stop_reasoning()
                result = {"stopping": True}

            elif action == "get_status":
                result = {**self._orchestrator.get_status(), "clients": len(self._clients)}

            elif action == "get_pending":
                result = {"pending": [p.to_dict() for p in self._orchestrator.pending_confirmations()]}

            else:
                result = {"error": f"Unknown action: {action}"}

        except Exception as e:
            logger.exception("Command error (%s): %s", action, e)
            result = {"error": str(e), "error_type": type(e).__name__}

        duration_ms = int(max(0.0, (time.time() - started_at) * 1000))
        result.setdefault("_meta", {})
        result["_meta"].update({
            "request_id": request_id,
            "action": action,
            "duration_ms": duration_ms,
        })

        response = {"type": "response", "id": request_id, "action": action, "data": result}
        await ws.send(json.dumps(response, default=str))
        return response

    def _run_in_flight(self) -> bool:
        """True from the moment a run is queued until the orchestrator is done with it."""
        if self._active_run is not None and not self._active_run.done():
            return True
        return self._orchestrator.status.value == "running"

    async def _run_task(self, ws, message: str, request_id: Any) -> None:
        try:
            result = await self._orchestrator.run(message)
            logger.info(f"Bridge task {result.task_id} finished: {result.status.value}")
        except Exception as e:
            logger.exception(f"Bridge task failed: {e}")
            try:
                await ws.send(json.dumps({
                    "type": "error",
                    "id": request_id,
                    "action": "run_task",
                    "data": {"message": str(e), "error_type": type(e).__name__},
                }))
            except websockets.exceptions.ConnectionClosed:
                pass

    def _broadcast_event(self, event_data: dict) -> None:
        """EventBus listener callback: push events to all clients."""
        if not self._clients:
            return

        message = json.dumps(
            {"type": "event", "data": event_data},
            default=str,
        )

        for ws in list(self._clients):
            task = asyncio.ensure_future(ws.send(message))
            self._tasks.add(task)
            task.add_done_callback(lambda t, ws=ws: self._on_send_done(ws, t))

    def _on_send_done(self, ws, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Dropping client {getattr(ws, 'remote_address', None)} after failed send: {error}")
            self._clients.discard(ws)


async def run_bridge(config_path: str | None = None, script: str | None = None) -> None:
    """Build an orchestrator from config and serve it until interrupted."""
    from pathlib import Path

    from conductor.config import ConductorConfig, ensure_conductor_home
    from conductor.events import EventBus
    from conductor.memory import MemoryStore
    from conductor.orchestrator import TaskOrchestrator

    ensure_conductor_home()
    config = ConductorConfig.load(Path(config_path) if config_path else None)
    store = MemoryStore()
    events = EventBus(memory=store)
    orchestrator = TaskOrchestrator.from_config(
        config, store=store, events=events, script=Path(script) if script else None
    )
    bridge = ConfirmationBridge(events, orchestrator, host=config.server.host, port=config.server.port)
    await bridge.serve_forever()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    asyncio.run(run_bridge())
