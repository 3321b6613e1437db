#!/usr/bin/env python3
"""
Coder Serving - Python Runtime
Provides chat completions for local code models via JSON-RPC over stdio

This runtime is a thin transport around the chat dispatcher:
- Model acquisition and loading live in model_downloader.py / model_registry.py
- Generation lives in models/generator.py
- Streaming chunks are forwarded as JSON-RPC notifications
"""

import asyncio
import logging
import struct
import sys
import time
from typing import Any, Dict, Optional, Set, TextIO

import msgpack
import orjson

from config_loader import get_config
from dispatcher import ChatDispatcher, ChatStream
from errors import CoderRuntimeError, error_code_for
from models import loader
from schemas import ChatResponse
from server_state import ServerState
from validators import validate_model_id

logger = logging.getLogger(__name__)

# Binary streaming message types
MSG_TYPE_TOKEN = 1  # Token chunk (stream.chunk)
MSG_TYPE_ERROR = 3  # Stream failure (stream.error)
MSG_TYPE_DONE = 4   # Stream completion (stream.done)

_METHOD_FOR_TYPE = {
    MSG_TYPE_TOKEN: "stream.chunk",
    MSG_TYPE_ERROR: "stream.error",
    MSG_TYPE_DONE: "stream.done",
}

RUNTIME_VERSION = "0.1.0"


class RuntimeServer:
    """Lightweight Python runtime exposing chat completions via JSON-RPC"""

    def __init__(self, state: Optional[ServerState] = None, output: Optional[TextIO] = None):
        self.state = state or ServerState.from_config()
        self.dispatcher = ChatDispatcher(self.state)
        self.output = output or sys.stdout
        self.binary_mode = self.state.config.binary_streaming
        self.shutdown_requested: bool = False
        self.started_at = time.time()
        # Stream forwarding tasks keyed by stream id
        self.stream_tasks: Dict[str, asyncio.Task] = {}
        # Requests being handled off the read loop
        self.request_tasks: Set[asyncio.Task] = set()

    def _write_line(self, payload: Dict[str, Any]) -> None:
        self.output.write(orjson.dumps(payload).decode("utf-8") + "\n")
        self.output.flush()

    def _notify(self, method: str, params: Dict[str, Any]) -> None:
        """Emit JSON-RPC notification"""
        self._write_line({"jsonrpc": "2.0", "method": method, "params": params})

    def _notify_binary(self, msg_type: int, params: Dict[str, Any]) -> None:
        """
        Emit binary notification using MessagePack

        Message Format:
            [4 bytes: length (big-endian)] + [N bytes: msgpack data]
        """
        packed = msgpack.packb({"t": msg_type, "p": params}, use_bin_type=True)
        stream = self.output.buffer
        stream.write(struct.pack(">I", len(packed)))
        stream.write(packed)
        stream.flush()

    def _emit(self, msg_type: int, params: Dict[str, Any]) -> None:
        if self.binary_mode and hasattr(self.output, "buffer"):
            self._notify_binary(msg_type, params)
        else:
            self._notify(_METHOD_FOR_TYPE[msg_type], params)

    def _serialize_error(self, exc: Exception) -> Dict[str, Any]:
        """Translate Python exceptions to JSON-RPC error objects"""
        if isinstance(exc, CoderRuntimeError):
            data = {"type": type(exc).__name__}
            if exc.model_id:
                data["model_id"] = exc.model_id
            return {"code": error_code_for(exc), "message": exc.message, "data": data}
        if isinstance(exc, ValueError):
            logger.warning(f"Validation error: {exc}")
            return {"code": -32602, "message": str(exc), "data": {"type": "ValidationError"}}

        # Generic error to prevent leaking internals; full error goes to the log
        logger.error(f"Unexpected error in runtime: {type(exc).__name__}: {exc}", exc_info=exc)
        return {
            "code": -32603,
            "message": "An unexpected internal error occurred",
            "data": {"type": "InternalError"},
        }

    async def handle_request(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Handle incoming JSON-RPC request or notification

        Returns:
            Response dict for requests (with id), None for notifications (without id)
        """
        method = request.get("method")
        params = request.get("params") or {}
        req_id = request.get("id")
        is_notification = "id" not in request

        try:
            if method == "runtime/info":
                result = self.get_runtime_info()
            elif method == "runtime/telemetry":
                result = self.state.telemetry.get_report()
            elif method == "models/list":
                result = {"data": self.dispatcher.list_models()}
            elif method == "models/status":
                result = self.dispatcher.model_status(validate_model_id(params.get("model_id")))
            elif method == "models/download":
                result = await self.dispatcher.download(validate_model_id(params.get("model_id")))
            elif method == "models/load":
                result = await self.dispatcher.load(validate_model_id(params.get("model_id")))
            elif method == "chat/completions":
                result = await self.chat_completions(params)
            elif method == "stream/cancel":
                result = {"cancelled": await self.cancel_stream(params.get("stream_id"))}
            elif method == "shutdown":
                result = await self.shutdown()
            else:
                raise ValueError(f"Unknown method: {method}")

            if is_notification:
                return None
            return {"jsonrpc": "2.0", "id": req_id, "result": result}

        except Exception as exc:
            error_obj = self._serialize_error(exc)
            if is_notification:
                logger.error(f"Error in notification {method}: {exc}")
                return None
            return {"jsonrpc": "2.0", "id": req_id, "error": error_obj}

    def get_runtime_info(self) -> Dict[str, Any]:
        """Return runtime version and capabilities"""
        return {
            "version": RUNTIME_VERSION,
            "mlx_supported": loader.MLX_AVAILABLE,
            "mlx_import_error": loader.MLX_IMPORT_ERROR,
            "uptime_seconds": time.time() - self.started_at,
            "models": self.state.catalog.ids(),
            "loaded_models": self.state.registry.list_loaded(),
            "registry": self.state.registry.get_stats(),
            "active_streams": len(self.stream_tasks),
            "binary_streaming": self.binary_mode,
        }

    async def chat_completions(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Run a chat completion; streaming requests return a stream handshake"""
        result = await self.dispatcher.complete_params(params)
        if isinstance(result, ChatResponse):
            return result.to_dict()

        stream = result
        self.stream_tasks[stream.id] = asyncio.create_task(self._forward_stream(stream))
        return {
            "stream_id": stream.id,
            "model": stream.model,
            "created": stream.created,
            "started_at": time.time(),
        }

    async def _forward_stream(self, stream: ChatStream) -> None:
        try:
            async for chunk in stream:
                self._emit(MSG_TYPE_TOKEN, {"stream_id": stream.id, **stream.to_openai(chunk)})
            if not stream.channel.closed:
                self._emit(MSG_TYPE_DONE, {"stream_id": stream.id})
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(f"Client went away during stream {stream.id}: {exc}")
            await stream.aclose()
        except CoderRuntimeError as exc:
            self._emit(MSG_TYPE_ERROR, {"stream_id": stream.id, "error": self._serialize_error(exc)})
        except asyncio.CancelledError:
            await stream.aclose()
            raise
        finally:
            self.stream_tasks.pop(stream.id, None)

    async def cancel_stream(self, stream_id: Any) -> bool:
        if not isinstance(stream_id, str) or not stream_id:
            raise ValueError("stream_id is required")
        return await self.dispatcher.cancel_stream(stream_id)

    async def shutdown(self) -> Dict[str, Any]:
        """Gracefully shutdown the runtime"""
        self.shutdown_requested = True

        # Let requests already dispatched finish and answer
        pending = [t for t in self.request_tasks if t is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.dispatcher.shutdown()

        tasks = list(self.stream_tasks.values())
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.stream_tasks.clear()

        logger.info(f"ModelRegistry final stats: {self.state.registry.get_stats()}")
        self.state.close()
        return {"success": True}

    async def _handle_and_respond(self, request: Dict[str, Any]) -> None:
        response = await self.handle_request(request)
        if response is not None:
            self._write_line(response)

    async def run(self, input_stream: Optional[TextIO] = None) -> None:
        """Main loop reading newline-delimited JSON-RPC from stdin"""
        input_stream = input_stream or sys.stdin
        max_buffer_size = self.state.config.max_buffer_size
        loop = asyncio.get_running_loop()
        buffer = ""

        while not self.shutdown_requested:
            line = await loop.run_in_executor(None, input_stream.readline)
            if not line:
                break

            # Check size before concatenation
            if len(buffer.encode("utf-8")) + len(line.encode("utf-8")) > max_buffer_size:
                self._write_line(
                    {
                        "jsonrpc": "2.0",
                        "id": None,
                        "error": {
                            "code": -32600,
                            "message": f"Buffer overflow: would exceed {max_buffer_size} bytes",
                        },
                    }
                )
                buffer = ""
                continue

            buffer += line
            try:
                request = orjson.loads(buffer)
            except orjson.JSONDecodeError:
                # Incomplete message, continue reading
                continue
            buffer = ""

            if not isinstance(request, dict):
                self._write_line(
                    {"jsonrpc": "2.0", "id": None, "error": {"code": -32600, "message": "Invalid Request"}}
                )
                continue

            if request.get("method") == "shutdown":
                # Handled inline so no request read after it gets dispatched
                await self._handle_and_respond(request)
                continue

            task = asyncio.create_task(self._handle_and_respond(request))
            self.request_tasks.add(task)
            task.add_done_callback(self.request_tasks.discard)

        if not self.shutdown_requested:
            await self.shutdown()


def main():
    """Entry point"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    logger.info("Coder runtime ready")

    server = RuntimeServer(ServerState.from_config(config))
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
