"""
Chat dispatcher

Entry point for chat completions: validates the request, makes sure the
model is ready, encodes the prompt, runs one generation session per choice
and returns either a complete response or a stream handle.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Union

from errors import CoderRuntimeError, GenerationError
from models.generator import GenerationResult, GenerationSession
from models.streaming import ChunkSink, CompletionAccumulator, StreamChannel
from schemas import ChatChoice, ChatMessage, ChatRequest, ChatResponse, StreamChunk, Usage
from server_state import ServerState
from validators import build_chat_request, validate_chat_request

logger = logging.getLogger(__name__)


class ChatStream:
    """Handle for a streaming completion; iterate it for StreamChunks"""

    def __init__(
        self,
        completion_id: str,
        model: str,
        created: int,
        channel: StreamChannel,
        sessions: List[GenerationSession],
    ):
        self.id = completion_id
        self.model = model
        self.created = created
        self.channel = channel
        self.sessions = sessions
        self.task: Optional["asyncio.Task[Optional[List[GenerationResult]]]"] = None

    def __aiter__(self):
        return self.channel.__aiter__()

    def to_openai(self, chunk: StreamChunk) -> Dict[str, Any]:
        return chunk.to_openai(self.id, self.model, self.created)

    async def aclose(self) -> None:
        """Consumer is gone: stop every session and wait for the producers"""
        self.channel.close()
        for session in self.sessions:
            session.cancel()
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)

    async def wait(self) -> Optional[List[GenerationResult]]:
        """Results of every session once the stream completed, None if it failed"""
        return await self.task if self.task is not None else None


def _translate(exc: BaseException, model_id: str) -> CoderRuntimeError:
    if isinstance(exc, CoderRuntimeError):
        return exc
    return GenerationError(model_id, f"{type(exc).__name__}: {exc}")


class ChatDispatcher:
    def __init__(self, state: ServerState):
        self.state = state
        self.config = state.config
        self._streams: Dict[str, ChatStream] = {}

    @property
    def active_streams(self) -> Dict[str, ChatStream]:
        return dict(self._streams)

    async def complete_params(self, params: Dict[str, Any]) -> Union[ChatResponse, ChatStream]:
        """Build a ChatRequest from raw parameters, applying chat defaults"""
        request = build_chat_request(params, self.config, self.state.catalog.ids())
        return await self.complete(request)

    async def complete(self, request: ChatRequest) -> Union[ChatResponse, ChatStream]:
        """
        Run a chat completion.

        Returns a ChatResponse for buffered requests and a ChatStream for
        `stream=True`.

        Raises:
            ValidationError: On invalid requests or unknown models
            DownloadError / ModelLoadError: If the model cannot be made ready
            GenerationError: If encoding or generation fails
            StreamError: If a buffered generation hits a stream failure
        """
        validate_chat_request(request, self.config)
        self.state.catalog.get(request.model_id)

        model = await self.state.registry.get_or_load(request.model_id)

        loop = asyncio.get_running_loop()
        try:
            prompt_tokens = await loop.run_in_executor(
                self.state.executor, model.tokenizer.encode, list(request.messages)
            )
        except Exception as exc:
            self.state.telemetry.record_error("tokenize")
            raise _translate(exc, request.model_id) from exc

        sessions = self.state.engine.new_sessions(model, prompt_tokens, request)
        completion_id = f"chatcmpl-{uuid.uuid4().hex}"
        created = int(time.time())
        logger.info(
            f"Chat completion {completion_id}: model={request.model_id}, n={request.n}, "
            f"prompt_tokens={len(prompt_tokens)}, max_tokens={request.max_tokens}, stream={request.stream}"
        )

        if request.stream:
            return self._start_stream(completion_id, created, request, sessions)

        accumulator = CompletionAccumulator()
        results = await self._run_sessions(sessions, accumulator, request.model_id)

        choices = [
            ChatChoice(
                index=result.index,
                message=ChatMessage(role="assistant", content=accumulator.text(result.index)),
                finish_reason=result.finish_reason,
            )
            for result in sorted(results, key=lambda r: r.index)
        ]
        usage = Usage(
            prompt_tokens=len(prompt_tokens),
            completion_tokens=sum(result.completion_tokens for result in results),
        )
        return ChatResponse(id=completion_id, created=created, model=request.model_id, choices=choices, usage=usage)

    def _start_stream(
        self,
        completion_id: str,
        created: int,
        request: ChatRequest,
        sessions: List[GenerationSession],
    ) -> ChatStream:
        channel = StreamChannel(
            capacity=self.config.stream_queue_size,
            put_timeout=self.config.get_queue_put_timeout_seconds(),
            model_id=request.model_id,
            loop=asyncio.get_running_loop(),
        )
        stream = ChatStream(completion_id, request.model_id, created, channel, sessions)
        stream.task = asyncio.create_task(self._drive_stream(stream, request.model_id))
        self._streams[completion_id] = stream
        stream.task.add_done_callback(lambda _: self._streams.pop(completion_id, None))
        return stream

    async def _drive_stream(self, stream: ChatStream, model_id: str) -> Optional[List[GenerationResult]]:
        try:
            results = await self._run_sessions(stream.sessions, stream.channel, model_id)
        except asyncio.CancelledError:
            stream.channel.close()
            raise
        except CoderRuntimeError as exc:
            await stream.channel.fail(exc)
            return None
        await stream.channel.finish()
        return results

    async def _run_sessions(
        self, sessions: List[GenerationSession], sink: ChunkSink, model_id: str
    ) -> List[GenerationResult]:
        """
        Run sessions concurrently into one sink.

        The first failure cancels the remaining sessions; it is raised once
        every session has stopped.
        """
        loop = asyncio.get_running_loop()
        deadline = None
        if self.config.generation_timeout_seconds:
            deadline = loop.call_later(self.config.generation_timeout_seconds, self._cancel_all, sessions)

        tasks = [asyncio.create_task(self.state.engine.run(session, sink)) for session in sessions]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failed = next((t for t in tasks if t.done() and not t.cancelled() and t.exception()), None)
            if failed is not None:
                self._cancel_all(sessions)
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            self._cancel_all(sessions)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            if deadline is not None:
                deadline.cancel()

        errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if errors:
            error = _translate(errors[0], model_id)
            self.state.telemetry.record_error("generation")
            logger.error(f"Generation failed for {model_id}: {error.message}")
            if error is errors[0]:
                raise error
            raise error from errors[0]
        return list(outcomes)

    @staticmethod
    def _cancel_all(sessions: List[GenerationSession]) -> None:
        for session in sessions:
            session.cancel()

    async def cancel_stream(self, completion_id: str) -> bool:
        stream = self._streams.get(completion_id)
        if stream is None:
            return False
        await stream.aclose()
        return True

    # Model management

    def list_models(self) -> List[Dict[str, Any]]:
        entries = []
        for descriptor in self.state.catalog:
            status = self.state.status.get(descriptor.id)
            entries.append(
                {
                    "id": descriptor.id,
                    "display_name": descriptor.display_name,
                    "description": descriptor.description,
                    "is_cached": status.is_cached,
                    "is_ready": status.is_ready,
                }
            )
        return entries

    def model_status(self, model_id: str) -> Dict[str, Any]:
        descriptor = self.state.catalog.get(model_id)
        status = self.state.status.get(model_id)
        return {
            "id": descriptor.id,
            "hub_id": descriptor.hub_id,
            **status.to_dict(),
            "is_cached": status.is_cached,
            "is_ready": status.is_ready,
            "missing_files": self.state.coordinator.missing_files(model_id),
        }

    async def download(self, model_id: str) -> Dict[str, Any]:
        paths = await self.state.coordinator.ensure_available(model_id)
        return {"id": model_id, "path": str(paths.root), "files": [str(p) for p in paths.all_paths]}

    async def load(self, model_id: str) -> Dict[str, Any]:
        model = await self.state.registry.get_or_load(model_id)
        metadata = {k: v for k, v in model.metadata.items() if isinstance(v, (str, int, float, bool, dict))}
        return {"id": model_id, "device": getattr(model.device, "name", str(model.device)), "metadata": metadata}

    async def shutdown(self) -> None:
        for stream in list(self._streams.values()):
            await stream.aclose()
