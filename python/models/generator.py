"""
Generator module - Autoregressive token generation

Responsibilities:
- Run the decode loop of one session on a worker thread
- Sample each token with temperature and top-p
- Emit incremental text chunks to a sink, honoring cancellation
- Measure TTFT and throughput
"""

import asyncio
import logging
import threading
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass, field
from time import perf_counter
from typing import List, Optional

import numpy as np

from errors import CoderRuntimeError, GenerationError, StreamClosedError
from models.loader import LoadedModel
from models.sampling import make_sampler
from models.streaming import ChunkSink
from schemas import FINISH_CANCELLED, FINISH_LENGTH, FINISH_STOP, ChatRequest, StreamChunk

logger = logging.getLogger(__name__)


@dataclass
class GenerationSession:
    """Per-request, per-choice generation state"""

    model: LoadedModel
    index: int
    prompt_tokens: List[int]
    max_tokens: int
    temperature: float
    top_p: float
    rng: np.random.Generator
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    output_tokens: List[int] = field(default_factory=list)
    finish_reason: Optional[str] = None
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()


@dataclass
class GenerationResult:
    index: int
    text: str
    token_ids: List[int]
    finish_reason: str
    prompt_tokens: int
    completion_tokens: int
    time_to_first_token: Optional[float]
    total_time: float

    @property
    def tokens_per_second(self) -> float:
        steady = max(self.total_time - (self.time_to_first_token or 0.0), 1e-6)
        return self.completion_tokens / steady if self.completion_tokens else 0.0


class GenerationEngine:
    """
    Drives generation sessions.

    `generate` is blocking and runs on a worker thread; `run` schedules it on
    the executor and limits how many decode loops run at once.
    """

    def __init__(self, executor: Optional[Executor] = None, concurrency_limit: int = 1, telemetry=None):
        self.executor = executor
        self.concurrency_limit = concurrency_limit
        self.telemetry = telemetry
        self._semaphore: Optional[asyncio.Semaphore] = None

    def new_sessions(
        self, model: LoadedModel, prompt_tokens: List[int], request: ChatRequest
    ) -> List[GenerationSession]:
        """One session per requested choice; a fixed seed reproduces every choice"""
        seeds = np.random.SeedSequence(request.seed).spawn(request.n)
        return [
            GenerationSession(
                model=model,
                index=index,
                prompt_tokens=list(prompt_tokens),
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                top_p=request.top_p,
                rng=np.random.default_rng(seed),
            )
            for index, seed in enumerate(seeds)
        ]

    def generate(self, session: GenerationSession, sink: ChunkSink) -> GenerationResult:
        """
        Run the decode loop for one session.

        Stops on an end-of-sequence token ("stop"), after max_tokens tokens
        ("length"), or when cancelled ("cancelled"). A sink whose consumer
        went away cancels the session instead of raising.

        Raises:
            GenerationError: If the forward pass, sampling or decoding fails
            StreamError: If the sink reports a full buffer
        """
        model = session.model
        model_id = model.model_id
        started_at = perf_counter()
        first_token_at: Optional[float] = None
        sequence = 0
        pieces: List[str] = []

        try:
            sampler = make_sampler(session.temperature, session.top_p)
            decoder = model.new_decoder()
            detokenizer = model.tokenizer.incremental()
        except CoderRuntimeError:
            raise
        except Exception as exc:
            raise GenerationError(model_id, f"failed to start session: {exc}") from exc

        tokens = list(session.prompt_tokens)
        finish_reason = FINISH_LENGTH

        for _ in range(session.max_tokens):
            if session.cancelled:
                finish_reason = FINISH_CANCELLED
                break

            try:
                logits = decoder(tokens)
                token_id = sampler(logits, session.rng)
            except Exception as exc:
                raise GenerationError(model_id, f"decode step {sequence} failed: {exc}") from exc

            if first_token_at is None:
                first_token_at = perf_counter()

            if token_id in model.eos_token_ids:
                finish_reason = FINISH_STOP
                break

            tokens.append(token_id)
            session.output_tokens.append(token_id)
            text = detokenizer.push(token_id)
            pieces.append(text)

            try:
                sink.emit(StreamChunk(index=session.index, sequence=sequence, text=text, token_id=token_id))
            except StreamClosedError:
                logger.info(f"Session {session.session_id} aborted: consumer closed the stream")
                session.cancel()
                finish_reason = FINISH_CANCELLED
                break
            sequence += 1

        tail = detokenizer.flush() if finish_reason != FINISH_CANCELLED else ""
        pieces.append(tail)
        session.finish_reason = finish_reason

        if not sink.closed:
            try:
                sink.emit(
                    StreamChunk(
                        index=session.index,
                        sequence=sequence,
                        text=tail,
                        finished=True,
                        finish_reason=finish_reason,
                    )
                )
            except StreamClosedError:
                logger.info(f"Session {session.session_id} finished after consumer closed the stream")

        total_time = perf_counter() - started_at
        result = GenerationResult(
            index=session.index,
            text="".join(pieces),
            token_ids=list(session.output_tokens),
            finish_reason=finish_reason,
            prompt_tokens=len(session.prompt_tokens),
            completion_tokens=len(session.output_tokens),
            time_to_first_token=(first_token_at - started_at) if first_token_at else None,
            total_time=total_time,
        )
        logger.debug(
            f"Session {session.session_id} done: model={model_id}, index={session.index}, "
            f"tokens={result.completion_tokens}, finish={finish_reason}, "
            f"tps={result.tokens_per_second:.1f}"
        )
        return result

    async def run(self, session: GenerationSession, sink: ChunkSink) -> GenerationResult:
        """Run `generate` on the executor; cancelling the caller cancels the session"""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.concurrency_limit)

        async with self._semaphore:
            loop = asyncio.get_running_loop()
            worker = loop.run_in_executor(self.executor, self.generate, session, sink)
            try:
                result = await asyncio.shield(worker)
            except asyncio.CancelledError:
                session.cancel()
                # Wait for the worker thread to observe the flag
                try:
                    await worker
                except Exception as exc:
                    logger.debug(f"Session {session.session_id} ended with {type(exc).__name__} after cancel")
                raise

        if self.telemetry:
            self.telemetry.record_generate(
                result.total_time, result.completion_tokens, result.time_to_first_token
            )
        return result
