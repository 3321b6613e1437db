"""
Request and response types for chat completions

Plain dataclasses shared by the dispatcher, the generation engine and the
JSON-RPC runtime. `to_dict()` renders the OpenAI wire shape.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

ROLES = ("system", "user", "assistant")

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_CANCELLED = "cancelled"


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatRequest:
    """A validated chat completion request (see validators.build_chat_request)"""

    model_id: str
    messages: Tuple[ChatMessage, ...]
    temperature: float
    top_p: float
    n: int
    max_tokens: int
    stream: bool
    seed: Optional[int] = None


@dataclass(frozen=True)
class StreamChunk:
    """
    One increment of a session's output.

    For a single session, sequences run 0..k-1 for token chunks and the
    finished chunk carries sequence k.
    """

    index: int
    sequence: int
    text: str
    token_id: Optional[int] = None
    finished: bool = False
    finish_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "sequence": self.sequence,
            "text": self.text,
            "token_id": self.token_id,
            "finished": self.finished,
            "finish_reason": self.finish_reason,
        }

    def to_openai(self, completion_id: str, model: str, created: int) -> Dict[str, Any]:
        """Render as an OpenAI `chat.completion.chunk` object"""
        delta: Dict[str, Any] = {}
        if self.sequence == 0:
            delta["role"] = "assistant"
        if self.text:
            delta["content"] = self.text
        return {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [
                {
                    "index": self.index,
                    "delta": delta,
                    "finish_reason": self.finish_reason if self.finished else None,
                }
            ],
        }


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ChatChoice:
    index: int
    message: ChatMessage
    finish_reason: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "message": self.message.to_dict(),
            "finish_reason": self.finish_reason,
        }


@dataclass
class ChatResponse:
    id: str
    created: int
    model: str
    choices: List[ChatChoice] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    object: str = "chat.completion"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "object": self.object,
            "created": self.created,
            "model": self.model,
            "choices": [choice.to_dict() for choice in self.choices],
            "usage": self.usage.to_dict(),
        }
