"""
Tokenizer adapter - Chat prompt encoding and incremental decoding

Responsibilities:
- Render a chat transcript into the model's prompt format and tokenize it
- Decode token ids to text
- Emit text incrementally as tokens are generated, without splitting
  multi-byte characters
"""

import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from errors import TokenizerError

logger = logging.getLogger(__name__)

REPLACEMENT_CHAR = "�"


def _message_fields(message: Any):
    if isinstance(message, dict):
        return message["role"], message["content"]
    return message.role, message.content


def format_plain_prompt(messages: Sequence[Any]) -> str:
    """Fallback prompt format for tokenizers without a chat template"""
    lines = [f"{role}: {content}" for role, content in map(_message_fields, messages)]
    lines.append("assistant: ")
    return "\n".join(lines)


class TokenizerAdapter:
    """Wraps a model tokenizer behind the operations the engine needs"""

    def __init__(self, model_id: str, tokenizer: Any, eos_token_ids: Optional[Iterable[int]] = None):
        if tokenizer is None:
            raise TokenizerError(model_id, "Tokenizer unavailable")
        self.model_id = model_id
        self.tokenizer = tokenizer

        ids = set(eos_token_ids or ())
        own_eos = getattr(tokenizer, "eos_token_id", None)
        if isinstance(own_eos, int):
            ids.add(own_eos)
        # mlx_lm's TokenizerWrapper exposes the full EOS set
        ids.update(getattr(tokenizer, "eos_token_ids", None) or ())
        self.eos_token_ids: FrozenSet[int] = frozenset(ids)

    @property
    def has_chat_template(self) -> bool:
        return bool(getattr(self.tokenizer, "chat_template", None))

    def render_prompt(self, messages: Sequence[Any]) -> str:
        if self.has_chat_template:
            conversation = [{"role": role, "content": content} for role, content in map(_message_fields, messages)]
            return self.tokenizer.apply_chat_template(
                conversation, tokenize=False, add_generation_prompt=True
            )
        return format_plain_prompt(messages)

    def encode(self, messages: Sequence[Any]) -> List[int]:
        """
        Encode a chat transcript to prompt token ids

        Raises:
            TokenizerError: If rendering or tokenization fails
        """
        try:
            prompt = self.render_prompt(messages)
            # Chat templates already carry the BOS marker
            token_ids = self.tokenizer.encode(prompt, add_special_tokens=not self.has_chat_template)
        except TokenizerError:
            raise
        except Exception as exc:
            raise TokenizerError(self.model_id, f"encode failed: {exc}") from exc

        if not token_ids:
            raise TokenizerError(self.model_id, "prompt encoded to zero tokens")
        return list(token_ids)

    def decode(self, token_ids: Sequence[int]) -> str:
        try:
            return self.tokenizer.decode(
                list(token_ids), skip_special_tokens=True, clean_up_tokenization_spaces=False
            )
        except Exception as exc:
            raise TokenizerError(self.model_id, f"decode failed: {exc}") from exc

    def count_tokens(self, text: str) -> int:
        """Count tokens in text (for diagnostics)"""
        try:
            return len(self.tokenizer.encode(text, add_special_tokens=False))
        except Exception as exc:
            raise TokenizerError(self.model_id, f"count failed: {exc}") from exc

    def special_tokens(self) -> Dict[str, Any]:
        special_tokens: Dict[str, Any] = {}
        for attr in ("bos_token", "eos_token", "pad_token", "unk_token", "bos_token_id", "pad_token_id"):
            value = getattr(self.tokenizer, attr, None)
            if value is not None:
                special_tokens[attr] = value
        special_tokens["eos_token_ids"] = sorted(self.eos_token_ids)
        return special_tokens

    def incremental(self) -> "IncrementalDecoder":
        return IncrementalDecoder(self)


class IncrementalDecoder:
    """
    Turns a stream of token ids into a stream of text deltas.

    The pending window is re-decoded on every token and only the unseen
    suffix is returned. Text ending in an incomplete UTF-8 sequence is held
    back until the next token completes it. After a newline the window
    restarts from the newline token alone, so the next token is still decoded
    in context and keeps its leading whitespace.
    """

    def __init__(self, adapter: TokenizerAdapter):
        self.adapter = adapter
        self._window: List[int] = []
        self._emitted = ""

    def _delta(self, text: str) -> str:
        if not text.startswith(self._emitted):
            # Earlier text already went out; emit whatever extends past it
            logger.debug(f"{self.adapter.model_id}: decoded window diverged from emitted text")
        return text[len(self._emitted):]

    def push(self, token_id: int) -> str:
        self._window.append(token_id)
        text = self.adapter.decode(self._window)

        if text.endswith(REPLACEMENT_CHAR):
            return ""

        delta = self._delta(text)
        if text.endswith("\n"):
            self._window = self._window[-1:]
            self._emitted = self.adapter.decode(self._window)
        else:
            self._emitted = text
        return delta

    def flush(self) -> str:
        """Return whatever text is still held back"""
        if not self._window:
            return ""
        delta = self._delta(self.adapter.decode(self._window))
        self._window = []
        self._emitted = ""
        return delta
