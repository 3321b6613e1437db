"""
Input validation for chat completion requests

Centralized validation logic to reject malformed or out-of-range parameters
before any model work starts. All failures raise ValidationError, which is
also a ValueError.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Optional

from config_loader import Config, get_config
from errors import UnknownModelError, ValidationError
from schemas import ROLES, ChatMessage, ChatRequest

_MODEL_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-./@:]+$")


def validate_model_id(model_id: Any) -> str:
    """
    Validate model_id parameter

    Args:
        model_id: Model ID to validate

    Returns:
        Validated model_id string

    Raises:
        ValidationError: If model_id is invalid
    """
    if not model_id:
        raise ValidationError("model_id is required")

    if not isinstance(model_id, str):
        raise ValidationError(f"model_id must be a string, got {type(model_id).__name__}")

    if len(model_id) > 512:
        raise ValidationError(f"model_id too long ({len(model_id)} chars, max 512)")

    # Disallow '..' to prevent path traversal
    if ".." in model_id or not _MODEL_ID_PATTERN.match(model_id):
        raise ValidationError("model_id contains invalid characters or path traversal attempts")

    return model_id


def validate_text_input(text: Any, param_name: str = "text", max_length: int = 1_048_576) -> str:
    """
    Validate text input parameters

    Raises:
        ValidationError: If text is not a string or is too long
    """
    if not isinstance(text, str):
        raise ValidationError(f"{param_name} must be a string, got {type(text).__name__}")

    if len(text) > max_length:
        raise ValidationError(f"{param_name} too long ({len(text)} chars, max {max_length})")

    return text


def validate_messages(messages: Any, max_messages: int = 256) -> tuple:
    """
    Validate the chat transcript and convert it to ChatMessage instances.

    Accepts ChatMessage objects or mappings with `role` and `content`.
    """
    if not isinstance(messages, (list, tuple)) or not messages:
        raise ValidationError("messages must be a non-empty list")

    if len(messages) > max_messages:
        raise ValidationError(f"too many messages ({len(messages)}, max {max_messages})")

    validated = []
    for idx, message in enumerate(messages):
        if isinstance(message, ChatMessage):
            role, content = message.role, message.content
        elif isinstance(message, dict):
            role, content = message.get("role"), message.get("content")
        else:
            raise ValidationError(f"messages[{idx}] must be an object, got {type(message).__name__}")

        if role not in ROLES:
            raise ValidationError(f"messages[{idx}].role must be one of {', '.join(ROLES)}, got {role!r}")
        validate_text_input(content, f"messages[{idx}].content")
        validated.append(ChatMessage(role=role, content=content))

    return tuple(validated)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_sampling_params(params: Dict[str, Any], config: Optional[Config] = None) -> None:
    """
    Validate sampling parameters

    Temperature must be strictly positive; greedy decoding is not offered.

    Raises:
        ValidationError: If parameters are invalid
    """
    config = config or get_config()

    if params.get("max_tokens") is not None:
        max_tokens = params["max_tokens"]
        if not _is_integer(max_tokens):
            raise ValidationError(f"max_tokens must be an integer, got {type(max_tokens).__name__}")
        if max_tokens < 1:
            raise ValidationError(f"max_tokens must be positive, got {max_tokens}")
        if max_tokens > config.max_generation_tokens:
            raise ValidationError(f"max_tokens too large ({max_tokens}, max {config.max_generation_tokens})")

    if params.get("temperature") is not None:
        temp = params["temperature"]
        if not _is_number(temp):
            raise ValidationError(f"temperature must be numeric, got {type(temp).__name__}")
        if temp <= 0:
            raise ValidationError(f"temperature must be greater than 0, got {temp}")
        if temp > config.max_temperature:
            raise ValidationError(f"temperature too large ({temp}, max {config.max_temperature})")

    if params.get("top_p") is not None:
        top_p = params["top_p"]
        if not _is_number(top_p):
            raise ValidationError(f"top_p must be numeric, got {type(top_p).__name__}")
        if not (0 < top_p <= 1):
            raise ValidationError(f"top_p must be in (0, 1], got {top_p}")

    if params.get("n") is not None:
        n = params["n"]
        if not _is_integer(n):
            raise ValidationError(f"n must be an integer, got {type(n).__name__}")
        if n < 1 or n > config.max_choices:
            raise ValidationError(f"n must be in [1, {config.max_choices}], got {n}")

    if params.get("stream") is not None and not isinstance(params["stream"], bool):
        raise ValidationError(f"stream must be a boolean, got {type(params['stream']).__name__}")

    if params.get("seed") is not None:
        seed = params["seed"]
        if not _is_integer(seed):
            raise ValidationError(f"seed must be an integer, got {type(seed).__name__}")
        if seed < 0 or seed > 2**32 - 1:
            raise ValidationError(f"seed out of range (0 to {2**32 - 1})")


def build_chat_request(
    params: Dict[str, Any],
    config: Optional[Config] = None,
    known_models: Optional[Iterable[str]] = None,
) -> ChatRequest:
    """
    Validate raw request parameters and fill omitted fields from chat defaults.

    Args:
        params: Raw parameters (`model`, `messages`, `temperature`, `top_p`,
            `n`, `max_tokens`, `stream`, `seed`)
        config: Runtime configuration (defaults to the global config)
        known_models: Catalog ids; when given, unknown ids are rejected

    Raises:
        ValidationError: On any invalid field
        UnknownModelError: If the model is not in `known_models`
    """
    config = config or get_config()
    if not isinstance(params, dict):
        raise ValidationError(f"params must be an object, got {type(params).__name__}")

    model_id = validate_model_id(params.get("model", params.get("model_id")))
    if known_models is not None and model_id not in set(known_models):
        raise UnknownModelError(model_id)

    messages = validate_messages(params.get("messages"), config.max_messages)
    validate_sampling_params(params, config)

    def pick(name: str, default: Any) -> Any:
        value = params.get(name)
        return default if value is None else value

    return ChatRequest(
        model_id=model_id,
        messages=messages,
        temperature=float(pick("temperature", config.default_temperature)),
        top_p=float(pick("top_p", config.default_top_p)),
        n=pick("n", config.default_n),
        max_tokens=pick("max_tokens", config.default_max_tokens),
        stream=pick("stream", config.default_stream),
        seed=params.get("seed"),
    )


def validate_chat_request(request: ChatRequest, config: Optional[Config] = None) -> ChatRequest:
    """Re-check an already constructed ChatRequest against the configured limits"""
    config = config or get_config()
    validate_model_id(request.model_id)
    validate_messages(list(request.messages), config.max_messages)
    validate_sampling_params(
        {
            "temperature": request.temperature,
            "top_p": request.top_p,
            "n": request.n,
            "max_tokens": request.max_tokens,
            "stream": request.stream,
            "seed": request.seed,
        },
        config,
    )
    return request
