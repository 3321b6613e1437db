"""
Custom exception types for the coder runtime

Provides typed exceptions for consistent JSON-RPC error mapping.
All domain-specific errors should inherit from these base types.
"""

from typing import Optional


class CoderRuntimeError(Exception):
    """Base exception for all coder runtime errors"""

    def __init__(self, message: str, model_id: Optional[str] = None):
        self.message = message
        self.model_id = model_id
        super().__init__(message)


class DownloadError(CoderRuntimeError):
    """Raised when model files cannot be fetched into the local cache"""

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Failed to download model {model_id}: {reason}", model_id)
        self.reason = reason


class ModelLoadError(CoderRuntimeError):
    """Raised when model loading fails"""

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Failed to load model {model_id}: {reason}", model_id)
        self.reason = reason


class ValidationError(CoderRuntimeError, ValueError):
    """Raised when a request is malformed or out of range"""

    def __init__(self, message: str, model_id: Optional[str] = None):
        super().__init__(message, model_id)


class UnknownModelError(ValidationError):
    """Raised when a model id is not present in the catalog"""

    def __init__(self, model_id: str):
        super().__init__(f"Unknown model: {model_id}", model_id)


class StreamError(CoderRuntimeError):
    """Base class for streaming pipeline failures"""


class StreamBufferFullError(StreamError):
    """Raised when the consumer does not drain the stream buffer in time"""

    def __init__(self, timeout: float, model_id: Optional[str] = None):
        super().__init__(f"Stream buffer full: consumer idle for more than {timeout:.1f}s", model_id)
        self.timeout = timeout


class StreamClosedError(StreamError):
    """Raised when emitting into a stream whose consumer has gone away"""

    def __init__(self, model_id: Optional[str] = None):
        super().__init__("Stream closed by consumer", model_id)


class StreamNotInitializedError(StreamError):
    """Raised when emitting before the stream is bound to an event loop"""

    def __init__(self, model_id: Optional[str] = None):
        super().__init__("Stream sender not initialized", model_id)


class GenerationError(CoderRuntimeError):
    """Raised when token generation fails"""

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Generation failed for {model_id}: {reason}", model_id)
        self.reason = reason


class TokenizerError(GenerationError):
    """Raised when tokenization/detokenization fails"""

    def __init__(self, model_id: str, reason: str):
        CoderRuntimeError.__init__(self, f"Tokenizer error for {model_id}: {reason}", model_id)
        self.reason = reason


class DeviceError(CoderRuntimeError):
    """Raised by device probes; the device selector recovers from it locally"""

    def __init__(self, device: str, reason: str):
        super().__init__(f"Device {device} unavailable: {reason}")
        self.device = device
        self.reason = reason


# JSON-RPC error code mapping
# Subclasses are listed before their bases; lookups walk the MRO.
ERROR_CODE_MAP = {
    ModelLoadError: -32001,
    GenerationError: -32002,
    TokenizerError: -32003,
    DownloadError: -32004,
    UnknownModelError: -32005,
    StreamBufferFullError: -32006,
    StreamClosedError: -32007,
    StreamNotInitializedError: -32008,
    StreamError: -32009,
    DeviceError: -32010,
    ValidationError: -32602,
    CoderRuntimeError: -32099,  # Generic runtime error
}


def error_code_for(exc: BaseException) -> int:
    """Resolve the JSON-RPC code for an exception by walking its MRO"""
    for cls in type(exc).__mro__:
        if cls in ERROR_CODE_MAP:
            return ERROR_CODE_MAP[cls]
    if isinstance(exc, ValueError):
        return -32602
    return -32603
