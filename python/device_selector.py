"""
Compute device selection

Chooses where model weights live and generation runs. The accelerator is
preferred; any probe failure falls back to the CPU so selection always
yields a usable device.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from errors import DeviceError
from models.loader import MLX_AVAILABLE, MLX_IMPORT_ERROR

if MLX_AVAILABLE:
    import mlx.core as mx

logger = logging.getLogger(__name__)

GPU = "gpu"
CPU = "cpu"


@dataclass(frozen=True)
class Device:
    kind: str
    name: str
    fallback: bool = False
    reason: Optional[str] = None
    handle: Any = None  # backend device object, when one exists

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "name": self.name, "fallback": self.fallback, "reason": self.reason}


# probe(kind) -> Device, raising DeviceError when the device cannot be used
DeviceProbe = Callable[[str], Device]

GENERAL_CPU = Device(kind=CPU, name="cpu")


def mlx_probe(kind: str) -> Device:
    """Check that MLX can place and evaluate an array on the requested device"""
    if not MLX_AVAILABLE:
        raise DeviceError(kind, MLX_IMPORT_ERROR or "MLX not available")

    if kind == GPU:
        if not mx.metal.is_available():
            raise DeviceError(kind, "Metal backend not available")
        handle = mx.Device(mx.gpu)
    elif kind == CPU:
        handle = mx.Device(mx.cpu)
    else:
        raise DeviceError(kind, "unknown device kind")

    try:
        probe = mx.ones((4,), stream=handle) * 2
        mx.eval(probe)
    except Exception as exc:
        raise DeviceError(kind, f"probe allocation failed: {exc}") from exc

    return Device(kind=kind, name=str(handle), handle=handle)


def attempt(preferred: str, probe: DeviceProbe) -> Device:
    """
    Select a device, never raising.

    Tries `preferred`, then the CPU. If even the CPU probe fails the plain
    general-purpose CPU device is returned.
    """
    try:
        return probe(preferred)
    except Exception as exc:
        reason = exc.reason if isinstance(exc, DeviceError) else f"{type(exc).__name__}: {exc}"
        if preferred == CPU:
            logger.warning(f"CPU probe failed ({reason}), using general-purpose CPU")
            return Device(kind=CPU, name="cpu", fallback=True, reason=reason)
        logger.warning(f"Device {preferred} unavailable ({reason}), falling back to CPU")

    try:
        device = probe(CPU)
    except Exception as exc:
        cpu_reason = exc.reason if isinstance(exc, DeviceError) else f"{type(exc).__name__}: {exc}"
        logger.warning(f"CPU probe failed ({cpu_reason}), using general-purpose CPU")
        return Device(kind=CPU, name="cpu", fallback=True, reason=reason)

    return Device(kind=device.kind, name=device.name, fallback=True, reason=reason, handle=device.handle)


class DeviceSelector:
    """Caches the selected device per preference for the lifetime of the server"""

    def __init__(self, preferred: str = GPU, probe: Optional[DeviceProbe] = None):
        self.preferred = preferred
        self.probe = probe or mlx_probe
        self._lock = threading.Lock()
        self._selected: Dict[str, Device] = {}

    def select_device(self, preference: Optional[str] = None) -> Device:
        kind = preference or self.preferred
        with self._lock:
            device = self._selected.get(kind)
            if device is None:
                device = attempt(kind, self.probe)
                self._selected[kind] = device
                logger.info(f"Selected device {device.name} (preferred={kind}, fallback={device.fallback})")
            return device
