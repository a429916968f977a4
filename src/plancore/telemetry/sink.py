# src/plancore/telemetry/sink.py
from __future__ import annotations
import json
import logging
from typing import Protocol, Any, Dict, Optional

logger = logging.getLogger(__name__)

class TelemetrySink(Protocol):
    """
    Receives planner lifecycle notifications.
    Implementations may forward to a session store, a metrics pipeline, or nothing.
    Failures are never allowed to affect plan correctness.
    """

    def emit(self, event: str, payload: Dict[str, Any]) -> None: ...

class NoOpTelemetrySink:
    """Default sink that drops everything."""

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        pass

class LoggingTelemetrySink:
    """Writes each event as one INFO line on the `plancore.telemetry` logger."""

    def __init__(self, logger_name: str = "plancore.telemetry", level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self._level = level

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self._logger.log(self._level, f"{event} {json.dumps(payload, default=str, sort_keys=True)}")

# ---- Global accessor & setter ----------------------------------------------------
# Host apps inject their own sink; planners fall back to this one.
_GLOBAL_SINK: TelemetrySink = NoOpTelemetrySink()

def set_global_sink(sink: TelemetrySink) -> None:
    global _GLOBAL_SINK
    _GLOBAL_SINK = sink

def get_global_sink() -> TelemetrySink:
    return _GLOBAL_SINK

def emit_safely(sink: Optional[TelemetrySink], event: str, payload: Dict[str, Any]) -> None:
    """Emit on `sink` (or the global sink), logging and swallowing any failure."""
    target = sink if sink is not None else _GLOBAL_SINK
    try:
        target.emit(event, payload)
    except Exception as e:
        logger.warning(f"Telemetry event {event!r} dropped: {e}")
