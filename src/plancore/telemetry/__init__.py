from .sink import (
    TelemetrySink,
    NoOpTelemetrySink,
    LoggingTelemetrySink,
    set_global_sink,
    get_global_sink,
    emit_safely,
)

__all__ = [
    "TelemetrySink",
    "NoOpTelemetrySink",
    "LoggingTelemetrySink",
    "set_global_sink",
    "get_global_sink",
    "emit_safely",
]
