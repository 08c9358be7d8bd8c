"""CLI streaming bridge — invoker, drainer, and protocol translator."""

from relay.bridge.drainer import EventStreamDrainer
from relay.bridge.events import (
    Frame,
    ProtocolEvent,
    RawRecord,
    ResultRecord,
    StreamEventRecord,
    encode_sse,
    parse_record,
)
from relay.bridge.invoker import (
    CLINotFoundError,
    InvocationError,
    InvocationRequest,
    InvocationTimeout,
    ProcessInvoker,
    SubprocessHandle,
    build_args,
    sanitize_environment,
)
from relay.bridge.translator import (
    ProtocolTranslator,
    TranslatorState,
    synthesize_envelope,
)

__all__ = [
    "CLINotFoundError",
    "EventStreamDrainer",
    "Frame",
    "InvocationError",
    "InvocationRequest",
    "InvocationTimeout",
    "ProcessInvoker",
    "ProtocolEvent",
    "ProtocolTranslator",
    "RawRecord",
    "ResultRecord",
    "StreamEventRecord",
    "SubprocessHandle",
    "TranslatorState",
    "build_args",
    "encode_sse",
    "parse_record",
    "sanitize_environment",
    "synthesize_envelope",
]
