from agent_stream.engine.models import (
    Answer,
    Caller,
    ChatMode,
    CreditBalance,
    EmbeddingRecord,
    GenerationRequest,
    RetrievalResult,
    ThreadItem,
    ThreadItemStatus,
)
from agent_stream.engine.events import DoneEvent, StreamEvent, parse_event
from agent_stream.engine.errors import (
    AgentStreamError,
    AuthRequiredError,
    ParseError,
    QuotaExceededError,
    ServiceError,
)
from agent_stream.engine.sse import EventStreamDemux
from agent_stream.engine.store import InMemoryThreadItemStore, ThreadItemStore
from agent_stream.engine.reducer import ThreadItemReducer, apply_event
from agent_stream.engine.session import Session, SessionRegistry
from agent_stream.engine.generation import (
    DemoGenerationClient,
    GenerationClient,
    HttpGenerationClient,
    ScriptedGenerationClient,
)
from agent_stream.engine.credits import CreditClient, HttpCreditClient, StaticCreditClient
from agent_stream.engine.controller import StreamSessionController

__all__ = [
    "AgentStreamError",
    "Answer",
    "AuthRequiredError",
    "Caller",
    "ChatMode",
    "CreditBalance",
    "CreditClient",
    "DemoGenerationClient",
    "DoneEvent",
    "EmbeddingRecord",
    "EventStreamDemux",
    "GenerationClient",
    "GenerationRequest",
    "HttpCreditClient",
    "HttpGenerationClient",
    "InMemoryThreadItemStore",
    "ParseError",
    "QuotaExceededError",
    "RetrievalResult",
    "ScriptedGenerationClient",
    "ServiceError",
    "Session",
    "SessionRegistry",
    "StaticCreditClient",
    "StreamEvent",
    "StreamSessionController",
    "ThreadItem",
    "ThreadItemReducer",
    "ThreadItemStatus",
    "ThreadItemStore",
    "apply_event",
    "parse_event",
]
