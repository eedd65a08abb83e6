"""qrforce

Prompt assembly and resilient model dispatch for a host chat platform.
"""

from qrforce.config import ApiMode, GenerationSettings, JailbreakPrompt, PromptMode, WorldbookSource
from qrforce.engine import GenerationEngine
from qrforce.errors import (
    ConfigurationError,
    EmptyContentError,
    EmptyPromptError,
    GenerationError,
    NoticeKind,
    RequestTimeoutError,
    RetryExhaustedError,
    StreamTimeoutError,
    TransportError,
    ValidationError,
)
from qrforce.host import FileHost
from qrforce.models import ChatTurn, KnowledgeEntry, Message, Role

__all__ = [
    "ApiMode",
    "ChatTurn",
    "ConfigurationError",
    "EmptyContentError",
    "EmptyPromptError",
    "FileHost",
    "GenerationEngine",
    "GenerationError",
    "GenerationSettings",
    "JailbreakPrompt",
    "KnowledgeEntry",
    "Message",
    "NoticeKind",
    "PromptMode",
    "RequestTimeoutError",
    "RetryExhaustedError",
    "Role",
    "StreamTimeoutError",
    "TransportError",
    "ValidationError",
    "WorldbookSource",
]

__version__ = "0.1.0"
