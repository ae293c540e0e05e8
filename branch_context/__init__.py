"""branch-context: branch-navigable conversation trees and request-context assembly."""

from .config import load_config
from .core.pipeline import ContextPipeline, PipelineContext
from .core.processors import build_default_pipeline
from .core.retrieval_cache import RetrievalCacheRegistry
from .types import (
    AgentConfig,
    BranchContextConfig,
    ConversationNode,
    ConversationSession,
    PresetMessage,
    ProcessableMessage,
)

__version__ = "0.1.0"

__all__ = [
    "ContextPipeline",
    "PipelineContext",
    "RetrievalCacheRegistry",
    "build_default_pipeline",
    "load_config",
    "AgentConfig",
    "BranchContextConfig",
    "ConversationNode",
    "ConversationSession",
    "PresetMessage",
    "ProcessableMessage",
]
