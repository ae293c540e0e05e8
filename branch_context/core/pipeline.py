"""Context pipeline: a priority-ordered chain of processors over one shared context."""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from ..types import (
    AgentConfig,
    ChatRegexConfig,
    ConversationSession,
    LogEntry,
    ProcessableMessage,
    UserProfile,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Mutable state handed from processor to processor for one send."""
    session: ConversationSession
    agent_config: AgentConfig
    messages: list[ProcessableMessage] = field(default_factory=list)
    user_profile: UserProfile | None = None
    global_regex_config: ChatRegexConfig | None = None
    logs: list[LogEntry] = field(default_factory=list)
    shared_data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def log(self, processor_id: str, level: str, message: str, details: dict | None = None) -> None:
        self.logs.append(LogEntry(processor_id=processor_id, level=level, message=message, details=details))


class ContextProcessor(ABC):
    """One stage of the context pipeline."""

    id: str = ""
    name: str = ""
    priority: int = 1000
    default_enabled: bool = True

    @abstractmethod
    async def execute(self, context: PipelineContext) -> None:
        """Read and mutate *context* in place."""


class FunctionProcessor(ContextProcessor):
    """Adapts a plain ``async def fn(context)`` into a processor."""

    def __init__(
        self,
        id: str,
        fn: Callable[[PipelineContext], Awaitable[None]],
        priority: int = 1000,
        name: str = "",
        default_enabled: bool = True,
    ) -> None:
        self.id = id
        self.name = name or id
        self.priority = priority
        self.default_enabled = default_enabled
        self._fn = fn

    async def execute(self, context: PipelineContext) -> None:
        await self._fn(context)


@dataclass
class _Registration:
    processor: ContextProcessor
    priority: int
    enabled: bool
    seq: int


class ContextPipeline:
    """Registry of processors, run in ascending priority (ties by registration order)."""

    def __init__(self, processors: list[ContextProcessor] | None = None) -> None:
        self._registry: dict[str, _Registration] = {}
        self._seq = itertools.count()
        for processor in processors or []:
            self.register_processor(processor)

    def register_processor(
        self,
        processor: ContextProcessor,
        priority: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        if processor.id in self._registry:
            logger.warning("Processor %s already registered, replacing it", processor.id)
        self._registry[processor.id] = _Registration(
            processor=processor,
            priority=processor.priority if priority is None else priority,
            enabled=processor.default_enabled if enabled is None else enabled,
            seq=next(self._seq),
        )
        logger.debug("Registered processor %s", processor.id)

    def unregister_processor(self, processor_id: str) -> bool:
        if self._registry.pop(processor_id, None) is None:
            logger.warning("Processor %s not registered", processor_id)
            return False
        return True

    def get_processor(self, processor_id: str) -> ContextProcessor | None:
        reg = self._registry.get(processor_id)
        return reg.processor if reg else None

    def is_enabled(self, processor_id: str) -> bool:
        reg = self._registry.get(processor_id)
        return bool(reg and reg.enabled)

    def set_processor_enabled(self, processor_id: str, enabled: bool) -> bool:
        reg = self._registry.get(processor_id)
        if reg is None:
            logger.warning("Processor %s not registered", processor_id)
            return False
        reg.enabled = enabled
        return True

    def reorder_processors(self, processor_ids: list[str]) -> None:
        """Assign priorities 100, 200, ... in the given order.

        Registered processors missing from *processor_ids* keep their relative
        order and follow the listed ones.
        """
        listed = [pid for pid in processor_ids if pid in self._registry]
        rest = [
            reg.processor.id for reg in self._ordered(include_disabled=True)
            if reg.processor.id not in listed
        ]
        for i, pid in enumerate(listed + rest):
            self._registry[pid].priority = (i + 1) * 100

    def reset_to_defaults(self) -> None:
        for reg in self._registry.values():
            reg.priority = reg.processor.priority
            reg.enabled = reg.processor.default_enabled

    def _ordered(self, include_disabled: bool = False) -> list[_Registration]:
        regs = [r for r in self._registry.values() if include_disabled or r.enabled]
        return sorted(regs, key=lambda r: (r.priority, r.seq))

    def sorted_processors(self) -> list[ContextProcessor]:
        """Enabled processors in execution order."""
        return [r.processor for r in self._ordered()]

    async def execute(self, context: PipelineContext) -> PipelineContext:
        """Run every enabled processor. A processor that raises is logged and skipped."""
        for reg in self._ordered():
            processor = reg.processor
            try:
                await processor.execute(context)
            except Exception as e:
                logger.exception("Processor %s failed", processor.id)
                context.log(processor.id, "error", f"Processor failed: {e}", {"error": repr(e)})
        logger.info(
            "Pipeline finished for session %s: %d message(s), %d log entries",
            context.session.id, len(context.messages), len(context.logs),
        )
        return context
