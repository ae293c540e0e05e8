"""Token counting utilities."""

from __future__ import annotations

import importlib
from typing import Callable

from .types import TokenCount

DEFAULT_TIKTOKEN_ENCODING = "cl100k_base"


def estimate_tokens(text: str) -> int:
    """Rough estimate: ~4 chars per token. Empty text is 0 tokens."""
    if not text:
        return 0
    return max(1, len(text) // 4)


def _tiktoken_counter(encoding_name: str) -> Callable[[str], int]:
    try:
        import tiktoken
    except ImportError:
        raise ImportError(
            "tiktoken not installed. Install with: pip install branch-context[tiktoken]"
        )
    enc = tiktoken.get_encoding(encoding_name or DEFAULT_TIKTOKEN_ENCODING)
    return lambda text: len(enc.encode(text)) if text else 0


def _load_callable(spec: str) -> Callable[[str], int]:
    module_path, sep, func_name = spec.rpartition(":")
    if not sep or not module_path or not func_name:
        raise ValueError(f"Invalid callable spec: callable:{spec}. Expected callable:module:func")
    return getattr(importlib.import_module(module_path), func_name)


def create_token_counter(mode: str = "estimate") -> Callable[[str], int]:
    """Factory for synchronous ``str -> int`` counters.

    Modes:
        "estimate" - len(text) // 4, no dependencies
        "tiktoken" or "tiktoken:<encoding>" - needs the tiktoken extra
        "callable:module.path:func" - any importable function
    """
    kind, _, arg = mode.partition(":")
    if kind == "estimate" and not arg:
        return estimate_tokens
    if kind == "tiktoken":
        return _tiktoken_counter(arg)
    if kind == "callable":
        return _load_callable(arg)
    raise ValueError(f"Unknown token counter mode: {mode}")


class CallableTokenCalculator:
    """Adapts a synchronous ``str -> int`` counter to the async calculator contract."""

    def __init__(self, counter: Callable[[str], int] | None = None, name: str = "estimate") -> None:
        self.counter = counter or estimate_tokens
        self.name = name

    async def calculate_tokens(self, content: str, model_id: str) -> TokenCount:
        if not content:
            return TokenCount(count=0, is_estimated=self.name == "estimate", tokenizer_name=self.name)
        return TokenCount(
            count=int(self.counter(content)),
            is_estimated=self.name == "estimate",
            tokenizer_name=self.name,
        )


def create_token_calculator(mode: str = "estimate") -> CallableTokenCalculator:
    """Build an async token calculator from a ``create_token_counter`` mode."""
    name = mode.split(":", 1)[0] if mode.startswith("callable:") else mode
    return CallableTokenCalculator(create_token_counter(mode), name=name)
