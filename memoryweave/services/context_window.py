"""
Token-budgeted context window assembly.

Selection is greedy: candidates above the importance threshold are sorted by
importance and added while they fit the token budget and the memory cap. A
candidate that does not fit is skipped and the scan continues, so a smaller
memory further down the list can still use the remaining budget.

Token counts come from a pluggable estimator; the default ``len / 4``
heuristic is approximate for non-English or multi-byte text.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence

import memoryweave.config as config
from memoryweave.errors import LanguageModelError, ValidationIssue
from memoryweave.records import MemoryRecord, ScoredMemory
from memoryweave.services.memory_shared import logger
from memoryweave.services.providers import LanguageModelProvider

CHARS_PER_TOKEN = 4
ELLIPSIS = "..."
EMPTY_CONTEXT_TEXT = "No relevant memories available."

TokenEstimator = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class ContentCompressor(Protocol):
    def compress(self, content: str, target_tokens: int) -> str:
        ...


class TruncatingCompressor:
    """Keeps the head of the content that fits ``target_tokens`` and marks the cut."""

    def compress(self, content: str, target_tokens: int) -> str:
        keep = max(0, target_tokens) * CHARS_PER_TOKEN
        if len(content) <= keep:
            return content
        return content[:keep] + ELLIPSIS


class LLMCompressor:
    """Asks the language model for a shorter rendition; truncates if it cannot."""

    system_prompt = "You compress stored memories for an AI assistant without losing facts."

    def __init__(
        self,
        llm: LanguageModelProvider,
        fallback: Optional[ContentCompressor] = None,
    ):
        self.llm = llm
        self.fallback = fallback or TruncatingCompressor()

    def compress(self, content: str, target_tokens: int) -> str:
        max_chars = max(1, target_tokens) * CHARS_PER_TOKEN
        prompt = (
            f"Rewrite the following memory in at most {max_chars} characters. "
            "Keep names, numbers, decisions and outcomes; drop filler.\n\n"
            f"Memory:\n{content}"
        )
        try:
            compressed = self.llm.complete(
                prompt,
                system=self.system_prompt,
                max_tokens=max(1, target_tokens),
                temperature=0.2,
            )
        except LanguageModelError as exc:
            logger.warning("memory_compression_fallback", extra={"reason": str(exc)})
            return self.fallback.compress(content, target_tokens)
        compressed = compressed.strip()
        if not compressed:
            return self.fallback.compress(content, target_tokens)
        return compressed[:max_chars]


@dataclass(frozen=True)
class ContextWindowConfig:
    max_tokens: int = field(default_factory=lambda: config.CONTEXT_MAX_TOKENS)
    max_memories: int = field(default_factory=lambda: config.CONTEXT_MAX_MEMORIES)
    min_importance_threshold: float = field(default_factory=lambda: config.CONTEXT_MIN_IMPORTANCE)
    use_compression: bool = field(default_factory=lambda: config.CONTEXT_USE_COMPRESSION)
    compression_ratio: float = field(default_factory=lambda: config.CONTEXT_COMPRESSION_RATIO)

    def __post_init__(self):
        if self.max_tokens < 0:
            raise ValidationIssue("max_tokens must be >= 0", field="max_tokens", error_type="out_of_range")
        if self.max_memories < 0:
            raise ValidationIssue("max_memories must be >= 0", field="max_memories", error_type="out_of_range")
        if not 0.0 < self.compression_ratio <= 1.0:
            raise ValidationIssue(
                "compression_ratio must be in (0, 1]",
                field="compression_ratio",
                error_type="out_of_range",
            )


@dataclass(frozen=True)
class WindowMemory:
    memory: MemoryRecord
    importance: float
    content: str
    token_count: int
    compressed: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.memory.id,
            "memory_type": self.memory.memory_type,
            "importance": round(self.importance, 6),
            "content": self.content,
            "token_count": self.token_count,
            "compressed": self.compressed,
        }


@dataclass(frozen=True)
class ContextWindow:
    memories: tuple[WindowMemory, ...]
    total_tokens: int
    max_tokens: int
    query: Optional[str] = None
    truncated: bool = False
    candidate_count: int = 0

    @property
    def memory_count(self) -> int:
        return len(self.memories)

    @property
    def average_importance(self) -> float:
        if not self.memories:
            return 0.0
        return sum(item.importance for item in self.memories) / len(self.memories)

    @property
    def compressed_count(self) -> int:
        return sum(1 for item in self.memories if item.compressed)

    @property
    def utilization(self) -> float:
        if self.max_tokens <= 0:
            return 0.0
        return self.total_tokens / self.max_tokens

    @property
    def memory_ids(self) -> List[str]:
        return [item.memory.id for item in self.memories]

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "memories": [item.to_dict() for item in self.memories],
            "total_tokens": self.total_tokens,
            "memory_count": self.memory_count,
            "average_importance": round(self.average_importance, 6),
            "utilization": round(self.utilization, 6),
            "truncated": self.truncated,
            "candidate_count": self.candidate_count,
            "compressed_count": self.compressed_count,
        }


def empty_window(query: Optional[str] = None, max_tokens: int = 0) -> ContextWindow:
    return ContextWindow(memories=(), total_tokens=0, max_tokens=max_tokens, query=query)


class ContextWindowBuilder:
    def __init__(
        self,
        default_config: Optional[ContextWindowConfig] = None,
        token_estimator: TokenEstimator = estimate_tokens,
        compressor: Optional[ContentCompressor] = None,
    ):
        self.config = default_config or ContextWindowConfig()
        self.estimate = token_estimator
        self.compressor = compressor or TruncatingCompressor()

    def tokenize(self, scored: ScoredMemory, cfg: ContextWindowConfig) -> WindowMemory:
        content = scored.memory.content
        tokens = self.estimate(content)
        if cfg.use_compression:
            target = math.floor(tokens * cfg.compression_ratio)
            if tokens > target:
                candidate = self.compressor.compress(content, target)
                candidate_tokens = self.estimate(candidate)
                if candidate_tokens < tokens:
                    return WindowMemory(
                        memory=scored.memory,
                        importance=scored.importance,
                        content=candidate,
                        token_count=candidate_tokens,
                        compressed=True,
                    )
        return WindowMemory(
            memory=scored.memory,
            importance=scored.importance,
            content=content,
            token_count=tokens,
        )

    def build(
        self,
        scored: Sequence[ScoredMemory],
        query: Optional[str] = None,
        window_config: Optional[ContextWindowConfig] = None,
    ) -> ContextWindow:
        cfg = window_config or self.config
        eligible = [item for item in scored if item.importance >= cfg.min_importance_threshold]
        eligible.sort(key=lambda item: (-item.importance, item.memory.id))

        selected: List[WindowMemory] = []
        total = 0
        skipped = False
        for item in eligible:
            if len(selected) >= cfg.max_memories:
                skipped = True
                break
            tokenized = self.tokenize(item, cfg)
            if total + tokenized.token_count > cfg.max_tokens:
                skipped = True
                continue
            selected.append(tokenized)
            total += tokenized.token_count

        window = ContextWindow(
            memories=tuple(selected),
            total_tokens=total,
            max_tokens=cfg.max_tokens,
            query=query,
            truncated=skipped,
            candidate_count=len(eligible),
        )
        logger.info(
            "context_window_built",
            extra={
                "memory_count": window.memory_count,
                "total_tokens": window.total_tokens,
                "candidates": len(eligible),
                "truncated": skipped,
            },
        )
        return window

    @staticmethod
    def format_for_prompt(window: ContextWindow) -> str:
        if not window.memories:
            return EMPTY_CONTEXT_TEXT
        parts = [f"RELEVANT MEMORIES ({window.memory_count} items):\n\n"]
        for index, item in enumerate(window.memories, start=1):
            parts.append(
                f"[Memory {index}] Type: {item.memory.memory_type}, Importance: {item.importance:.2f}\n"
            )
            parts.append(f"{item.content}\n\n")
        return "".join(parts)


__all__ = [
    "ContentCompressor",
    "ContextWindow",
    "ContextWindowBuilder",
    "ContextWindowConfig",
    "EMPTY_CONTEXT_TEXT",
    "LLMCompressor",
    "TruncatingCompressor",
    "WindowMemory",
    "empty_window",
    "estimate_tokens",
]
