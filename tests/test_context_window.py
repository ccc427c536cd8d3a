import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import random

import pytest

from conftest import ScriptedLLM, make_record
from memoryweave.errors import LanguageModelError, ValidationIssue
from memoryweave.records import ScoredMemory
from memoryweave.services.context_window import (
    EMPTY_CONTEXT_TEXT,
    ContextWindowBuilder,
    ContextWindowConfig,
    LLMCompressor,
    TruncatingCompressor,
    estimate_tokens,
)


def _scored(memory_id, chars, importance, memory_type="observation"):
    return ScoredMemory(memory=make_record(memory_id, "x" * chars, memory_type=memory_type), importance=importance)


def _config(**overrides):
    values = dict(max_tokens=120, max_memories=10, min_importance_threshold=0.3, use_compression=False)
    values.update(overrides)
    return ContextWindowConfig(**values)


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_oversized_memory_is_skipped_and_smaller_one_still_fits():
    builder = ContextWindowBuilder(_config())
    window = builder.build([_scored("b", 200, 0.8), _scored("a", 400, 0.9), _scored("c", 40, 0.7)])

    assert window.memory_ids == ["a", "c"]
    assert window.total_tokens == 110
    assert window.total_tokens <= window.max_tokens
    assert window.truncated is True
    assert window.candidate_count == 3


def test_max_memories_caps_selection():
    builder = ContextWindowBuilder(_config(max_memories=1, max_tokens=1000))
    window = builder.build([_scored("a", 40, 0.9), _scored("b", 40, 0.8)])
    assert window.memory_ids == ["a"]
    assert window.truncated is True


def test_threshold_excludes_unimportant_memories():
    builder = ContextWindowBuilder(_config(max_tokens=1000))
    window = builder.build([_scored("a", 40, 0.9), _scored("b", 40, 0.2)])
    assert window.memory_ids == ["a"]
    assert window.truncated is False


def test_equal_importance_is_ordered_by_id():
    builder = ContextWindowBuilder(_config(max_tokens=1000))
    window = builder.build([_scored("m2", 8, 0.5), _scored("m1", 8, 0.5)])
    assert window.memory_ids == ["m1", "m2"]


def test_compression_shrinks_long_memories():
    builder = ContextWindowBuilder(_config(max_tokens=1000, use_compression=True, compression_ratio=0.5))
    window = builder.build([_scored("a", 400, 0.9)])
    item = window.memories[0]
    assert item.compressed is True
    assert item.content == "x" * 200 + "..."
    assert item.token_count == 51
    assert window.compressed_count == 1


@pytest.mark.parametrize("use_compression", [False, True])
def test_random_candidates_never_exceed_budget(use_compression):
    rng = random.Random(7)
    for _ in range(200):
        cfg = _config(
            max_tokens=rng.randint(1, 300),
            max_memories=rng.randint(1, 8),
            min_importance_threshold=rng.random() * 0.5,
            use_compression=use_compression,
            compression_ratio=rng.uniform(0.1, 1.0),
        )
        scored = [
            ScoredMemory(
                memory=make_record(f"m{i}", "w " * rng.randint(1, 400)),
                importance=rng.random(),
            )
            for i in range(rng.randint(0, 15))
        ]
        window = ContextWindowBuilder(cfg).build(scored)
        assert window.total_tokens <= cfg.max_tokens
        assert window.memory_count <= cfg.max_memories
        assert window.total_tokens == sum(item.token_count for item in window.memories)
        assert all(item.importance >= cfg.min_importance_threshold for item in window.memories)


def test_config_validation():
    with pytest.raises(ValidationIssue):
        ContextWindowConfig(compression_ratio=0.0)
    with pytest.raises(ValidationIssue):
        ContextWindowConfig(max_tokens=-1)


def test_format_for_prompt():
    builder = ContextWindowBuilder(_config(max_tokens=1000))
    first = ScoredMemory(memory=make_record("a", "Prefers email follow-ups", memory_type="preference"), importance=0.9)
    second = ScoredMemory(memory=make_record("b", "Chose the annual plan", memory_type="decision"), importance=0.456)
    text = builder.format_for_prompt(builder.build([first, second]))
    assert text == (
        "RELEVANT MEMORIES (2 items):\n\n"
        "[Memory 1] Type: preference, Importance: 0.90\n"
        "Prefers email follow-ups\n\n"
        "[Memory 2] Type: decision, Importance: 0.46\n"
        "Chose the annual plan\n\n"
    )


def test_empty_window_formats_placeholder():
    builder = ContextWindowBuilder(_config())
    assert builder.format_for_prompt(builder.build([])) == EMPTY_CONTEXT_TEXT


def test_llm_compressor_falls_back_to_truncation():
    llm = ScriptedLLM(LanguageModelError("language model unavailable: test"))
    compressor = LLMCompressor(llm)
    assert compressor.compress("y" * 100, 5) == TruncatingCompressor().compress("y" * 100, 5)


def test_llm_compressor_caps_output_length():
    llm = ScriptedLLM("z" * 500)
    assert LLMCompressor(llm).compress("y" * 100, 5) == "z" * 20
