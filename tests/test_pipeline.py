import logging

import numpy as np
import pytest

from conftest import FakeEngine, slot_vector
from prompt_embed.pipeline import EmbeddingPipeline, embed_prompts
from prompt_embed.pooling import ManualStrategy, PooledStrategy, normalize_embedding
from prompt_embed.tokens import tokenize_prompts
from prompt_embed.types import TokenLimitExceeded


def _expected_manual_rows(engine, prompts, capacity):
    rows = []
    for tokens in tokenize_prompts(engine, prompts, capacity):
        rows.append(np.mean([slot_vector(t, p, engine.n_embd) for p, t in enumerate(tokens)], axis=0))
    return np.array(rows, dtype=np.float32)


def test_two_prompts_share_one_decode(fake_engine):
    embeddings, stats = embed_prompts(fake_engine, ["hello", "world"], batch_size=16)

    assert embeddings.shape == (2, fake_engine.n_embd)
    assert stats.n_batches == 1
    assert len(fake_engine.decoded) == 1
    assert sorted(set(fake_engine.decoded[0]["seq_ids"])) == [0, 1]
    assert all(np.linalg.norm(row) == pytest.approx(1.0, abs=1e-5) for row in embeddings)


def test_flush_boundary_at_overflow():
    engine = FakeEngine()
    # Each prompt is BOS + 4 chars + SEP = 6 tokens.
    embeddings, stats = embed_prompts(engine, ["aaaa", "bbbb", "cccc"], batch_size=8)

    assert stats.n_batches == 3
    assert [len(call["tokens"]) for call in engine.decoded] == [6, 6, 6]
    assert embeddings.shape == (3, engine.n_embd)


def test_cache_is_cleared_before_every_decode():
    engine = FakeEngine()
    embed_prompts(engine, ["aaaa", "bbbb", "cccc"], batch_size=8)

    assert engine.events == ["clear", "decode"] * 3


@pytest.mark.parametrize("batch_size", [8, 11, 16, 64])
def test_rows_follow_prompt_order_for_any_batching(batch_size):
    prompts = ["a", "bb", "cccc", "", "dddddd", "ee", "f"]
    engine = FakeEngine(n_embd=3)

    embeddings, _ = embed_prompts(
        engine,
        prompts,
        batch_size=batch_size,
        strategy=ManualStrategy(),
    )

    np.testing.assert_allclose(embeddings, _expected_manual_rows(engine, prompts, batch_size), rtol=1e-6)


def test_pooled_rows_match_regardless_of_batching():
    prompts = ["alpha", "beta", "gamma", "delta"]
    small, _ = embed_prompts(FakeEngine(), prompts, batch_size=8)
    large, _ = embed_prompts(FakeEngine(), prompts, batch_size=64)

    np.testing.assert_allclose(small, large, rtol=1e-6)


def test_manual_mode_marks_every_slot_in_every_batch():
    engine = FakeEngine()
    embed_prompts(engine, ["aaaa", "bbbb", "cccc"], batch_size=8, strategy=ManualStrategy())

    assert len(engine.decoded) == 3
    assert all(all(call["output"]) for call in engine.decoded)


def test_pooled_mode_marks_last_slot_only():
    engine = FakeEngine()
    embed_prompts(engine, ["ab", "c"], batch_size=16, strategy=PooledStrategy())

    assert engine.decoded[0]["output"] == [False, False, False, True, False, False, True]


def test_decode_failure_is_recoverable(caplog):
    engine = FakeEngine(fail_on={1})

    with caplog.at_level(logging.ERROR, logger="prompt_embed.pipeline"):
        embeddings, stats = embed_prompts(engine, ["aaaa", "bbbb", "cccc"], batch_size=8)

    assert stats.n_batches == 3
    assert stats.failed_batches == 1
    assert stats.missing_embeddings == 1
    assert np.linalg.norm(embeddings[0]) == pytest.approx(1.0, abs=1e-5)
    np.testing.assert_array_equal(embeddings[1], 0.0)
    assert np.linalg.norm(embeddings[2]) == pytest.approx(1.0, abs=1e-5)
    assert "failed to decode batch for rows [1, 2)" in caplog.text


def test_token_limit_aborts_before_decoding():
    engine = FakeEngine()

    with pytest.raises(TokenLimitExceeded):
        embed_prompts(engine, ["ok", "this line is too long"], batch_size=8)

    assert engine.decoded == []


def test_no_prompts_produces_empty_matrix(fake_engine):
    embeddings, stats = embed_prompts(fake_engine, [], batch_size=8)

    assert embeddings.shape == (0, fake_engine.n_embd)
    assert stats.n_batches == 0
    assert fake_engine.decoded == []


def test_stats_count_tokens():
    _, stats = embed_prompts(FakeEngine(), ["ab", "c"], batch_size=16)

    assert stats.n_prompts == 2
    assert stats.n_tokens == 7
    assert stats.to_json()["n_embd"] == 4


def test_training_context_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="prompt_embed.pipeline"):
        EmbeddingPipeline(FakeEngine(n_ctx_train=16), batch_size=32, show_progress=False)

    assert "model was trained on only 16 context tokens (32 specified)" in caplog.text


def test_pooled_row_of_single_prompt_matches_expected():
    engine = FakeEngine(n_embd=2)
    embeddings, _ = embed_prompts(engine, ["x"], batch_size=8)

    tokens = tokenize_prompts(engine, ["x"], 8)[0]
    raw = np.sum([slot_vector(t, p, 2) for p, t in enumerate(tokens)], axis=0)
    np.testing.assert_allclose(embeddings[0], normalize_embedding(raw), rtol=1e-6)
