import numpy as np
import pytest

from conftest import FakeEngine, make_batch, slot_vector
from prompt_embed.pooling import (
    EmbeddingArena,
    ManualStrategy,
    PooledStrategy,
    mean_pool,
    normalize_embedding,
    resolve_strategy,
)
from prompt_embed.types import MissingPolicy, PoolingMode


def _decoded(engine, batch):
    engine.clear_cache()
    engine.decode(batch)
    return engine


def test_normalize_gives_unit_norm():
    out = normalize_embedding([3.0, 4.0])

    np.testing.assert_allclose(out, [0.6, 0.8], rtol=1e-6)
    assert out.dtype == np.float32


def test_normalize_leaves_zero_vector():
    out = normalize_embedding(np.zeros(5))

    assert not np.isnan(out).any()
    np.testing.assert_array_equal(out, np.zeros(5, dtype=np.float32))


def test_mean_pool_is_componentwise_mean():
    out = mean_pool([[1.0, 2.0], [3.0, 6.0], [5.0, 1.0]])
    np.testing.assert_allclose(out, [3.0, 3.0])


def test_mean_pool_rejects_empty():
    with pytest.raises(ValueError, match="zero embeddings"):
        mean_pool(np.zeros((0, 3)))


def test_resolve_strategy():
    assert isinstance(resolve_strategy("pooled"), PooledStrategy)
    manual = resolve_strategy(PoolingMode.MANUAL, missing_policy="zero")
    assert isinstance(manual, ManualStrategy)
    assert manual.missing_policy == MissingPolicy.ZERO

    with pytest.raises(ValueError):
        resolve_strategy("median")


def test_pooled_rows_use_sequence_embedding_and_are_normalized():
    sequences = [[1, 10, 2], [1, 11, 12, 2]]
    batch = make_batch(sequences, capacity=16, all_outputs=False)
    engine = _decoded(FakeEngine(n_embd=4), batch)
    output = np.zeros((5, 4), dtype=np.float32)

    missing = PooledStrategy().extract_rows(engine, batch, output, first_row=2)

    assert missing == 0
    for seq_id, tokens in enumerate(sequences):
        raw = np.sum([slot_vector(t, p, 4) for p, t in enumerate(tokens)], axis=0)
        np.testing.assert_allclose(output[2 + seq_id], raw / np.linalg.norm(raw), rtol=1e-5)
        assert np.linalg.norm(output[2 + seq_id]) == pytest.approx(1.0, abs=1e-5)
    np.testing.assert_array_equal(output[[0, 1, 4]], 0.0)


def test_pooled_falls_back_to_last_token_embedding():
    sequences = [[1, 10, 2], [1, 11, 2]]
    batch = make_batch(sequences, capacity=8, all_outputs=False)
    engine = _decoded(FakeEngine(n_embd=3, sequence_pooling=False), batch)
    output = np.zeros((2, 3), dtype=np.float32)

    PooledStrategy().extract_rows(engine, batch, output, first_row=0)

    expected = normalize_embedding(slot_vector(2, 2, 3))
    np.testing.assert_allclose(output[0], expected, rtol=1e-6)
    np.testing.assert_allclose(output[1], expected, rtol=1e-6)


def test_pooled_missing_embedding_leaves_row_zero():
    batch = make_batch([[1, 10, 2], [1, 11, 2]], capacity=8, all_outputs=False)
    engine = _decoded(FakeEngine(n_embd=3, sequence_pooling=False, missing_slots={5}), batch)
    output = np.zeros((2, 3), dtype=np.float32)

    missing = PooledStrategy().extract_rows(engine, batch, output, first_row=0)

    assert missing == 1
    assert np.linalg.norm(output[0]) == pytest.approx(1.0, abs=1e-5)
    np.testing.assert_array_equal(output[1], 0.0)


def test_manual_rows_are_exact_unnormalized_means():
    sequences = [[1, 10, 11, 2], [1, 12, 2], [1, 2]]
    batch = make_batch(sequences, capacity=16, all_outputs=True)
    engine = _decoded(FakeEngine(n_embd=4), batch)
    output = np.zeros((3, 4), dtype=np.float32)

    missing = ManualStrategy().extract_rows(engine, batch, output, first_row=0)

    assert missing == 0
    for seq_id, tokens in enumerate(sequences):
        vectors = [slot_vector(t, p, 4) for p, t in enumerate(tokens)]
        np.testing.assert_allclose(output[seq_id], np.mean(vectors, axis=0), rtol=1e-6)
    assert np.linalg.norm(output[0]) > 1.0


def test_manual_single_token_sequences():
    batch = make_batch([[7], [8], [9]], capacity=4, all_outputs=True)
    engine = _decoded(FakeEngine(n_embd=2), batch)
    output = np.zeros((3, 2), dtype=np.float32)

    ManualStrategy().extract_rows(engine, batch, output, first_row=0)

    for seq_id, token in enumerate([7, 8, 9]):
        np.testing.assert_allclose(output[seq_id], slot_vector(token, 0, 2))


@pytest.mark.parametrize(
    ("policy", "divisor"),
    [(MissingPolicy.EXCLUDE, 2), (MissingPolicy.ZERO, 3)],
)
def test_manual_missing_policy(policy, divisor):
    tokens = [1, 10, 2]
    batch = make_batch([tokens], capacity=4, all_outputs=True)
    engine = _decoded(FakeEngine(n_embd=3, missing_slots={1}), batch)
    output = np.zeros((1, 3), dtype=np.float32)

    missing = ManualStrategy(policy).extract_rows(engine, batch, output, first_row=0)

    assert missing == 1
    expected = (slot_vector(1, 0, 3) + slot_vector(2, 2, 3)) / divisor
    np.testing.assert_allclose(output[0], expected, rtol=1e-6)


def test_manual_sequence_with_no_embeddings_stays_zero():
    batch = make_batch([[1, 2], [1, 10, 2]], capacity=8, all_outputs=True)
    engine = _decoded(FakeEngine(n_embd=2, missing_slots={0, 1}), batch)
    output = np.zeros((2, 2), dtype=np.float32)

    missing = ManualStrategy().extract_rows(engine, batch, output, first_row=0)

    assert missing == 2
    np.testing.assert_array_equal(output[0], 0.0)
    assert np.any(output[1] != 0.0)


def test_arena_is_released_on_error():
    arena = EmbeddingArena(4, 2)
    with pytest.raises(RuntimeError, match="boom"):
        with arena:
            arena.store(0, [1.0, 2.0])
            raise RuntimeError("boom")

    assert not arena.is_open
    with pytest.raises(RuntimeError, match="not open"):
        arena.store(0, [1.0, 2.0])


def test_arena_pool_respects_policy():
    with EmbeddingArena(3, 2) as arena:
        arena.store(0, [2.0, 4.0])
        arena.store(2, [4.0, 8.0])

        np.testing.assert_allclose(arena.pool(0, 3, MissingPolicy.EXCLUDE), [3.0, 6.0])
        np.testing.assert_allclose(arena.pool(0, 3, MissingPolicy.ZERO), [2.0, 4.0])
        assert arena.pool(1, 2, MissingPolicy.EXCLUDE) is None
