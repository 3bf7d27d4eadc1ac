"""
Tests for the embedding classifier: pooling, cosine similarity, anchor
thresholds and failure handling. The encoder is a deterministic stub.
"""

from __future__ import annotations

import json
import math
import shutil
from concurrent.futures import ThreadPoolExecutor

import pytest
import torch

from drive_copilot.config import RouterConfig
from drive_copilot.embedding import (
    EmbeddingClassifier,
    TransformerEmbeddingModel,
    cosine_similarity,
    load_anchors,
    mean_pool,
    placeholder_anchors,
)
from drive_copilot.errors import EmbeddingUnavailableError, InferenceError, VocabularyLoadError
from drive_copilot.schema import AnchorVector, RouteDecision

from .conftest import STUB_DIM


def _vec(*head: float) -> torch.Tensor:
    """Unit-length 8-d vector: given leading components, remainder on axis 3."""
    rest = math.sqrt(max(0.0, 1.0 - sum(x * x for x in head)))
    values = list(head) + [0.0] * (3 - len(head)) + [rest]
    values += [0.0] * (STUB_DIM - len(values))
    return torch.tensor(values, dtype=torch.float32)


# --- Vector helpers ---


def test_mean_pool_ignores_padding():
    vectors = torch.tensor([[1.0, 1.0], [3.0, 3.0], [100.0, 100.0]])

    pooled = mean_pool(vectors, [1, 1, 0])

    assert torch.allclose(pooled, torch.tensor([2.0, 2.0]))


def test_mean_pool_all_masked_is_zero():
    pooled = mean_pool(torch.ones(4, 3), [0, 0, 0, 0])

    assert torch.equal(pooled, torch.zeros(3))


def test_cosine_similarity():
    a = torch.tensor([1.0, 0.0])
    b = torch.tensor([0.0, 2.0])

    assert cosine_similarity(a, a * 3) == pytest.approx(1.0)
    assert cosine_similarity(a, b) == pytest.approx(0.0)
    assert cosine_similarity(a, -a) == pytest.approx(-1.0)


def test_cosine_similarity_zero_vector_is_finite():
    """A zero vector scores 0 instead of dividing by zero."""
    score = cosine_similarity(torch.zeros(3), torch.tensor([1.0, 2.0, 3.0]))

    assert score == 0.0


# --- Embedding ---


def test_embed_shape_and_idempotence(classifier):
    first = classifier.embed("brake now")
    second = classifier.embed("brake now")

    assert first.shape == (STUB_DIM,)
    assert torch.equal(first, second)


def test_embed_is_mean_of_real_token_vectors(classifier, tokenizer, stub_model):
    input_ids, mask = tokenizer.encode("what's the traffic like nearby?", 16)
    real = input_ids[:sum(mask)]

    expected = stub_model.table[real].mean(dim=0)

    assert torch.allclose(classifier.embed("what's the traffic like nearby?"), expected, atol=1e-5)


def test_embed_independent_of_padding_length(tokenizer, stub_model, basis_anchors):
    short = EmbeddingClassifier(tokenizer, stub_model, basis_anchors, RouterConfig(max_seq_len=16))
    long = EmbeddingClassifier(tokenizer, stub_model, basis_anchors, RouterConfig(max_seq_len=64))

    assert torch.allclose(short.embed("stop the road"), long.embed("stop the road"), atol=1e-5)


def test_embed_concurrent_calls_agree(classifier):
    expected = classifier.embed("unsafe road")

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(classifier.embed, ["unsafe road"] * 16))

    assert all(torch.equal(r, expected) for r in results)


def test_embed_model_failure_raises_inference_error(tokenizer, basis_anchors):
    def broken(ids, mask):
        raise RuntimeError("CUDA out of memory")

    clf = EmbeddingClassifier(tokenizer, broken, basis_anchors, RouterConfig(max_seq_len=16))

    with pytest.raises(InferenceError):
        clf.embed("brake")


@pytest.mark.parametrize("bad_output", [
    torch.zeros(STUB_DIM),        # not per-position
    torch.zeros(5, STUB_DIM),     # wrong sequence length
    torch.zeros(1, 16, STUB_DIM),  # batch dimension left in
])
def test_embed_unexpected_shape_raises_inference_error(tokenizer, basis_anchors, bad_output):
    clf = EmbeddingClassifier(tokenizer, lambda ids, mask: bad_output, basis_anchors,
                              RouterConfig(max_seq_len=16))

    with pytest.raises(InferenceError):
        clf.embed("brake")


# --- Classification ---


def test_cloud_anchor_wins_when_online(classifier):
    decision, score = classifier.classify_with_score(_vec(0.0, 0.0, 1.0), True, 30.0)

    assert decision == RouteDecision.AGENT_CLOUD
    assert score == pytest.approx(1.0)


def test_cloud_anchor_skipped_offline(classifier):
    assert classifier.classify(_vec(0.0, 0.0, 1.0), False, 30.0) == RouteDecision.AGENT_LOCAL


def test_weak_cloud_match_stays_local(classifier):
    """Best anchor is cloud but similarity 0.35 is below 0.4."""
    assert classifier.classify(_vec(0.3, 0.2, 0.35), True, 30.0) == RouteDecision.AGENT_LOCAL


def test_safety_threshold_drops_at_high_speed(classifier):
    """Similarity 0.45 to safety: accepted above 60 km/h only."""
    vector = _vec(0.45, 0.3, 0.3)

    assert classifier.classify(vector, True, 70.0) == RouteDecision.AGENT_SAFETY
    assert classifier.classify(vector, True, 60.0) == RouteDecision.AGENT_LOCAL
    assert classifier.classify(vector, True, 30.0) == RouteDecision.AGENT_LOCAL


def test_strong_safety_match_at_low_speed(classifier):
    assert classifier.classify(_vec(0.8, 0.1, 0.1), True, 10.0) == RouteDecision.AGENT_SAFETY


def test_local_anchor(classifier):
    assert classifier.classify(_vec(0.1, 0.9, 0.1), True, 10.0) == RouteDecision.AGENT_LOCAL


def test_anchor_with_wrong_dimension_is_skipped(tokenizer, stub_model, basis_anchors):
    anchors = basis_anchors[:2] + [AnchorVector(RouteDecision.AGENT_CLOUD, (1.0, 0.0, 0.0))]
    clf = EmbeddingClassifier(tokenizer, stub_model, anchors)

    assert clf.classify(_vec(0.0, 0.0, 1.0), True, 30.0) == RouteDecision.AGENT_LOCAL


def test_classify_text_picks_nearest_anchor(tokenizer, stub_model):
    """Anchors built from phrase embeddings send each phrase to its own agent."""
    encoder = EmbeddingClassifier(tokenizer, stub_model, [], RouterConfig(max_seq_len=16))
    anchors = [
        AnchorVector(RouteDecision.AGENT_SAFETY, tuple(encoder.embed("brake now !").tolist())),
        AnchorVector(RouteDecision.AGENT_LOCAL, tuple(encoder.embed("what's the traffic like nearby?").tolist())),
    ]
    clf = EmbeddingClassifier(tokenizer, stub_model, anchors, RouterConfig(max_seq_len=16))

    assert clf.classify_text("brake now !", True, 10.0) == RouteDecision.AGENT_SAFETY
    assert clf.classify_text("what's the traffic like nearby?", True, 10.0) == RouteDecision.AGENT_LOCAL


# --- Anchors and loading ---


def test_placeholder_anchors():
    anchors = placeholder_anchors()

    assert [a.label for a in anchors] == [
        RouteDecision.AGENT_SAFETY, RouteDecision.AGENT_LOCAL, RouteDecision.AGENT_CLOUD,
    ]
    assert all(a.dim == 384 for a in anchors)


def test_load_anchors_from_json(tmp_path):
    path = tmp_path / "anchors.json"
    path.write_text(json.dumps({
        "AGENT_SAFETY": [1.0, 0.0],
        "AGENT_LOCAL": [0.0, 1.0],
        "AGENT_CLOUD": [0.5, 0.5],
    }), encoding="utf-8")

    anchors = load_anchors(path)

    assert {a.label for a in anchors} == set(RouteDecision)
    assert anchors[0].vector == (1.0, 0.0)


@pytest.mark.parametrize("content", [
    '{"AGENT_UNKNOWN": [1.0]}',
    '{"AGENT_SAFETY": ["x"]}',
    "[1, 2, 3]",
    "{}",
    "not json",
])
def test_load_anchors_rejects_bad_files(tmp_path, content):
    path = tmp_path / "anchors.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(EmbeddingUnavailableError):
        load_anchors(path)


def test_load_anchors_missing_file(tmp_path):
    with pytest.raises(EmbeddingUnavailableError):
        load_anchors(tmp_path / "missing.json")


def test_from_config_missing_vocab(tmp_path):
    """A missing vocabulary is an initialization failure."""
    config = RouterConfig(vocab_path=str(tmp_path / "missing-vocab.txt"))

    with pytest.raises(VocabularyLoadError):
        EmbeddingClassifier.from_config(config)


def test_transformer_model_returns_per_token_vectors(tiny_bert_dir):
    """Hidden states come back as [seq_len, dim] on the CPU."""
    model = TransformerEmbeddingModel(str(tiny_bert_dir))
    ids = torch.tensor([2, 4, 5, 3, 0, 0], dtype=torch.long)
    mask = torch.tensor([1, 1, 1, 1, 0, 0], dtype=torch.long)

    vectors = model(ids, mask)

    assert vectors.shape == (6, STUB_DIM)
    assert vectors.dtype == torch.float32
    assert not model.model.training


def test_from_config_with_local_model_embeds(tiny_bert_config):
    """Vocabulary, weights and placeholder anchors all load from the model dir."""
    clf = EmbeddingClassifier.from_config(tiny_bert_config)

    first = clf.embed("brake now !")
    second = clf.embed("brake now !")

    assert first.shape == (STUB_DIM,)
    assert torch.allclose(first, second)
    assert clf.classify_text("what's the traffic like nearby?", True, 30.0) in set(RouteDecision)


def test_model_on_unknown_device_is_unavailable(tiny_bert_dir):
    with pytest.raises(EmbeddingUnavailableError):
        TransformerEmbeddingModel(str(tiny_bert_dir), device="not-a-device")


def test_corrupt_weights_are_unavailable(tiny_bert_dir, tmp_path):
    broken = tmp_path / "broken-bert"
    shutil.copytree(tiny_bert_dir, broken)
    for weights in list(broken.glob("*.safetensors")) + list(broken.glob("*.bin")):
        weights.write_bytes(b"\xff" * 64)

    with pytest.raises(EmbeddingUnavailableError):
        TransformerEmbeddingModel(str(broken))


def test_from_files_missing_vocab(tmp_path):
    with pytest.raises(EmbeddingUnavailableError):
        EmbeddingClassifier.from_files(tmp_path / "vocab.txt", "sentence-transformers/all-MiniLM-L6-v2")
