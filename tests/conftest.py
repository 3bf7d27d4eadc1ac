"""
Pytest fixtures for the copilot decision core: toy vocabulary, deterministic
stub embedding model, fast fusion engine.
"""

from __future__ import annotations

import pytest
import torch

from drive_copilot.config import FusionConfig, RouterConfig, reset_config_cache
from drive_copilot.embedding import EmbeddingClassifier
from drive_copilot.fusion import HazardFusionEngine
from drive_copilot.schema import AnchorVector, RouteDecision
from drive_copilot.tokenizer import WordPieceTokenizer

TOY_VOCAB = [
    "[PAD]", "[UNK]", "[CLS]", "[SEP]",
    "brake", "now", "stop", "the", "traffic", "like", "nearby",
    "what", "s", "play", "##ing", "##s", "road", "cafe", "un", "##safe",
    "!", "?", "'", ",", ".",
]

STUB_DIM = 8


class StubEmbeddingModel:
    """Fixed random table lookup: one vector per token ID."""

    def __init__(self, vocab_size: int, dim: int = STUB_DIM, seed: int = 0):
        generator = torch.Generator().manual_seed(seed)
        self.table = torch.randn(vocab_size, dim, generator=generator)
        self.calls = 0

    def __call__(self, input_ids: torch.Tensor, attention_mask: torch.Tensor) -> torch.Tensor:
        self.calls += 1
        return self.table[input_ids]


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    """Each test sees defaults, not a cached config or COPILOT_* env."""
    for name in (
        "COPILOT_HAZARD_THRESHOLD", "COPILOT_DECAY_SECONDS", "COPILOT_MODEL_NAME",
        "COPILOT_VOCAB_PATH", "COPILOT_ANCHORS_PATH", "COPILOT_TIER2_TIMEOUT",
        "COPILOT_SEMANTIC_TIER", "COPILOT_DEVICE", "COPILOT_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config_cache()
    yield
    reset_config_cache()


@pytest.fixture
def tokenizer():
    return WordPieceTokenizer(TOY_VOCAB)


@pytest.fixture
def stub_model(tokenizer):
    return StubEmbeddingModel(tokenizer.vocab_size)


@pytest.fixture
def basis_anchors():
    """Safety, local and cloud anchors on the first three axes."""
    def axis(i: int):
        return tuple(1.0 if j == i else 0.0 for j in range(STUB_DIM))

    return [
        AnchorVector(RouteDecision.AGENT_SAFETY, axis(0)),
        AnchorVector(RouteDecision.AGENT_LOCAL, axis(1)),
        AnchorVector(RouteDecision.AGENT_CLOUD, axis(2)),
    ]


@pytest.fixture
def classifier(tokenizer, stub_model, basis_anchors):
    return EmbeddingClassifier(tokenizer, stub_model, basis_anchors, RouterConfig(max_seq_len=16))


@pytest.fixture(scope="session")
def tiny_bert_dir(tmp_path_factory):
    """Randomly initialized one-layer BERT saved locally with the toy vocabulary."""
    from transformers import BertConfig, BertModel

    model_dir = tmp_path_factory.mktemp("tiny-bert")
    config = BertConfig(
        vocab_size=len(TOY_VOCAB),
        hidden_size=STUB_DIM,
        num_hidden_layers=1,
        num_attention_heads=2,
        intermediate_size=16,
        max_position_embeddings=32,
    )
    torch.manual_seed(0)
    BertModel(config).save_pretrained(model_dir)
    (model_dir / "vocab.txt").write_text("\n".join(TOY_VOCAB), encoding="utf-8")
    return model_dir


@pytest.fixture
def tiny_bert_config(tiny_bert_dir):
    """Router settings that load the tiny model from disk."""
    return RouterConfig(model_name=str(tiny_bert_dir), embedding_dim=STUB_DIM, max_seq_len=16)


@pytest.fixture
def engine():
    """Running fusion engine with a short decay window."""
    eng = HazardFusionEngine(FusionConfig(decay_seconds=1.0))
    eng.start()
    yield eng
    eng.stop()
