"""
Embedding Classifier (Tier 2 of the router)

text -> tokenizer -> embedding model (one vector per position)
     -> mean pooling over real tokens -> cosine similarity vs anchor vectors
     -> RouteDecision

The model is any callable mapping (input_ids, attention_mask) to a
[seq_len, dim] tensor. TransformerEmbeddingModel wraps a Hugging Face
sentence encoder; tests plug in a deterministic stub.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

import torch

from .config import RouterConfig
from .errors import EmbeddingUnavailableError, InferenceError
from .schema import AnchorVector, RouteDecision
from .tokenizer import WordPieceTokenizer

logger = logging.getLogger(__name__)

COSINE_EPS = 1e-8


class EmbeddingModel(Protocol):
    def __call__(self, input_ids: torch.Tensor, attention_mask: torch.Tensor) -> torch.Tensor: ...


class TransformerEmbeddingModel:
    """
    Hugging Face encoder returning per-token hidden states.
    """

    def __init__(self, model_name: str, device: str = "cpu"):
        self.model_name = model_name
        self.device = device

        logger.info("Loading embedding model: %s", model_name)
        # Corrupt weights and bad devices fail with library-specific errors
        try:
            from transformers import AutoModel

            model = AutoModel.from_pretrained(model_name)
            model.to(device)
            model.eval()
        except Exception as e:
            raise EmbeddingUnavailableError(f"Failed to load embedding model {model_name} on {device}: {e}") from e

        self.model = model
        logger.info("Embedding model loaded (hidden size %s)", getattr(self.model.config, "hidden_size", "?"))

    def __call__(self, input_ids: torch.Tensor, attention_mask: torch.Tensor) -> torch.Tensor:
        ids = input_ids.unsqueeze(0).to(self.device)
        mask = attention_mask.unsqueeze(0).to(self.device)

        with torch.no_grad():
            outputs = self.model(
                input_ids=ids,
                attention_mask=mask,
                token_type_ids=torch.zeros_like(ids),
            )

        # [batch, seq, hidden] -> [seq, hidden]
        return outputs.last_hidden_state[0].float().cpu()


def resolve_vocab_path(model_name: str, vocab_path: Optional[str] = None) -> Path:
    """Explicit path, else vocab.txt of a local model dir, else from the hub."""
    if vocab_path:
        return Path(vocab_path)

    local = Path(model_name)
    if local.is_dir():
        return local / "vocab.txt"

    try:
        from huggingface_hub import hf_hub_download

        return Path(hf_hub_download(repo_id=model_name, filename="vocab.txt"))
    except Exception as e:
        raise EmbeddingUnavailableError(f"Could not fetch vocab.txt for {model_name}: {e}") from e


# ---------- Vector helpers ----------


def mean_pool(token_vectors: torch.Tensor, attention_mask: Union[Sequence[int], torch.Tensor]) -> torch.Tensor:
    """Collapse [seq, dim] to [dim] by averaging positions where mask == 1."""
    mask = torch.as_tensor(attention_mask, dtype=token_vectors.dtype).unsqueeze(-1)
    valid = float(mask.sum())
    if valid == 0:
        return torch.zeros(token_vectors.shape[-1], dtype=token_vectors.dtype)
    return (token_vectors * mask).sum(dim=0) / valid


def cosine_similarity(a: torch.Tensor, b: torch.Tensor) -> float:
    denom = float(a.norm() * b.norm())
    if denom == 0:
        denom = COSINE_EPS
    return float(torch.dot(a, b)) / denom


# ---------- Anchors ----------


def placeholder_anchors(dim: int = 384) -> List[AnchorVector]:
    """Constant stand-ins until real centroids are computed offline."""
    return [
        AnchorVector(RouteDecision.AGENT_SAFETY, (0.01,) * dim),
        AnchorVector(RouteDecision.AGENT_LOCAL, (0.05,) * dim),
        AnchorVector(RouteDecision.AGENT_CLOUD, (0.10,) * dim),
    ]


def load_anchors(path: Union[str, Path]) -> List[AnchorVector]:
    """
    Read anchors from JSON: {"AGENT_SAFETY": [...], "AGENT_LOCAL": [...], ...}

    Raises:
        EmbeddingUnavailableError: unreadable file, unknown label or bad vector
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        anchors = [
            AnchorVector(RouteDecision(label), tuple(float(x) for x in vector))
            for label, vector in data.items()
        ]
    except (OSError, ValueError, TypeError, AttributeError) as e:
        raise EmbeddingUnavailableError(f"Failed to load anchors from {path}: {e}") from e

    if not anchors:
        raise EmbeddingUnavailableError(f"No anchors in {path}")
    return anchors


# ---------- Classifier ----------


class EmbeddingClassifier:
    """
    Semantic fallback: nearest anchor by cosine similarity, with
    speed-dependent safety acceptance and connectivity-gated cloud routing.
    """

    def __init__(
        self,
        tokenizer: WordPieceTokenizer,
        model: EmbeddingModel,
        anchors: Sequence[AnchorVector],
        config: Optional[RouterConfig] = None,
    ):
        self.tokenizer = tokenizer
        self.model = model
        self.config = config or RouterConfig()
        self.anchors: Dict[RouteDecision, torch.Tensor] = {
            anchor.label: torch.tensor(anchor.vector, dtype=torch.float32) for anchor in anchors
        }
        # One model instance shared by concurrent routes
        self._model_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[RouterConfig] = None) -> "EmbeddingClassifier":
        """
        Build tokenizer, model and anchors from configuration.

        Raises:
            EmbeddingUnavailableError: any of the three could not be loaded
        """
        config = config or RouterConfig()
        tokenizer = WordPieceTokenizer.from_file(resolve_vocab_path(config.model_name, config.vocab_path))
        model = TransformerEmbeddingModel(config.model_name, device=config.device)

        if config.anchors_path:
            anchors = load_anchors(config.anchors_path)
        else:
            logger.warning("No anchors configured, using placeholder anchors")
            anchors = placeholder_anchors(config.embedding_dim)

        return cls(tokenizer, model, anchors, config)

    @classmethod
    def from_files(cls, vocab_path: Union[str, Path], model_name: str,
                   anchors_path: Optional[Union[str, Path]] = None,
                   config: Optional[RouterConfig] = None) -> "EmbeddingClassifier":
        """Build from explicit locations; thresholds come from config."""
        config = (config or RouterConfig()).model_copy(update={
            "vocab_path": str(vocab_path),
            "model_name": model_name,
            "anchors_path": str(anchors_path) if anchors_path else None,
        })
        return cls.from_config(config)

    def embed(self, text: str) -> torch.Tensor:
        """
        Sentence vector for text.

        Raises:
            InferenceError: the model failed or returned an unexpected shape
        """
        input_ids, attention_mask = self.tokenizer.encode(text, self.config.max_seq_len)
        ids = torch.tensor(input_ids, dtype=torch.long)
        mask = torch.tensor(attention_mask, dtype=torch.long)

        try:
            with self._model_lock:
                token_vectors = self.model(ids, mask)
        except Exception as e:
            raise InferenceError(f"Embedding inference failed: {e}") from e

        token_vectors = torch.as_tensor(token_vectors, dtype=torch.float32)
        if token_vectors.dim() != 2 or token_vectors.shape[0] != len(attention_mask):
            raise InferenceError(f"Unexpected embedding shape {tuple(token_vectors.shape)}")

        return mean_pool(token_vectors, mask)

    def classify(self, vector: torch.Tensor, has_connectivity: bool, speed: float) -> RouteDecision:
        return self.classify_with_score(vector, has_connectivity, speed)[0]

    def classify_with_score(self, vector: torch.Tensor, has_connectivity: bool,
                            speed: float) -> Tuple[RouteDecision, float]:
        """Returns the accepted route and the best anchor similarity."""
        cfg = self.config
        best_route = RouteDecision.AGENT_LOCAL
        best_score = -1.0

        for label, anchor in self.anchors.items():
            if label == RouteDecision.AGENT_CLOUD and not has_connectivity:
                continue
            if anchor.shape[0] != vector.shape[0]:
                continue
            score = cosine_similarity(vector, anchor)
            if score > best_score:
                best_score = score
                best_route = label

        safety_threshold = cfg.safety_threshold_high_speed if speed > cfg.high_speed_kmh else cfg.safety_threshold
        logger.debug("Tier 2 best anchor %s (%.3f)", best_route.value, best_score)

        if best_route == RouteDecision.AGENT_SAFETY and best_score > safety_threshold:
            return RouteDecision.AGENT_SAFETY, best_score
        if best_route == RouteDecision.AGENT_CLOUD and has_connectivity and best_score > cfg.cloud_threshold:
            return RouteDecision.AGENT_CLOUD, best_score
        return RouteDecision.AGENT_LOCAL, best_score

    def classify_text(self, text: str, has_connectivity: bool, speed: float) -> RouteDecision:
        return self.classify(self.embed(text), has_connectivity, speed)
