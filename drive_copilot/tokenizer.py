"""
WordPiece tokenizer for the embedding tier.

Text -> basic tokens (lowercase, accents stripped, punctuation split)
     -> WordPiece sub-tokens (greedy longest match, "##" continuations)
     -> [CLS] ... [SEP] -> IDs -> padded/truncated (input_ids, attention_mask)
"""

import logging
import unicodedata
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple, Union

from .errors import VocabularyLoadError

logger = logging.getLogger(__name__)

UNK_TOKEN = "[UNK]"
CLS_TOKEN = "[CLS]"
SEP_TOKEN = "[SEP]"
PAD_TOKEN = "[PAD]"
CONTINUATION_PREFIX = "##"


def load_vocab(path: Union[str, Path]) -> Dict[str, int]:
    """
    Read a flat vocabulary file (one token per line).

    IDs follow the order of non-blank lines.

    Raises:
        VocabularyLoadError: file missing, unreadable or without tokens
    """
    vocab: Dict[str, int] = {}
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                token = line.strip()
                if token and token not in vocab:
                    vocab[token] = len(vocab)
    except (OSError, UnicodeDecodeError) as e:
        raise VocabularyLoadError(f"Failed to load vocabulary from {path}: {e}") from e

    if not vocab:
        raise VocabularyLoadError(f"Vocabulary {path} contains no tokens")

    logger.debug("Loaded vocab size: %d", len(vocab))
    return vocab


def is_punctuation(char: str) -> bool:
    code = ord(char)
    return (
        33 <= code <= 47
        or 58 <= code <= 64
        or 91 <= code <= 96
        or 123 <= code <= 126
    )


def strip_accents(text: str) -> str:
    """NFD-decompose and drop combining marks."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if unicodedata.category(c) != "Mn")


class WordPieceTokenizer:
    """
    BERT-style uncased tokenizer over a fixed vocabulary.
    """

    def __init__(self, vocab: Union[Mapping[str, int], Sequence[str]]):
        if isinstance(vocab, Mapping):
            self.vocab: Dict[str, int] = dict(vocab)
        else:
            self.vocab = {}
            for token in vocab:
                if token not in self.vocab:
                    self.vocab[token] = len(self.vocab)

        if not self.vocab:
            raise VocabularyLoadError("Vocabulary is empty")

        self.ids_to_tokens = {i: t for t, i in self.vocab.items()}
        self.unk_id = self.vocab.get(UNK_TOKEN, 0)
        self.pad_id = self.vocab.get(PAD_TOKEN, 0)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "WordPieceTokenizer":
        return cls(load_vocab(path))

    @property
    def vocab_size(self) -> int:
        return len(self.vocab)

    # ---------- Basic tokenization ----------

    def basic_tokenize(self, text: str) -> List[str]:
        """Lowercase, strip accents, split on whitespace and punctuation."""
        clean = strip_accents(text.lower())
        tokens: List[str] = []
        current: List[str] = []

        for char in clean:
            if is_punctuation(char):
                if current:
                    tokens.append("".join(current))
                    current = []
                tokens.append(char)
            elif char.isspace():
                if current:
                    tokens.append("".join(current))
                    current = []
            else:
                current.append(char)

        if current:
            tokens.append("".join(current))
        return tokens

    # ---------- WordPiece ----------

    def wordpiece_tokenize(self, token: str) -> List[str]:
        """
        Split one basic token into vocabulary pieces.

        Greedy longest-prefix match. If any position has no match the whole
        token becomes [UNK].
        """
        if not token:
            return []

        pieces: List[str] = []
        start = 0
        while start < len(token):
            end = len(token)
            match = None
            while start < end:
                candidate = token[start:end]
                if start > 0:
                    candidate = CONTINUATION_PREFIX + candidate
                if candidate in self.vocab:
                    match = candidate
                    break
                end -= 1

            if match is None:
                return [UNK_TOKEN]

            pieces.append(match)
            start = end

        return pieces

    # ---------- Encoding ----------

    def tokenize(self, text: str) -> List[str]:
        """Symbols for text, including [CLS] and [SEP]."""
        symbols = [CLS_TOKEN]
        for token in self.basic_tokenize(text):
            symbols.extend(self.wordpiece_tokenize(token))
        symbols.append(SEP_TOKEN)
        return symbols

    def convert_tokens_to_ids(self, tokens: Iterable[str]) -> List[int]:
        return [self.vocab.get(token, self.unk_id) for token in tokens]

    def encode(self, text: str, max_len: int = 128) -> Tuple[List[int], List[int]]:
        """
        Encode text into fixed-length model inputs.

        Args:
            text: Raw driver query
            max_len: Output length; longer sequences are truncated

        Returns:
            (input_ids, attention_mask), both of length max_len. The mask is
            1 for real tokens and 0 for padding.
        """
        if max_len < 1:
            raise ValueError(f"max_len must be positive, got {max_len}")

        token_ids = self.convert_tokens_to_ids(self.tokenize(text))[:max_len]
        padding = max_len - len(token_ids)

        input_ids = token_ids + [self.pad_id] * padding
        attention_mask = [1] * len(token_ids) + [0] * padding
        return input_ids, attention_mask
