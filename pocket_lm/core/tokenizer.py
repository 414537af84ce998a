"""
pocket-lm :: Tokenizer

text ↔ token ids.

  WordTokenizer:    lower-case, punctuation isolated, whitespace split,
                    fixed word vocabulary, unknowns → <unk>. The default.
  CharTokenizer:    one id per character over a printable charset.
  SubwordTokenizer: HuggingFace fast tokenizer (tokenizer.json).

All three share the Tokenizer interface, so the decode loop never
knows which one it is talking to. Decoding is lossy: casing and
the input's whitespace are not restored.

INL - 2025
"""

import re
from typing import Dict, Iterable, List, Optional

PAD_TOKEN = "<pad>"
UNK_TOKEN = "<unk>"
BOS_TOKEN = "<s>"
EOS_TOKEN = "</s>"
MASK_TOKEN = "<mask>"

SPECIAL_TOKENS = [PAD_TOKEN, UNK_TOKEN, BOS_TOKEN, EOS_TOKEN, MASK_TOKEN]

# Dropped on decode
SENTINELS = frozenset([PAD_TOKEN, BOS_TOKEN, EOS_TOKEN])

DEFAULT_WORDS = [
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "I", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them",
    "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "may", "might", "can", "must",
    "not", "no", "yes", "please", "thank", "hello", "goodbye", "sorry",
    ".", ",", "!", "?", ":", ";", '"', "'", "(", ")", "[", "]", "{", "}",
    "0", "1", "2", "3", "4", "5", "6", "7", "8", "9",
]

DEFAULT_CHARSET = (
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789 .,!?;:'\"-()[]{}"
)

# What <unk> decodes to in character mode; re-encodes to <unk>
UNK_CHAR = "\ufffd"

_PUNCT_RE = re.compile(r"""([.!?,:;'"()\[\]{}])""")
_WS_RE = re.compile(r"\s+")


class Vocabulary:
    """
    token ↔ id tables, built once.

    Ids need not be contiguous; vocab_size is the id space (max id + 1)
    so every emitted id is in [0, vocab_size). Growth is append-only.
    """

    def __init__(self, token_to_id: Dict[str, int], unk_token: str = UNK_TOKEN):
        if unk_token not in token_to_id:
            raise ValueError(f"Vocabulary must reserve an id for {unk_token}")
        self.token_to_id: Dict[str, int] = {}
        self.id_to_token: Dict[int, str] = {}
        for token, idx in token_to_id.items():
            idx = int(idx)
            if idx < 0:
                raise ValueError(f"Negative token id {idx} for {token!r}")
            if idx in self.id_to_token:
                raise ValueError(f"Token id {idx} assigned twice ({self.id_to_token[idx]!r}, {token!r})")
            self.token_to_id[token] = idx
            self.id_to_token[idx] = token
        self.unk_token = unk_token
        self.unk_id = self.token_to_id[unk_token]

    @staticmethod
    def from_tokens(tokens: Iterable[str]) -> "Vocabulary":
        """Ids assigned in order. Duplicates keep their first id."""
        table: Dict[str, int] = {}
        for token in tokens:
            if token not in table:
                table[token] = len(table)
        return Vocabulary(table)

    @staticmethod
    def default() -> "Vocabulary":
        """The built-in word list, lower-cased to match encode()."""
        return Vocabulary.from_tokens(SPECIAL_TOKENS + [w.lower() for w in DEFAULT_WORDS])

    def __len__(self) -> int:
        return len(self.token_to_id)

    def __contains__(self, token: str) -> bool:
        return token in self.token_to_id

    @property
    def size(self) -> int:
        return max(self.id_to_token) + 1

    def lookup(self, token: str) -> int:
        return self.token_to_id.get(token, self.unk_id)

    def token(self, idx: int) -> str:
        return self.id_to_token.get(idx, self.unk_token)

    def add_tokens(self, tokens: Iterable[str]) -> int:
        """Append unseen tokens after the current max id. Returns how many were added."""
        next_id = self.size
        added = 0
        for token in tokens:
            if token in self.token_to_id:
                continue
            self.token_to_id[token] = next_id
            self.id_to_token[next_id] = token
            next_id += 1
            added += 1
        return added

    def special_id(self, token: str) -> Optional[int]:
        return self.token_to_id.get(token)


class Tokenizer:
    """Base interface: encode, decode, count_tokens, vocab_size."""

    def encode(self, text: str) -> List[int]:
        raise NotImplementedError

    def decode(self, token_ids: List[int]) -> str:
        raise NotImplementedError

    def count_tokens(self, text: str) -> int:
        return len(self.encode(text))

    @property
    def vocab_size(self) -> int:
        raise NotImplementedError

    @property
    def unk_token_id(self) -> int:
        raise NotImplementedError

    @property
    def eos_token_id(self) -> Optional[int]:
        return None


class WordTokenizer(Tokenizer):
    """
    Word-level tokenizer.

        "Hello world."  →  ["hello", "world", "."]  →  [vocab ids]

    Sentinel strings typed into the text (<s>, </s>, <pad>) encode to
    <unk>, so a round trip through decode never silently drops them and
    encode(decode(encode(x))) == encode(x).
    """

    def __init__(self, vocabulary: Optional[Vocabulary] = None):
        self.vocab = vocabulary if vocabulary is not None else Vocabulary.default()

    @staticmethod
    def split(text: str) -> List[str]:
        """Surface tokens: lower-cased, punctuation isolated, whitespace split."""
        spaced = _PUNCT_RE.sub(r" \1 ", text.lower())
        return [t for t in _WS_RE.split(spaced) if t]

    def encode(self, text: str) -> List[int]:
        ids = []
        for word in self.split(text):
            if word in SENTINELS:
                ids.append(self.vocab.unk_id)
            else:
                ids.append(self.vocab.lookup(word))
        return ids

    def decode(self, token_ids: List[int]) -> str:
        words = []
        for idx in token_ids:
            word = self.vocab.token(int(idx))
            if word not in SENTINELS:
                words.append(word)
        return " ".join(words)

    def count_tokens(self, text: str) -> int:
        return len(self.split(text))

    def add_tokens(self, tokens: Iterable[str]) -> int:
        return self.vocab.add_tokens(tokens)

    def token_to_id(self, token: str) -> Optional[int]:
        return self.vocab.token_to_id.get(token)

    def id_to_token(self, idx: int) -> Optional[str]:
        return self.vocab.id_to_token.get(idx)

    @property
    def vocab_size(self) -> int:
        return self.vocab.size

    @property
    def unk_token_id(self) -> int:
        return self.vocab.unk_id

    @property
    def eos_token_id(self) -> Optional[int]:
        return self.vocab.special_id(EOS_TOKEN)


class CharTokenizer(Tokenizer):
    """
    Character-level tokenizer: charset first, special tokens after it.

    Characters outside the charset encode to <unk>, which decodes to
    U+FFFD so that a second encode lands on <unk> again.
    """

    def __init__(self, charset: str = DEFAULT_CHARSET):
        if UNK_CHAR in charset:
            raise ValueError("charset must not contain U+FFFD")
        self.vocab = Vocabulary.from_tokens(list(charset) + SPECIAL_TOKENS)

    def encode(self, text: str) -> List[int]:
        return [self.vocab.lookup(ch) for ch in text]

    def decode(self, token_ids: List[int]) -> str:
        out = []
        for idx in token_ids:
            token = self.vocab.id_to_token.get(int(idx))
            if token is None or token == UNK_TOKEN:
                out.append(UNK_CHAR)
            elif token not in SENTINELS and token != MASK_TOKEN:
                out.append(token)
        return "".join(out)

    def count_tokens(self, text: str) -> int:
        return len(text)

    @property
    def vocab_size(self) -> int:
        return self.vocab.size

    @property
    def unk_token_id(self) -> int:
        return self.vocab.unk_id

    @property
    def eos_token_id(self) -> Optional[int]:
        return self.vocab.special_id(EOS_TOKEN)


class SubwordTokenizer(Tokenizer):
    """
    HuggingFace fast tokenizer wrapper.

    Input:  text (str)
    Output: token IDs (List[int])
    """

    def __init__(self, tokenizer_path: str):
        from tokenizers import Tokenizer as HFTokenizer

        self.tokenizer = HFTokenizer.from_file(tokenizer_path)

    def encode(self, text: str) -> List[int]:
        return self.tokenizer.encode(text).ids

    def decode(self, token_ids: List[int]) -> str:
        return self.tokenizer.decode([int(t) for t in token_ids], skip_special_tokens=True)

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size()

    @property
    def unk_token_id(self) -> int:
        token = self.tokenizer.token_to_id(UNK_TOKEN)
        return token if token is not None else 0

    @property
    def eos_token_id(self) -> Optional[int]:
        return self.tokenizer.token_to_id(EOS_TOKEN)


def create_tokenizer(kind: str = "word", path: Optional[str] = None) -> Tokenizer:
    """Factory: "word" (default), "char", or "subword" (needs tokenizer.json path)."""
    if kind == "word":
        return WordTokenizer()
    if kind == "char":
        return CharTokenizer()
    if kind == "subword":
        if not path:
            raise ValueError("subword tokenizer needs a tokenizer.json path")
        return SubwordTokenizer(path)
    raise ValueError(f"Unknown tokenizer kind: {kind}")
