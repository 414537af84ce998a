"""
pocket-lm :: Test Tokenizer

Covers:
  - Word vocabulary encode/decode against a hand-built table
  - encode(decode(encode(x))) == encode(x)
  - Unknown words, sentinels, append-only growth
  - Character tokenizer

Run:
    python -m pytest tests/test_tokenizer.py -v

INL - 2025
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pocket_lm.core.tokenizer import (
    Vocabulary, WordTokenizer, CharTokenizer, create_tokenizer,
    UNK_TOKEN, EOS_TOKEN, SPECIAL_TOKENS,
)


@pytest.fixture
def small_vocab():
    return Vocabulary({"<unk>": 1, "hello": 5, "world": 6, ".": 30})


class TestVocabulary:

    def test_requires_unk(self):
        with pytest.raises(ValueError):
            Vocabulary({"hello": 0})

    def test_rejects_shared_ids(self):
        with pytest.raises(ValueError):
            Vocabulary({"<unk>": 0, "a": 1, "b": 1})

    def test_size_is_id_space(self, small_vocab):
        assert len(small_vocab) == 4
        assert small_vocab.size == 31

    def test_add_tokens_appends(self, small_vocab):
        added = small_vocab.add_tokens(["new", "hello", "other"])
        assert added == 2
        assert small_vocab.lookup("new") == 31
        assert small_vocab.lookup("other") == 32
        assert small_vocab.lookup("hello") == 5

    def test_default_is_lowercase(self):
        vocab = Vocabulary.default()
        assert "i" in vocab
        assert "I" not in vocab
        for i, token in enumerate(SPECIAL_TOKENS):
            assert vocab.lookup(token) == i


class TestWordTokenizer:

    def test_encode_known_words(self, small_vocab):
        tok = WordTokenizer(small_vocab)
        assert tok.encode("Hello world.") == [5, 6, 30]

    def test_decode_joins_with_spaces(self, small_vocab):
        tok = WordTokenizer(small_vocab)
        assert tok.decode([5, 6, 30]) == "hello world ."

    def test_unknown_word_maps_to_unk(self, small_vocab):
        tok = WordTokenizer(small_vocab)
        assert tok.encode("hello there") == [5, 1]
        assert tok.decode([5, 1]) == "hello <unk>"

    def test_unknown_id_decodes_to_unk(self, small_vocab):
        tok = WordTokenizer(small_vocab)
        assert tok.decode([5, 999]) == "hello <unk>"

    def test_sentinels_dropped_on_decode(self):
        tok = WordTokenizer()
        eos = tok.eos_token_id
        hello = tok.token_to_id("hello")
        assert tok.decode([hello, eos]) == "hello"

    def test_typed_sentinel_encodes_to_unk(self):
        tok = WordTokenizer()
        assert tok.encode("</s>") == [tok.unk_token_id]

    @pytest.mark.parametrize("text", [
        "Hello world.",
        "hello   WORLD !!",
        "Could you, please, say hello?",
        "</s> <s> <pad> hello",
        "<unk> <mask> zebra",
        "don't (stop) [now] {ok}",
        "",
        "   ",
    ])
    def test_encode_is_fixed_point_after_decode(self, text):
        tok = WordTokenizer()
        ids = tok.encode(text)
        assert tok.encode(tok.decode(ids)) == ids

    def test_ids_within_vocab(self):
        tok = WordTokenizer()
        ids = tok.encode("The quick brown fox, and the lazy dog!")
        assert all(0 <= i < tok.vocab_size for i in ids)

    def test_count_tokens(self):
        tok = WordTokenizer()
        assert tok.count_tokens("Hello world.") == 3

    def test_add_tokens_grows_vocab(self):
        tok = WordTokenizer()
        before = tok.vocab_size
        assert tok.add_tokens(["zebra"]) == 1
        assert tok.vocab_size == before + 1
        assert tok.decode(tok.encode("zebra")) == "zebra"

    def test_injected_vocabulary_is_used(self, small_vocab):
        tok = WordTokenizer(small_vocab)
        assert tok.unk_token_id == 1
        assert tok.eos_token_id is None
        assert tok.vocab_size == 31


class TestCharTokenizer:

    def test_round_trip(self):
        tok = CharTokenizer()
        text = "Hello, World! 123"
        assert tok.decode(tok.encode(text)) == text

    def test_unknown_char_decodes_to_replacement(self):
        tok = CharTokenizer()
        ids = tok.encode("aéb")
        assert ids[1] == tok.unk_token_id
        assert tok.decode(ids) == "a\ufffdb"

    @pytest.mark.parametrize("text", ["café", "naïve – ok", "日本", "plain text"])
    def test_encode_is_fixed_point_after_decode(self, text):
        tok = CharTokenizer()
        ids = tok.encode(text)
        assert tok.encode(tok.decode(ids)) == ids

    def test_charset_cannot_hold_replacement(self):
        with pytest.raises(ValueError):
            CharTokenizer("ab\ufffd")

    def test_special_tokens_follow_charset(self):
        tok = CharTokenizer("ab")
        assert tok.vocab.lookup("a") == 0
        assert tok.vocab.lookup(UNK_TOKEN) == 3
        assert tok.eos_token_id == tok.vocab.lookup(EOS_TOKEN)
        assert tok.vocab_size == 2 + len(SPECIAL_TOKENS)


class TestFactory:

    def test_kinds(self):
        assert isinstance(create_tokenizer("word"), WordTokenizer)
        assert isinstance(create_tokenizer("char"), CharTokenizer)

    def test_subword_needs_path(self):
        with pytest.raises(ValueError):
            create_tokenizer("subword")

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            create_tokenizer("bytes")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
