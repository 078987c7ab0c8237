"""Tests for vocabulary processor."""

import pytest

from apexflow.core.transcript_processor.vocabulary_processor import (
    apply_vocabulary_replacements,
)


class TestApplyVocabularyReplacements:

    def test_empty_replacements(self):
        """Test no replacements returns the text unchanged."""
        assert apply_vocabulary_replacements("Hello world", []) == "Hello world"

    def test_empty_text(self):
        """Test empty text stays empty."""
        assert apply_vocabulary_replacements("", [("a", "b")]) == ""

    def test_single_replacement(self):
        """Test a single replacement."""
        result = apply_vocabulary_replacements("Hello Charlie", [("Charlie", "Charles")])
        assert result == "Hello Charles"

    def test_multiple_occurrences(self):
        """Test every occurrence is replaced."""
        result = apply_vocabulary_replacements(
            "Charlie said hello to Charlie", [("Charlie", "Charles")]
        )
        assert result == "Charles said hello to Charles"

    def test_multiple_replacements(self):
        """Test several rules apply to one text."""
        replacements = [
            ("Charlie", "Charles"),
            ("link calendar", "https://example.com"),
        ]
        result = apply_vocabulary_replacements("Hello Charlie, link calendar please", replacements)
        assert result == "Hello Charles, https://example.com please"

    def test_case_insensitive_by_default(self):
        """Test matching ignores case by default."""
        result = apply_vocabulary_replacements(
            "charlie CHARLIE Charlie", [("Charlie", "Charles")]
        )
        assert result == "Charles Charles Charles"

    def test_case_sensitive(self):
        """Test case-sensitive matching."""
        result = apply_vocabulary_replacements(
            "charlie CHARLIE Charlie", [("Charlie", "Charles")], case_sensitive=True
        )
        assert result == "charlie CHARLIE Charles"

    def test_whole_words_only(self):
        """Test only whole words match by default."""
        result = apply_vocabulary_replacements("cat concatenate cat.", [("cat", "dog")])
        assert result == "dog concatenate dog."

    def test_partial_words_when_disabled(self):
        """Test partial words match when whole_words is off."""
        result = apply_vocabulary_replacements(
            "cat concatenate", [("cat", "dog")], whole_words=False
        )
        assert result == "dog condogenate"

    def test_regex_characters_are_literal(self):
        """Test regex characters in originals match literally."""
        result = apply_vocabulary_replacements("use c++ here", [("c++", "C plus plus")])
        assert result == "use C plus plus here"

    @pytest.mark.parametrize("replacement", [r"\1", r"\g<0>", "$1"])
    def test_replacement_is_inserted_literally(self, replacement):
        """Test backreferences in replacements are not expanded."""
        result = apply_vocabulary_replacements("say hi", [("hi", replacement)])
        assert result == f"say {replacement}"

    def test_rules_apply_in_order(self):
        """Test rules apply in order."""
        replacements = [("alpha", "beta"), ("beta", "gamma")]
        assert apply_vocabulary_replacements("alpha", replacements) == "gamma"

    def test_blank_originals_are_skipped(self):
        """Test blank originals are ignored."""
        result = apply_vocabulary_replacements("keep me", [("", "x"), ("   ", "y")])
        assert result == "keep me"
