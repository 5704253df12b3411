"""Tests for name and message text normalization."""

import unicodedata

from pricebook.pipelines.normalization import (
    clean_message_text,
    display_name,
    normalize_name,
    normalize_punctuation,
    normalize_whitespace,
)


class TestNormalizeName:
    """Identity keys for products and suppliers."""

    def test_trims_collapses_and_casefolds(self):
        assert normalize_name("  Caneta   Azul\tBIC ") == "caneta azul bic"

    def test_case_and_spacing_variants_collide(self):
        assert normalize_name("Caneta Azul BIC") == normalize_name("  caneta azul bic  ")

    def test_keeps_diacritics(self):
        assert normalize_name("Açúcar Cristal") == "açúcar cristal"
        assert normalize_name("Açúcar") != normalize_name("Acucar")

    def test_composed_and_decomposed_accents_match(self):
        decomposed = unicodedata.normalize("NFD", "Açúcar")
        assert normalize_name(decomposed) == normalize_name("Açúcar")

    def test_does_not_merge_near_misses(self):
        assert normalize_name("Caneta Azul") != normalize_name("Caneta Azull")

    def test_empty(self):
        assert normalize_name("   ") == ""


def test_display_name_keeps_case():
    assert display_name("  Distribuidora   Beta ") == "Distribuidora Beta"


def test_normalize_whitespace():
    assert normalize_whitespace("a \n\n b") == "a b"


def test_normalize_punctuation():
    assert normalize_punctuation("“Café” – ‘extra’") == "\"Café\" - 'extra'"


class TestCleanMessageText:
    """Message bodies sent to extraction."""

    def test_keeps_lines_and_drops_blank_ones(self):
        text = "Caneta  R$ 2,00\n\n   Lápis   R$ 1,00  "
        assert clean_message_text(text) == "Caneta R$ 2,00\nLápis R$ 1,00"

    def test_blank_message(self):
        assert clean_message_text("  \n ") == ""
