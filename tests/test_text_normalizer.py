from provider_trust_engine.normalizers.text_normalizer import (
    compact_alnum,
    extract_digits,
    normalize_text,
    partial_alignment,
    tokenize,
)


def test_normalize_text_folds_case_accents_and_punctuation():
    assert normalize_text("  Dr. Émilie   BÉNALI-Saïd ") == "dr emilie benali said"


def test_normalize_text_keeps_arabic_letters():
    assert normalize_text("أحمد بن علي") != ""
    assert tokenize("أحمد بن علي") == normalize_text("أحمد بن علي").split(" ")


def test_tokenize_empty_and_whitespace_only():
    assert tokenize(None) == []
    assert tokenize("   \n\t ") == []


def test_compact_alnum_drops_separators():
    assert compact_alnum("RC 16/00-1234567") == "rc16001234567"


def test_extract_digits():
    assert extract_digits("12/03/1985") == "12031985"
    assert extract_digits(None) == ""


def test_partial_alignment_returns_matched_slice():
    score, matched = partial_alignment("16001234567", "licencerc16001234567valid")

    assert score == 1.0
    assert matched == "16001234567"


def test_partial_alignment_empty_inputs():
    assert partial_alignment("", "abc") == (0.0, None)
    assert partial_alignment("abc", "") == (0.0, None)
