import pytest

from catalog_etl.matching import (
    MatchMethod,
    clean_title_string,
    extract_version,
    find_best_match,
    normalize,
    similarity,
    version_mismatch,
)
from catalog_etl.models import CatalogEntry


def _entry(id, title, brand=None):
    return CatalogEntry(id=id, slug=f"p-{id}", title=title, brand=brand)


@pytest.mark.parametrize(
    "text",
    ["Serum VST Plugin!", "  Pro-Q 3  (Download Edition) ", "Omnisphere 2.8 Software Bundle", ""],
)
def test_normalize_is_idempotent(text):
    once = normalize(text)
    assert normalize(once) == once


def test_normalize_strips_filler_and_punctuation():
    assert normalize("Serum VST Plugin!") == "serum"
    assert normalize("Pro-Q 3 (Download Edition)") == "proq 3"
    assert normalize("Vstation Plugins") == "vstation plugins"


def test_clean_title_removes_known_brand():
    assert clean_title_string("Xfer Records Serum", "Xfer Records") == "serum"
    assert clean_title_string("Unknown Serum", "Unknown") == "unknown serum"


def test_extract_version():
    assert extract_version("Total Studio 3.5 MAX") == "3.5"
    assert extract_version("Suite v5") == "5"
    assert extract_version("Serum") is None


def test_version_mismatch_compares_as_strings():
    assert version_mismatch("Suite 5", "Suite 3")
    assert not version_mismatch("Suite 5", "Suite")
    assert version_mismatch("Suite 5", "Suite 5.0")


def test_similarity_containment_and_empty():
    assert similarity("Kontakt", "Kontakt Player") == 0.95
    assert similarity("", "") == 1.0
    assert similarity("abc", "abd") == pytest.approx(1 - 1 / 3)


def test_version_gate_blocks_high_similarity():
    catalog = [_entry(1, "Total Studio 3.5", "IK Multimedia")]
    assert find_best_match("Total Studio 5", "IK Multimedia", catalog) is None


def test_exact_match_short_circuits():
    catalog = [_entry(1, "Serum", "Xfer Records"), _entry(2, "Serum", "Xfer Records")]
    match = find_best_match("Serum", "Xfer Records", catalog)
    assert match.product.id == 1
    assert match.score == 1.0
    assert match.method == MatchMethod.EXACT


def test_exact_match_ignores_brand_and_filler():
    catalog = [_entry(7, "Xfer Records Serum VST", "Xfer Records")]
    match = find_best_match("Serum Plugin", "Xfer Records", catalog)
    assert match.method == MatchMethod.EXACT


def test_brand_gate_blocks_fuzzy_match():
    catalog = [_entry(1, "Vintage Compressor Pro", "Waves")]
    assert find_best_match("Vintage Compressor Pro X", "Arturia", catalog) is None


def test_unknown_brand_allows_fuzzy_match():
    catalog = [_entry(1, "Vintage Compressor Pro", "Waves")]
    match = find_best_match("Vintage Compresor Pro", "Unknown", catalog)
    assert match is not None
    assert match.method == MatchMethod.FUZZY
    assert match.score > 0.85


def test_best_fuzzy_candidate_wins():
    catalog = [
        _entry(1, "Analog Lab Pro", "Arturia"),
        _entry(2, "Analog Lab V Intro", "Arturia"),
    ]
    match = find_best_match("Analog Lab Pro X", "Arturia", catalog)
    assert match.product.id == 1
    assert match.method == MatchMethod.FUZZY
    assert match.score == 0.95


def test_low_score_is_new_product():
    catalog = [_entry(1, "Diva", "u-he")]
    assert find_best_match("Zebra", "u-he", catalog) is None
