import pytest

from tx_reference import extract_transaction_hash, is_transaction_hash

HASH = "0x" + "abcd" * 15 + "1234"


def test_same_hash_from_bare_url_and_surrounding_text():
    expected = HASH.lower()
    assert extract_transaction_hash(HASH.upper().replace("0X", "0x")) == expected
    assert extract_transaction_hash(f"https://scrollscan.com/tx/{HASH}") == expected
    assert extract_transaction_hash(f"prefix https://x.com/tx/{HASH} suffix") == expected
    assert len(expected) == 66


def test_url_with_query_and_trailing_slash():
    assert extract_transaction_hash(f"https://sepolia.scrollscan.com/tx/{HASH}/?tab=logs#top") == HASH


def test_url_without_tx_segment_falls_back_to_scan():
    assert extract_transaction_hash(f"https://explorer.example/transaction?hash={HASH}") == HASH


def test_whitespace_is_trimmed():
    assert extract_transaction_hash(f"  {HASH}\n") == HASH


@pytest.mark.parametrize(
    "value",
    [
        "not a hash",
        "",
        None,
        12345,
        "0x1234",
        "https://scrollscan.com/tx/0x1234",
        "0x" + "g" * 64,
    ],
)
def test_unresolvable_input_returns_none(value):
    assert extract_transaction_hash(value) is None


def test_longer_hex_run_is_not_truncated_into_a_hash():
    assert extract_transaction_hash("0x" + "a" * 70) is None


def test_is_transaction_hash():
    assert is_transaction_hash(HASH)
    assert not is_transaction_hash(HASH[:-1])
    assert not is_transaction_hash(None)
