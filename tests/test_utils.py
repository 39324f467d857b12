import pytest

from eventstore.utils import get_addr_tag_elements

PUBKEY_HEX = "ab" * 32


def test_valid_address():
    result = get_addr_tag_elements(f"30023:{PUBKEY_HEX}:my-article")
    assert result is not None
    assert result.kind == 30023
    assert result.pubkey == bytes.fromhex(PUBKEY_HEX)
    assert result.d == "my-article"


def test_empty_d_value():
    result = get_addr_tag_elements(f"30000:{PUBKEY_HEX}:")
    assert result is not None
    assert result.d == ""
    assert len(result.pubkey) == 32


def test_tuple_unpacking():
    kind, pubkey, d = get_addr_tag_elements(f"0:{PUBKEY_HEX}:x")
    assert (kind, pubkey.hex(), d) == (0, PUBKEY_HEX, "x")


@pytest.mark.parametrize(
    "value",
    [
        "",
        "plain text",
        PUBKEY_HEX,
        f"30023:{PUBKEY_HEX}",
        f"30023:{PUBKEY_HEX}:a:b",
        f"30023:{'ab' * 31}:d",
        f"30023:{'zz' * 32}:d",
        f"abc:{PUBKEY_HEX}:d",
        f"-1:{PUBKEY_HEX}:d",
        f"65536:{PUBKEY_HEX}:d",
        f"30023: {PUBKEY_HEX[1:]}:d",
    ],
)
def test_invalid_addresses(value):
    assert get_addr_tag_elements(value) is None


def test_largest_kind_accepted():
    result = get_addr_tag_elements(f"65535:{PUBKEY_HEX}:d")
    assert result is not None
    assert result.kind == 65535