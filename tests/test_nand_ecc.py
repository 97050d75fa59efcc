"""
test_nand_ecc.py — page ECC calculation and classification
"""
import random

import pytest

from nand_ecc import EccStatus, calc_ecc, calc_page_ecc, check_ecc, stored_page_ecc


def page_with_ecc(data):
    spare = bytearray(b'\xff' * 64)
    spare[48:64] = calc_page_ecc(data + bytes(64))
    return bytes(data) + bytes(spare)


@pytest.fixture
def data():
    rng = random.Random(2112)
    return bytes(rng.getrandbits(8) for _ in range(2048))


def test_periodic_data_has_zero_code():
    # every byte offset bit splits a 256-byte period into identical halves
    assert calc_ecc(bytes(range(256)) * 2) == b'\x00\x00\x00\x00'


def test_blank_sector_has_zero_code():
    assert calc_ecc(b'\xff' * 512) == b'\x00\x00\x00\x00'


def test_zero_sector_has_zero_code():
    assert calc_ecc(bytes(512)) == b'\x00\x00\x00\x00'


def test_single_bit_changes_code():
    sector = bytearray(512)
    sector[0x123] = 0x10
    assert calc_ecc(bytes(sector)) != b'\x00\x00\x00\x00'


def test_sector_size_enforced():
    with pytest.raises(ValueError):
        calc_ecc(bytes(511))


def test_page_code_is_four_sector_codes(data):
    page = data + bytes(64)
    assert calc_page_ecc(page) == b''.join(calc_ecc(data[i:i + 512]) for i in range(0, 2048, 512))
    assert len(calc_page_ecc(page)) == 16


def test_stored_ecc_location(data):
    page = page_with_ecc(data)
    assert stored_page_ecc(page) == page[2048 + 48:2048 + 64]


def test_check_ok(data):
    assert check_ecc(page_with_ecc(data)) is EccStatus.OK


def test_check_wrong_after_data_bit_flip(data):
    page = bytearray(page_with_ecc(data))
    page[700] ^= 0x01
    assert check_ecc(bytes(page)) is EccStatus.WRONG


def test_check_blank():
    assert check_ecc(b'\xff' * 2112) is EccStatus.BLANK


def test_check_missing_ecc_is_invalid(data):
    assert check_ecc(data + b'\xff' * 64) is EccStatus.INVALID


def test_check_short_page_is_invalid(data):
    assert check_ecc(data) is EccStatus.INVALID


def test_inverted_byte_goes_undetected(data):
    # eight flipped bits leave every row and column parity unchanged
    page = bytearray(page_with_ecc(data))
    page[5] ^= 0xff
    assert check_ecc(bytes(page)) is EccStatus.OK
