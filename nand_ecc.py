"""
Hamming ECC for 2048+64 byte NAND pages.

Each 512-byte data sector has a 4-byte code; the four codes are stored
back to back at offset 48 of the 64-byte spare area.
"""
from enum import Enum


SECTOR_SIZE = 512
ECC_SPARE_OFFSET = 48
ECC_SIZE = 4


class EccStatus(Enum):
    OK = 0
    WRONG = 1
    INVALID = 2
    BLANK = 3


def parity(x):
    return bin(x).count('1') & 1


def calc_ecc(sector):
    """Calculate the 4-byte code of one 512-byte sector"""
    if len(sector) != SECTOR_SIZE:
        raise ValueError(f"ECC sector must be {SECTOR_SIZE} bytes, got {len(sector)}")

    # a[j][bit]: XOR of all bytes whose offset has the given value of bit j-3
    a = [[0, 0] for _ in range(12)]
    for i, x in enumerate(sector):
        for j in range(9):
            a[3 + j][(i >> j) & 1] ^= x

    x = a[3][0] ^ a[3][1]
    a[0] = [x & 0x55, x & 0xaa]
    a[1] = [x & 0x33, x & 0xcc]
    a[2] = [x & 0x0f, x & 0xf0]

    a0 = a1 = 0
    for j in range(12):
        a0 |= parity(a[j][0]) << j
        a1 |= parity(a[j][1]) << j

    return bytes([a0 & 0xff, a0 >> 8, a1 & 0xff, a1 >> 8])


def calc_page_ecc(page, page_size=2048):
    """Calculate the 16 ECC bytes for the data area of a page"""
    return b''.join(calc_ecc(page[off:off + SECTOR_SIZE])
                    for off in range(0, page_size, SECTOR_SIZE))


def stored_page_ecc(page, page_size=2048):
    start = page_size + ECC_SPARE_OFFSET
    return bytes(page[start:start + ECC_SIZE * (page_size // SECTOR_SIZE)])


def check_ecc(page, page_size=2048, spare_size=64):
    """Classify a page by its stored ECC

    BLANK    whole page is erased (0xFF)
    INVALID  page is short, or carries no ECC (stored bytes all 0xFF)
    OK       stored ECC matches the data
    WRONG    stored ECC does not match the data
    """
    if len(page) < page_size + spare_size:
        return EccStatus.INVALID
    if page.count(0xff) == len(page):
        return EccStatus.BLANK

    stored = stored_page_ecc(page, page_size)
    if stored.count(0xff) == len(stored):
        return EccStatus.INVALID

    if stored == calc_page_ecc(page, page_size):
        return EccStatus.OK
    return EccStatus.WRONG
