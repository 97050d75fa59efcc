"""
NAND flash chip operations on top of the Infectus bus primitives

Each chip operation is a short sequence: a pre-strobe carrying the
opcode and address, an optional data phase split into subpage chunks,
a post-strobe, and optionally a status poll until the chip is ready.
"""

import math
import sys
from collections import namedtuple
from dataclasses import dataclass

from infectus_usb import (MAX_FRAME_SIZE, NAND_HEADER_SIZE, NandCommand,
                          column_address, row_address)


NAND_RESET = 0xff
NAND_CHIPID = 0x90
NAND_GETSTATUS = 0x70
NAND_ERASE_PRE = 0x60
NAND_ERASE_POST = 0xd0
NAND_READ_PRE = 0x00
NAND_READ_POST = 0x30
NAND_WRITE_PRE = 0x80
NAND_WRITE_POST = 0x10

STATUS_READY = 0xe0  # ready, not write protected
DEFAULT_SUBPAGE_SIZE = 0x2c0

ChipInfo = namedtuple('ChipInfo', ['vendor', 'density', 'num_blocks'])

CHIP_IDS = {
    0xecf1: ChipInfo('Samsung', 'K9F1G08X0A 128Mbyte', 1024),
    0xaddc: ChipInfo('Hynix', '512Mbyte', 4096),
    0xecdc: ChipInfo('Samsung', '512Mbyte', 4096),
    0x2cdc: ChipInfo('Micron', '512Mbyte', 4096),
    0x98dc: ChipInfo('Toshiba', '512Mbyte', 4096),
}


class ChipError(RuntimeError):
    pass


class UnknownChipError(ChipError):
    def __init__(self, chip_id):
        super().__init__(f"Unknown flash ID {chip_id:04x}; if this is correct, please report it")
        self.chip_id = chip_id


class NoChipDetectedError(ChipError):
    def __init__(self):
        super().__init__("No flash chip detected; are you sure the target device is powered on?")


class StatusTimeout(RuntimeError):
    def __init__(self, status, polls):
        super().__init__(f"Flash not ready after {polls} status polls (last status {status:#04x})")
        self.status = status
        self.polls = polls


@dataclass
class FlashConfig:
    """Chip geometry and run options, fixed for the duration of a run"""
    page_size: int = 2048
    spare_size: int = 64
    subpage_size: int = DEFAULT_SUBPAGE_SIZE
    pages_per_block: int = 64
    num_blocks: int = 4096
    chip_select: int = 0
    test_mode: bool = False
    verify_after_write: bool = True
    check_status: bool = False
    force: bool = False
    debug: bool = False
    start_block: int = 0
    quick_check: bool = False
    max_resync: int = 16
    max_status_polls: int = 1000

    @property
    def page_stride(self):
        return self.page_size + self.spare_size

    @property
    def chunks_per_page(self):
        return math.ceil(self.page_stride / self.subpage_size)

    @property
    def block_stride(self):
        return self.page_stride * self.pages_per_block

    def validate(self):
        if self.subpage_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.subpage_size}")
        if self.subpage_size + NAND_HEADER_SIZE > MAX_FRAME_SIZE:
            raise ValueError(f"Chunk size 0x{self.subpage_size:x} does not fit in a "
                             f"{MAX_FRAME_SIZE}-byte frame")
        if self.chip_select not in (0, 1):
            raise ValueError("Invalid chip number -- must be 0 or 1")
        if self.start_block < 0:
            raise ValueError(f"Start block must not be negative, got {self.start_block}")
        return self


class NandChip:
    """Chip-level operations over an InfectusUSB session"""

    def __init__(self, usb, config):
        self.usb = usb
        self.config = config

    def command(self, opcode, *address):
        return self.usb.nand_command(NandCommand(opcode, tuple(address)))

    def reset(self):
        """Reset the adapter, then the chip"""
        self.usb.reset()
        self.command(NAND_RESET)

    def get_flash_id(self):
        """Read the first two bytes of the chip ID"""
        self.command(NAND_RESET)
        self.command(NAND_CHIPID, 0)
        data = self.usb.nand_receive(2)
        if len(data) < 2:
            return 0
        return data[0] << 8 | data[1]

    def identify(self):
        """Return (chip_id, ChipInfo) for the attached chip

        The ID is read three times and the last value kept; the first read
        after power-up is unreliable on some adapters.
        """
        for _ in range(3):
            chip_id = self.get_flash_id()

        if chip_id == 0:
            raise NoChipDetectedError()
        info = CHIP_IDS.get(chip_id)
        if info is None:
            raise UnknownChipError(chip_id)
        return chip_id, info

    def get_status(self):
        self.command(NAND_GETSTATUS)
        data = self.usb.nand_receive(1)
        return data[0] if data else 0

    def wait_ready(self):
        """Poll status until the chip reports ready, within max_status_polls"""
        status = 0
        for _ in range(self.config.max_status_polls):
            status = self.get_status()
            if status == STATUS_READY:
                return status
            print(f"Status = {status:x}", file=sys.stderr)
        raise StatusTimeout(status, self.config.max_status_polls)

    def erase_block(self, blockno):
        if self.config.test_mode:
            return

        pageno = blockno * self.config.pages_per_block
        reply = self.command(NAND_ERASE_PRE, *row_address(pageno))
        if reply:
            print(f"Erase command for block {blockno} returned {len(reply)} extra bytes",
                  file=sys.stderr)
        self.command(NAND_ERASE_POST)

        if self.config.check_status:
            self.wait_ready()

    def read_page(self, pageno):
        """Read one page (data + spare) and return it as bytes

        A chunk that comes back short is reported but does not abort the
        read, so the returned page may be shorter than page_stride.
        """
        cfg = self.config
        self.command(NAND_READ_PRE, *column_address(0), *row_address(pageno))
        self.command(NAND_READ_POST)

        page = bytearray()
        for _ in range(cfg.chunks_per_page):
            chunk = self.usb.nand_receive(cfg.subpage_size)
            if len(chunk) != cfg.subpage_size:
                print(f"Readpage returned {len(chunk) + 1} for page {pageno}", file=sys.stderr)
            page.extend(chunk)
        return bytes(page[:cfg.page_stride])

    def write_page(self, pageno, data):
        """Program one page, chunk by chunk; a no-op in test mode"""
        cfg = self.config
        if len(data) != cfg.page_stride:
            raise ValueError(f"Page data must be {cfg.page_stride} bytes, got {len(data)}")
        if cfg.test_mode:
            return

        for subpage in range(cfg.chunks_per_page):
            offset = subpage * cfg.subpage_size
            self.command(NAND_WRITE_PRE, *column_address(offset), *row_address(pageno))
            self.usb.nand_send(data[offset:offset + cfg.subpage_size])
            self.command(NAND_WRITE_POST)

            if cfg.check_status:
                self.wait_ready()
