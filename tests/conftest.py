"""
conftest.py — Shared fixtures: a simulated Infectus adapter with a NAND
chip behind it, speaking the frame protocol byte for byte.
"""
import random
import sys
from array import array
from collections import deque
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import usb.core

# Ensure the parent directory is on sys.path so we can import the tool modules
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from infectus_usb import InfectusUSB  # noqa: E402
from nand_ops import FlashConfig, NandChip  # noqa: E402


class FakeInfectus:
    """Stands in for a pyusb Device; erased pages are not stored"""

    idVendor = 0x10c4
    idProduct = 0x0001
    bus = 1
    address = 7

    def __init__(self, chip_id=0xecdc, page_stride=2112, pages_per_block=4, pld_id=4):
        self._ctx = MagicMock()
        self.chip_id = chip_id
        self.page_stride = page_stride
        self.pages_per_block = pages_per_block
        self.pld_id = pld_id
        self.pages = {}
        self.status = 0xe0

        self.frames = []
        self.replies = deque()
        self.output = bytearray()
        self.row = 0
        self.column = 0
        self.latch = bytearray()
        self.selected = None

        self.programs = []
        self.erases = []
        self.ctrl_transfers = []
        self.config_error = None

        # fault injection counters
        self.desync = 0
        self.short_writes = 0
        self.short_recv = 0
        self.corrupt_program = set()

    # --- pyusb Device surface ---

    def set_configuration(self, configuration=None):
        if self.config_error is not None:
            raise self.config_error

    def set_interface_altsetting(self, interface=None, alternate_setting=None):
        pass

    def clear_halt(self, ep):
        pass

    def ctrl_transfer(self, bmRequestType, bRequest, wValue=0, wIndex=0,
                      data_or_wLength=None, timeout=None):
        self.ctrl_transfers.append((bmRequestType, bRequest, wValue, wIndex))
        return 0

    def write(self, endpoint, data, timeout=None):
        data = bytes(data)
        self.frames.append(data)
        if self.short_writes:
            self.short_writes -= 1
            return len(data) - 1

        reply = self.handle(data)
        if self.desync:
            self.desync -= 1
            reply = b'\x00' + reply[1:]
        self.replies.append(reply)
        return len(data)

    def read(self, endpoint, size, timeout=None):
        if not self.replies:
            raise usb.core.USBTimeoutError('Operation timed out')
        return array('B', self.replies.popleft()[:size])

    # --- flash array ---

    def page(self, pageno):
        return bytes(self.pages.get(pageno, b'\xff' * self.page_stride))

    def set_page(self, pageno, data):
        assert len(data) == self.page_stride
        self.pages[pageno] = bytearray(data)

    # --- protocol ---

    def handle(self, frame):
        if frame[0] in (0x45, 0x4c):
            return self.handle_control(frame)
        assert frame[0] == 0x4e, f"unexpected frame {frame.hex()}"

        length = frame[6] << 8 | frame[7]
        sub = frame[1]
        if sub == 0:
            return self.handle_bus(frame[8], frame[9:9 + length])
        if sub == 2:
            data = self.output[:length]
            self.output = self.output[length:]
            data += b'\xff' * (length - len(data))
            if self.short_recv:
                self.short_recv -= 1
                data = data[:-1]
            return b'\xff' + bytes(data)
        if sub == 1:
            payload = frame[8:8 + length]
            self.latch[self.column:self.column + len(payload)] = payload
            self.column += len(payload)
            return b'\xff' + payload
        raise AssertionError(f"unknown NAND sub-opcode {sub}")

    def handle_control(self, frame):
        key = (frame[0], frame[1])
        if key == (0x45, 0x15):
            return b'\xff'
        if key == (0x45, 0x13):
            return b'\xff\x03'
        if key == (0x45, 0x14):
            self.selected = frame[2]
            return b'\xff'
        if key == (0x4c, 0x07):
            return b'\xff\x01\x02'
        if key == (0x4c, 0x15):
            return b'\xff' + bytes([self.pld_id])
        raise AssertionError(f"unknown control frame {frame.hex()}")

    def handle_bus(self, opcode, addr):
        if opcode == 0xff:
            self.output = bytearray()
        elif opcode == 0x90:
            self.output = bytearray([self.chip_id >> 8, self.chip_id & 0xff, 0x95, 0x40])
        elif opcode == 0x70:
            self.output = bytearray([self.status])
        elif opcode == 0x60:
            self.row = addr[0] | addr[1] << 8 | addr[2] << 16
        elif opcode == 0xd0:
            block = self.row // self.pages_per_block
            for p in range(block * self.pages_per_block, (block + 1) * self.pages_per_block):
                self.pages.pop(p, None)
            self.erases.append(block)
        elif opcode == 0x00:
            self.column = addr[0] | addr[1] << 8
            self.row = addr[2] | addr[3] << 8 | addr[4] << 16
        elif opcode == 0x30:
            self.output = bytearray(self.page(self.row)[self.column:])
        elif opcode == 0x80:
            self.column = addr[0] | addr[1] << 8
            self.row = addr[2] | addr[3] << 8 | addr[4] << 16
            self.latch = bytearray(b'\xff' * self.page_stride)
        elif opcode == 0x10:
            current = self.page(self.row)
            self.pages[self.row] = bytearray(a & b for a, b in zip(current, self.latch))
            if self.row in self.corrupt_program:
                self.pages[self.row][0] ^= 0x01
            self.programs.append(self.row)
        else:
            raise AssertionError(f"unknown NAND opcode {opcode:#x}")
        return b'\xff'

    def nand_frames(self, sub):
        return [f for f in self.frames if f[0] == 0x4e and f[1] == sub]


@pytest.fixture
def config() -> FlashConfig:
    """Standard 2048+64 geometry, shrunk to 4 pages per block and 4 blocks."""
    return FlashConfig(pages_per_block=4, num_blocks=4)


@pytest.fixture
def device(config) -> FakeInfectus:
    return FakeInfectus(page_stride=config.page_stride, pages_per_block=config.pages_per_block)


@pytest.fixture
def usb_session(device) -> InfectusUSB:
    return InfectusUSB(dev=device)


@pytest.fixture
def chip(usb_session, config) -> NandChip:
    return NandChip(usb_session, config)


@pytest.fixture
def make_page(config):
    """Return a factory for non-blank pages; the stored ECC bytes stay 0xFF."""
    def _make(seed):
        rng = random.Random(seed)
        data = bytearray(rng.getrandbits(8) for _ in range(config.page_size))
        spare = bytearray(b'\xff' * config.spare_size)
        spare[0] = seed & 0xff
        return bytes(data + spare)
    return _make


@pytest.fixture
def write_dump(tmp_path, config):
    """Write a list of pages (None = blank) to a dump file and return its path."""
    def _write(pages, name="nand.bin"):
        path = tmp_path / name
        blank = b'\xff' * config.page_stride
        path.write_bytes(b''.join(blank if p is None else p for p in pages))
        return path
    return _write
