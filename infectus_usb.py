"""
USB transport and command codec for the Infectus NAND programmer

The adapter exposes two bulk endpoints. Every exchange is a single frame
written to the OUT endpoint followed by a single reply read from the IN
endpoint. Every reply starts with the sync byte 0xFF.

Frame shapes:
    control frame (8 bytes):  opcode, 6 parameter bytes, 1 reserved byte
    NAND frame:               0x4E, sub-opcode, 4 reserved bytes,
                              16-bit big-endian length, payload

NAND sub-opcodes: 0 = bus command (opcode + address bytes),
                  1 = SEND data, 2 = RECV data.
"""

import errno
import sys
from dataclasses import dataclass
from struct import pack

import usb.core
import usb.util


INFECTUS_VENDOR_ID = 0x10c4

ENDPOINT_READ = 0x81
ENDPOINT_WRITE = 0x01
USB_TIMEOUT_MS = 500
CONTROL_TIMEOUT_MS = 1000

SYNC_BYTE = 0xFF
MAX_FRAME_SIZE = 4096
NAND_HEADER_SIZE = 8
CONTROL_FRAME_SIZE = 8
REPLY_SIZE = 128

INFECTUS_NAND_CMD = 0x4e
INFECTUS_NAND_SEND = 0x1
INFECTUS_NAND_RECV = 0x2

MAX_ADDRESS_BYTES = 5

PLD_IDS = [
    "O2MOD",
    "Globe Hitachi",
    "Globe Samsung",
    "Infectus 78",
    "NAND Programmer",
    "2 NAND Programmer",
    "SPI Programmer",
    "XDowngrader",
]


class TransportError(RuntimeError):
    """A bulk transfer failed or timed out"""


class ProtocolDesyncError(TransportError):
    """Replies kept arriving without the leading sync byte"""


class DeviceNotFoundError(RuntimeError):
    pass


class DevicePermissionError(RuntimeError):
    pass


def ascii_char(b):
    return chr(b) if 0x20 <= b <= 0x7e else '.'


def hexdump(data, prefix='', file=None):
    """Print data as offset / hex / ASCII lines, 16 bytes per line"""
    out = file or sys.stdout
    for off in range(0, len(data), 16):
        row = data[off:off + 16]
        hex_part = ''.join(f"{b:02x} " for b in row).ljust(48)
        text = ''.join(ascii_char(b) for b in row)
        print(f"{prefix}{off:08x}  {hex_part} {text}", file=out)
        prefix = ' ' * len(prefix)


def row_address(pageno):
    """3-byte row address (low, mid, high) of an absolute page number"""
    return (pageno & 0xff, (pageno >> 8) & 0xff, (pageno >> 16) & 0xff)


def column_address(offset):
    """2-byte column address (low, high) of a byte offset inside a page"""
    return (offset & 0xff, (offset >> 8) & 0xff)


def control_frame(opcode, *params):
    """Build an 8-byte control frame: opcode, up to 6 parameters, reserved"""
    if len(params) > CONTROL_FRAME_SIZE - 2:
        raise ValueError(f"Control frame takes at most 6 parameters, got {len(params)}")
    frame = bytearray(CONTROL_FRAME_SIZE)
    frame[0] = opcode
    for i, p in enumerate(params):
        if not 0 <= p <= 0xff:
            raise ValueError(f"Control parameter {i} out of range: {p}")
        frame[1 + i] = p
    return bytes(frame)


@dataclass(frozen=True)
class NandCommand:
    """A NAND bus command: one opcode byte followed by address bytes"""
    opcode: int
    address: tuple = ()

    def __post_init__(self):
        if not 0 <= self.opcode <= 0xff:
            raise ValueError(f"NAND opcode out of range: {self.opcode}")
        if len(self.address) > MAX_ADDRESS_BYTES:
            raise ValueError(f"NAND command takes at most {MAX_ADDRESS_BYTES} address bytes, "
                             f"got {len(self.address)}")
        for b in self.address:
            if not isinstance(b, int) or not 0 <= b <= 0xff:
                raise ValueError(f"NAND address byte out of range: {b!r}")

    def encode(self):
        """Frame layout: 4E 00 00 00 00 00 00 <n>, opcode, n address bytes"""
        n = len(self.address)
        return (bytes([INFECTUS_NAND_CMD]) + bytes(6) + bytes([n])
                + bytes([self.opcode]) + bytes(self.address))


def nand_recv_frame(length):
    return pack(">BB4xH", INFECTUS_NAND_CMD, INFECTUS_NAND_RECV, length)


def nand_send_frame(data):
    frame = pack(">BB4xH", INFECTUS_NAND_CMD, INFECTUS_NAND_SEND, len(data)) + bytes(data)
    if len(frame) > MAX_FRAME_SIZE:
        raise ValueError(f"NAND send frame of {len(frame)} bytes exceeds "
                         f"{MAX_FRAME_SIZE}-byte maximum")
    return frame


class InfectusUSB:
    """USB session with an Infectus adapter"""

    def __init__(self, debug=False, max_resync=16, dev=None):
        self.vendor_id = INFECTUS_VENDOR_ID
        self.debug = debug
        self.max_resync = max_resync
        self.dev = dev

    def connect(self):
        """Find the first device carrying the Infectus vendor ID"""
        if self.dev is None:
            self.dev = usb.core.find(idVendor=self.vendor_id)
            if self.dev is None:
                raise DeviceNotFoundError(f"Could not find an Infectus device (VID = {self.vendor_id:04x})")

        print(f"Infectus device found @ bus {self.dev.bus} "
              f"address {self.dev.address}")
        print(f"  Vendor ID  0x{self.dev.idVendor:04x}")
        print(f"  Product ID 0x{self.dev.idProduct:04x}")

    def close(self):
        if self.dev is not None:
            usb.util.dispose_resources(self.dev)
            self.dev = None

    def reset(self):
        """Configure the USB device and send the adapter reset command"""
        try:
            self.dev.set_configuration(1)
        except usb.core.USBError as e:
            if e.errno == errno.EACCES:
                raise DevicePermissionError(
                    "Unable to set USB device configuration; are you running as root?") from e
            print(f"Warning: Could not set configuration: {e}", file=sys.stderr)

        try:
            usb.util.claim_interface(self.dev, 0)
        except usb.core.USBError as e:
            raise DevicePermissionError(f"Unable to claim USB interface 0: {e}") from e

        try:
            self.dev.set_interface_altsetting(interface=0, alternate_setting=0)
        except usb.core.USBError as e:
            print(f"Warning: set_interface_altsetting failed: {e}", file=sys.stderr)

        try:
            self.dev.clear_halt(ENDPOINT_READ)
        except usb.core.USBError as e:
            print(f"Warning: clear_halt({ENDPOINT_READ:#x}) failed: {e}", file=sys.stderr)

        # Vendor request 2, value 2, no data stage; part of the adapter init sequence
        try:
            self.dev.ctrl_transfer(usb.util.CTRL_TYPE_VENDOR | usb.util.CTRL_RECIPIENT_DEVICE,
                                   2, 2, 0, None, CONTROL_TIMEOUT_MS)
        except usb.core.USBError as e:
            print(f"Warning: vendor control transfer failed: {e}", file=sys.stderr)

        self.sendcommand(control_frame(0x45, 0x15), REPLY_SIZE)

    def _write_frame(self, frame):
        # A short write resends the whole frame, not the remainder
        for attempt in range(self.max_resync + 1):
            try:
                written = self.dev.write(ENDPOINT_WRITE, frame, USB_TIMEOUT_MS)
            except usb.core.USBError as e:
                raise TransportError(f"Error sending command: {e}") from e
            if written == len(frame):
                return
            print(f"Error: short write ({written} < {len(frame)})", file=sys.stderr)
        raise TransportError(f"Gave up after {self.max_resync + 1} short writes")

    def _read_reply(self, maxsize):
        try:
            return bytes(self.dev.read(ENDPOINT_READ, maxsize, USB_TIMEOUT_MS))
        except usb.core.USBError as e:
            raise TransportError(f"Error reading reply: {e}") from e

    def sendcommand(self, frame, maxsize):
        """Send one frame and return its reply with the sync byte stripped

        A reply that does not start with 0xFF means the adapter and host
        are out of step; the same frame is sent again, up to max_resync
        times, before giving up with ProtocolDesyncError.
        """
        if self.debug:
            hexdump(frame, prefix='> ')

        for attempt in range(self.max_resync + 1):
            self._write_frame(frame)
            reply = self._read_reply(maxsize)

            if self.debug:
                hexdump(reply, prefix='< ')

            if reply and reply[0] == SYNC_BYTE:
                return reply[1:]

            first = f"{reply[0]:02x}" if reply else "nothing"
            print(f"Reply began with {first}, expected ff", file=sys.stderr)

        raise ProtocolDesyncError(f"No sync byte after {self.max_resync + 1} attempts")

    def nand_command(self, cmd):
        """Issue a NAND bus command (strobe) and return the adapter reply"""
        return self.sendcommand(cmd.encode(), REPLY_SIZE)

    def nand_receive(self, length):
        """Clock length bytes off the NAND bus"""
        return self.sendcommand(nand_recv_frame(length), length + 3)

    def nand_send(self, data):
        """Clock data onto the NAND bus in one frame and return the echo"""
        reply = self.sendcommand(nand_send_frame(data), MAX_FRAME_SIZE)
        return reply[:len(data)]

    def get_version(self):
        reply = self.sendcommand(control_frame(0x45, 0x13, 0x01), REPLY_SIZE)
        return reply[0] if reply else None

    def get_loader_version(self):
        reply = self.sendcommand(control_frame(0x4c, 0x07), REPLY_SIZE)
        if len(reply) < 2:
            return None
        return (reply[0], reply[1])

    def check_pld_id(self):
        """Return (pld_id, name, warning); warning is None for a known PLD"""
        reply = self.sendcommand(control_frame(0x4c, 0x15), REPLY_SIZE)
        pld_id = reply[0] if reply else None
        if pld_id is None or pld_id >= len(PLD_IDS):
            return pld_id, None, f"Unknown PLD ID {pld_id}"
        return pld_id, PLD_IDS[pld_id], None

    def select_flash(self, which):
        """On a dual-NAND adapter, route the bus to chip 0 or 1"""
        self.sendcommand(control_frame(0x45, 0x14, which), REPLY_SIZE)
