#!/usr/bin/env python3
"""
Infectus NAND Flash Tool - program, dump and erase NAND flash chips

Drives a NAND flash chip through an Infectus 1/2 USB programmer. The
program command compares the chip against a dump file block by block and
erases and rewrites only the blocks that differ.

PREREQUISITES:
    - Infectus adapter attached and the target board powered on
    - PyUSB library installed: pip install pyusb
    - USB permissions configured for device access (or run as root)

COMMANDS:
    check       Check the ECC data of every page in a dump file
    strip       Strip spare/ECC data from a dump file into <file>.raw
    sums        Write the number of set bits of every page into <file>.out
    dump        Read the flash chip and dump it to a file
    program     Compare a file against the flash, reprogram blocks that differ
    erase       Erase the entire flash chip

PROGRESS MARKERS:
    =  page matches        x  page differs (block will be rewritten)
    F  blank page skipped  .  page written / dumped
    !  page still differs after writing
    -  page would be written (test mode)
    T  chip never reported ready

USAGE EXAMPLES:
    # Back up the chip
    python3 infectus_flash.py dump nand.bin

    # Bring the chip in line with a dump, checking every page
    python3 infectus_flash.py program nand.bin

    # Dry run with sampled comparison, second chip of a dual adapter
    python3 infectus_flash.py program -t -q -x 1 nand.bin
"""

import argparse
import sys
import time
from dataclasses import dataclass

import dump_file
from dump_file import FileFormatError
from infectus_usb import InfectusUSB
from nand_ecc import EccStatus, check_ecc
from nand_ops import FlashConfig, NandChip, StatusTimeout


VERSION = "0.5"
QUICK_CHECK_FIRST_PAGE = 2
QUICK_CHECK_STEP = 4


@dataclass
class RunStats:
    """Anomalies and work counted over a whole run"""
    blocks_done: int = 0
    blocks_reprogrammed: int = 0
    pages_written: int = 0
    pages_pending: int = 0
    pages_skipped_blank: int = 0
    verify_failures: int = 0
    status_timeouts: int = 0
    short_reads: int = 0
    ecc_warnings: int = 0

    def print_summary(self, elapsed):
        print(f"\nBlocks processed:    {self.blocks_done}")
        print(f"Blocks reprogrammed: {self.blocks_reprogrammed}")
        print(f"Pages written:       {self.pages_written}")
        if self.pages_pending:
            print(f"Pages not written:   {self.pages_pending} (test mode)")
        print(f"Blank pages skipped: {self.pages_skipped_blank}")
        print(f"Verify failures:     {self.verify_failures}")
        print(f"Status timeouts:     {self.status_timeouts}")
        print(f"Short reads:         {self.short_reads}")
        print(f"ECC warnings:        {self.ecc_warnings}")
        print(f"Elapsed:             {elapsed:.1f}s")


class ProgressEstimator:
    """Projects the time left from the block rate seen so far"""

    def __init__(self, num_blocks, clock=time.time):
        self.num_blocks = num_blocks
        self.clock = clock
        self.start_time = clock()
        self.blocks_done = 0

    def eta(self, blockno):
        """Seconds remaining, or None while there is too little history"""
        elapsed = self.clock() - self.start_time
        if self.blocks_done <= 2 or elapsed <= 0:
            return None
        rate = self.blocks_done / elapsed
        return int((self.num_blocks - blockno) / rate)

    def render(self, blockno):
        secs = self.eta(blockno)
        if secs is None:
            return ''
        pct = blockno * 100.0 / self.num_blocks
        remaining = f"{secs // 60}m" if secs > 180 else f"{secs}s"
        return f"{pct:04.1f}% {remaining}"

    def block_done(self, blockno):
        print(f" {self.render(blockno)}\r", end='', flush=True)
        self.blocks_done += 1


def start_block_line(blockno):
    print("\r" + " " * 69, end='')
    print(f"\r{blockno:04x} ", end='', flush=True)


def mark(ch):
    print(ch, end='', flush=True)


def compare_page(chip, fp, pageno, stats=None):
    """Return True when the chip page matches the file page byte for byte"""
    cfg = chip.config
    file_page = dump_file.read_page(fp, pageno, cfg)
    if check_ecc(file_page, cfg.page_size, cfg.spare_size) is EccStatus.WRONG:
        print(f"\nwarning, invalid ECC on disk for page {pageno}", file=sys.stderr)
        if stats is not None:
            stats.ecc_warnings += 1

    chip_page = chip.read_page(pageno)
    if len(chip_page) < cfg.page_stride and stats is not None:
        stats.short_reads += 1
    if check_ecc(chip_page, cfg.page_size, cfg.spare_size) is EccStatus.WRONG:
        print(f"\nwarning, invalid ECC in flash for page {pageno}", file=sys.stderr)
        if stats is not None:
            stats.ecc_warnings += 1

    return file_page == chip_page


def scan_pages(config):
    """Page indexes checked when deciding whether a block needs rewriting"""
    if config.quick_check:
        return range(QUICK_CHECK_FIRST_PAGE, config.pages_per_block, QUICK_CHECK_STEP)
    return range(config.pages_per_block)


def program_block(chip, fp, blockno, stats, progress=None):
    """Bring one block of the chip in line with the file

    Returns True when the block was erased and rewritten.
    """
    cfg = chip.config
    first_page = blockno * cfg.pages_per_block
    start_block_line(blockno)

    scan_start = time.time()
    differs = False
    for pageno in scan_pages(cfg):
        if not compare_page(chip, fp, first_page + pageno, stats):
            mark('x')
            differs = True
            break
        mark('=')
    if cfg.debug:
        print(f"Read({time.time() - scan_start:.3f})", file=sys.stderr)

    if progress is not None:
        progress.block_done(blockno)
    else:
        print('\r', end='')

    if differs:
        program_start = time.time()
        print("Erasing...", end='', flush=True)
        try:
            chip.erase_block(blockno)
        except StatusTimeout as e:
            print(f"\nBlock {blockno}: {e}", file=sys.stderr)
            stats.status_timeouts += 1

        print("\nProg: ", end='', flush=True)
        for pageno in range(first_page, first_page + cfg.pages_per_block):
            page = dump_file.read_page(fp, pageno, cfg)
            if len(page) != cfg.page_stride:
                continue
            if dump_file.is_blank(page):
                mark('F')
                stats.pages_skipped_blank += 1
                continue

            try:
                chip.write_page(pageno, page)
            except StatusTimeout as e:
                mark('T')
                print(f"\nPage {pageno}: {e}", file=sys.stderr)
                stats.status_timeouts += 1
                continue
            if cfg.test_mode:
                mark('-')
                stats.pages_pending += 1
                continue
            stats.pages_written += 1

            if cfg.verify_after_write:
                if compare_page(chip, fp, pageno, stats):
                    mark('.')
                else:
                    mark('!')
                    stats.verify_failures += 1
        if cfg.debug:
            print(f"Write({time.time() - program_start:.3f})", file=sys.stderr)
        print('\r', end='')
        if not cfg.test_mode:
            stats.blocks_reprogrammed += 1

    stats.blocks_done += 1
    return differs


def dump_block(chip, fp, blockno, stats, progress=None):
    """Append every page of one block to the dump file at its own offset"""
    cfg = chip.config
    first_page = blockno * cfg.pages_per_block
    start_block_line(blockno)

    for pageno in range(first_page, first_page + cfg.pages_per_block):
        page = chip.read_page(pageno)
        if len(page) == cfg.page_stride:
            dump_file.write_page(fp, pageno, page, cfg)
            mark('.')
        else:
            print(f"error, short read: {len(page)} < {cfg.page_stride}", file=sys.stderr)
            stats.short_reads += 1

    if progress is not None:
        progress.block_done(blockno)
    stats.blocks_done += 1


def program_file(chip, filename):
    """Reconcile every block from start_block against the file"""
    cfg = chip.config
    print(f"Programming file {filename} into flash")
    stats = RunStats()

    with open(filename, 'rb') as fp:
        warnings = dump_file.check_file_validity(fp, cfg)
        size = dump_file.file_length(fp)
        if size % cfg.page_stride and not cfg.force:
            raise FileFormatError(f"Refusing to program a file whose size is not a multiple of "
                                  f"{cfg.page_stride}; pass --force to override")

        num_pages = size // cfg.page_stride
        chip_pages = cfg.num_blocks * cfg.pages_per_block
        if num_pages < chip_pages:
            print(f"WARNING: File is too short; file is {num_pages} pages, chip is {chip_pages} pages",
                  file=sys.stderr)
            cfg.num_blocks = num_pages // cfg.pages_per_block
        elif num_pages > chip_pages:
            print(f"WARNING: File is too long; file is {num_pages} pages, chip is {chip_pages} pages",
                  file=sys.stderr)
        dump_file.print_file_size(size, cfg)

        progress = ProgressEstimator(cfg.num_blocks)
        for blockno in range(cfg.start_block, cfg.num_blocks):
            program_block(chip, fp, blockno, stats, progress)

    stats.print_summary(time.time() - progress.start_time)
    return stats, warnings


def dump_chip(chip, filename):
    cfg = chip.config
    offset = cfg.start_block * cfg.block_stride
    length = cfg.num_blocks * cfg.block_stride
    print(f"Dumping flash @ 0x{offset:x} (0x{length - offset:x} bytes) into {filename}")
    stats = RunStats()

    with open(filename, 'wb') as fp:
        progress = ProgressEstimator(cfg.num_blocks)
        for blockno in range(cfg.start_block, cfg.num_blocks):
            dump_block(chip, fp, blockno, stats, progress)

    print("\nDone!")
    stats.print_summary(time.time() - progress.start_time)
    return stats


def erase_chip(chip):
    cfg = chip.config
    print(f"Erasing {cfg.num_blocks} blocks")
    stats = RunStats()
    for blockno in range(cfg.num_blocks):
        try:
            chip.erase_block(blockno)
        except StatusTimeout as e:
            print(f"Block {blockno}: {e}", file=sys.stderr)
            stats.status_timeouts += 1
        stats.blocks_done += 1
    print("Done!")
    return stats


def open_chip(usb, config):
    """Reset a connected adapter, report its identity, select and identify the chip"""
    chip = NandChip(usb, config)
    chip.reset()

    print(f"Infectus version (?) = {usb.get_version()}")
    loader = usb.get_loader_version()
    if loader is not None:
        print(f"Infectus Loader version = {loader[0]}.{loader[1]}")

    pld_id, name, warning = usb.check_pld_id()
    if warning:
        print(warning, file=sys.stderr)
    else:
        print(f"PLD ID: {name}")

    usb.select_flash(config.chip_select)
    time.sleep(0.001)

    chip_id, info = chip.identify()
    print(f"ID = {chip_id:x}")
    print(f"Detected {info.vendor} {info.density} flash")
    config.num_blocks = info.num_blocks
    return chip


def build_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-b', '--chunk-size', dest='subpage_size', type=lambda s: int(s, 0),
                        default=FlashConfig.subpage_size,
                        help=f'transfer chunk size; default 0x{FlashConfig.subpage_size:x}')
    common.add_argument('-t', '--test', dest='test_mode', action='store_true',
                        help='test mode -- do not erase or write')
    common.add_argument('-v', '--verify', dest='verify_after_write', action='store_true', default=True,
                        help='verify every page after writing it (default)')
    common.add_argument('--no-verify', dest='verify_after_write', action='store_false',
                        help='do not read pages back after writing')
    common.add_argument('-w', '--wait', dest='check_status', action='store_true',
                        help='wait for ready status after each erase/program')
    common.add_argument('-x', '--chip', dest='chip_select', type=int, choices=[0, 1], default=0,
                        help='on a dual NAND programmer, choose chip')
    common.add_argument('-f', '--force', action='store_true',
                        help='force: ignore safety checks. Dangerous!')
    common.add_argument('-d', '--debug', action='store_true',
                        help='debug (trace every USB frame)')
    common.add_argument('-s', '--start-block', type=lambda s: int(s, 0), default=0,
                        help='skip this number of blocks before proceeding')
    common.add_argument('-q', '--quick', dest='quick_check', action='store_true',
                        help='quick check: compare every 4th page of each block')

    parser = argparse.ArgumentParser(
        description=f'Infectus NAND Flash Tool v{VERSION} - program, dump and erase NAND flash',
        epilog='Example: python3 infectus_flash.py program nand.bin'
    )
    subparsers = parser.add_subparsers(dest='command', required=True, help='Command to execute')

    for name, help_text in [
        ('check', 'check ECC data in file'),
        ('strip', 'strip ECC data from file'),
        ('sums', 'calculate simple checksum for each page of a file'),
        ('dump', 'read from flash chip and dump to file'),
        ('program', 'compare file to flash contents, reprogram flash to match file'),
    ]:
        cmd = subparsers.add_parser(name, parents=[common], help=help_text)
        cmd.add_argument('filename', help='dump file')

    subparsers.add_parser('erase', parents=[common], help='erase the entire flash chip')
    return parser


def config_from_args(args):
    return FlashConfig(
        subpage_size=args.subpage_size,
        chip_select=args.chip_select,
        test_mode=args.test_mode,
        verify_after_write=args.verify_after_write,
        check_status=args.check_status,
        force=args.force,
        debug=args.debug,
        start_block=args.start_block,
        quick_check=args.quick_check,
    ).validate()


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    print(f"infectus_flash version {VERSION}")

    try:
        config = config_from_args(args)
        if config.debug:
            print(f"command = {args.command}")
            print(config)

        if args.command == 'check':
            dump_file.check_file_ecc(args.filename, config)
            return 0
        if args.command == 'strip':
            dump_file.strip_file_ecc(args.filename, config)
            return 0
        if args.command == 'sums':
            dump_file.generate_checksums(args.filename, config)
            return 0

        usb = InfectusUSB(debug=config.debug, max_resync=config.max_resync)
        usb.connect()
        try:
            chip = open_chip(usb, config)
            if args.command == 'program':
                stats, _ = program_file(chip, args.filename)
                return 1 if stats.verify_failures or stats.status_timeouts else 0
            if args.command == 'dump':
                stats = dump_chip(chip, args.filename)
                return 1 if stats.short_reads else 0
            if args.command == 'erase':
                stats = erase_chip(chip)
                return 1 if stats.status_timeouts else 0
        finally:
            usb.close()

    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user")
        return 1
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
