"""
Flash dump files: a flat sequence of (page_size + spare_size) byte pages,
no header. Page-addressed I/O plus the file-only utilities (check, strip,
sums) that never touch the programmer.
"""
import os
import sys

from nand_ecc import EccStatus, calc_page_ecc, check_ecc, stored_page_ecc


WII_NAND_MAGIC = b'\x27\xae\x8c\x9c'
PROGRESS_EVERY = 2048
SPINNER = "/-\\|"


class FileFormatError(ValueError):
    """Dump file failed a safety check and --force was not given"""


def read_page(fp, pageno, config):
    fp.seek(pageno * config.page_stride)
    return fp.read(config.page_stride)


def write_page(fp, pageno, data, config):
    fp.seek(pageno * config.page_stride)
    return fp.write(data)


def is_blank(data):
    return data.count(0xff) == len(data)


def file_length(fp):
    offset = fp.tell()
    fp.seek(0, os.SEEK_END)
    length = fp.tell()
    fp.seek(offset)
    return length


def check_file_validity(fp, config):
    """Return a list of warnings about a dump file; the file position is kept"""
    warnings = []
    offset = fp.tell()
    size = file_length(fp)

    if size % config.page_stride:
        warnings.append(f"This file does not seem to be a valid dump file, "
                        f"because its filesize ({size}) is not a multiple of {config.page_stride}")

    fp.seek(0)
    magic = fp.read(4)
    fp.seek(offset)
    if magic != WII_NAND_MAGIC:
        warnings.append("This file does not seem to be a Wii firmware dump")

    for w in warnings:
        print(f"WARNING: {w}", file=sys.stderr)
    return warnings


def print_file_size(size, config):
    num_pages = size // config.page_stride
    print(f"File size: {size} bytes / {num_pages} pages / "
          f"{num_pages // config.pages_per_block} blocks")


def draw_progress(pageno, num_pages, spin):
    pct = pageno * 100.0 / num_pages if num_pages else 100.0
    print(f"\r{pct:04.1f}%  {SPINNER[spin % len(SPINNER)]}", end='', flush=True)


def check_file_ecc(filename, config):
    """Classify every page of a dump by ECC status and print the totals

    Returns a dict of EccStatus -> page count.
    """
    totals = {status: 0 for status in EccStatus}
    print(f"Checking ECC for file {filename}")

    with open(filename, 'rb') as fp:
        size = file_length(fp)
        print_file_size(size, config)
        num_pages = size // config.page_stride

        for pageno in range(num_pages):
            page = read_page(fp, pageno, config)
            if pageno % PROGRESS_EVERY == 0:
                draw_progress(pageno, num_pages, pageno // PROGRESS_EVERY)

            status = check_ecc(page, config.page_size, config.spare_size)
            totals[status] += 1
            if status is EccStatus.WRONG:
                print(f"\n{pageno}: ecc WRONG")
                print(f"Stored ECC: {stored_page_ecc(page, config.page_size).hex(' ')}")
                print(f"Calc   ECC: {calc_page_ecc(page, config.page_size).hex(' ')}")

    print(f"\nTotals: {totals[EccStatus.OK]} pages OK, {totals[EccStatus.WRONG]} pages WRONG, "
          f"{totals[EccStatus.BLANK]} pages blank, {totals[EccStatus.INVALID]} pages unreadable")
    return totals


def strip_file_ecc(filename, config):
    """Write <filename>.raw holding only the data area of each page"""
    output_filename = f"{filename}.raw"

    with open(filename, 'rb') as fp:
        size = file_length(fp)
        if size % config.page_stride and not config.force:
            raise FileFormatError(f"File length is not a multiple of {config.page_stride} bytes. "
                                  f"Pass --force to strip it anyway.")

        print(f"Stripping ECC data from {filename} into {output_filename}")
        print_file_size(size, config)
        num_pages = size // config.page_stride

        with open(output_filename, 'wb') as out:
            for pageno in range(num_pages):
                if pageno % PROGRESS_EVERY == 0:
                    draw_progress(pageno, num_pages, pageno // PROGRESS_EVERY)
                page = fp.read(config.page_stride)
                out.write(page[:config.page_size])

    print()
    return output_filename


def generate_checksums(filename, config):
    """Write <filename>.out with one "<page> <set bits>" line per page, in hex"""
    output_filename = f"{filename}.out"
    print(f"Generating sums for file {filename}, outputting to {output_filename}")

    with open(filename, 'rb') as fp, open(output_filename, 'w') as out:
        size = file_length(fp)
        print_file_size(size, config)
        num_pages = size // config.page_stride

        for pageno in range(num_pages):
            page = read_page(fp, pageno, config)
            total = sum(bin(b).count('1') for b in page[:config.page_size])
            out.write(f"{pageno:x} {total:x}\n")
            if pageno % PROGRESS_EVERY == 0:
                draw_progress(pageno, num_pages, pageno // PROGRESS_EVERY)

    print()
    return output_filename
