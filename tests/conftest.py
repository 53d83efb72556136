"""
Synthetic NCSD/NCCH images for the ncchinfo tests.

Headers are assembled byte by byte with struct.pack_into at the offsets
documented on 3dbrew, independently of the record layouts under test.
"""

import struct

import pytest

MEDIA_UNIT = 0x200

TITLE_ID = bytes([0x01, 0x02, 0x03, 0x04, 0x05, 0x06, 0x07, 0x08])
PROGRAM_ID = bytes([0x11, 0x22, 0x33, 0x44, 0x55, 0x66, 0x77, 0x88])
SIGNATURE = bytes(range(256))


def build_ncch(
    title_id=TITLE_ID,
    program_id=PROGRAM_ID,
    format_version=2,
    crypto_flag=0x00,
    exhdr_size=0,
    exefs=(0, 0),
    romfs=(0, 0),
    product_code=b"CTR-P-TEST",
    signature=SIGNATURE,
    magic=b"NCCH",
):
    """Build a 0x200-byte NCCH header; exefs/romfs are (offset, size) in media units."""
    header = bytearray(0x200)
    header[0x000:0x100] = signature
    header[0x100:0x104] = magic
    header[0x108:0x110] = title_id
    header[0x112] = format_version
    header[0x118:0x120] = program_id
    header[0x150:0x160] = product_code.ljust(16, b"\x00")
    struct.pack_into("<I", header, 0x180, exhdr_size)
    header[0x18B] = crypto_flag
    struct.pack_into("<II", header, 0x1A0, *exefs)
    struct.pack_into("<II", header, 0x1B0, *romfs)
    return bytes(header)


def build_ncsd(partitions, title_id=TITLE_ID):
    """
    Build an NCSD image.

    Args:
        partitions: Mapping of slot index to (offset in media units, NCCH header bytes)
    """
    end = max(
        [0x200] + [offset * MEDIA_UNIT + len(ncch) for offset, ncch in partitions.values()]
    )
    image = bytearray(end)
    image[0x000:0x100] = bytes(0x100)
    image[0x100:0x104] = b"NCSD"
    image[0x108:0x110] = title_id
    for slot, (offset, ncch) in partitions.items():
        struct.pack_into("<II", image, 0x120 + slot * 8, offset, len(ncch) // MEDIA_UNIT)
        image[offset * MEDIA_UNIT : offset * MEDIA_UNIT + len(ncch)] = ncch
    return bytes(image)


@pytest.fixture
def write_image(tmp_path):
    """Write image bytes under tmp_path and return the path as a string."""

    def _write(name, data):
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)

    return _write


@pytest.fixture
def basic_ncch():
    """Format version 2 NCCH with a 1-unit ExHeader and an ExeFS at unit 5 (10 units), no RomFS."""
    return build_ncch(format_version=2, exhdr_size=1, exefs=(5, 10))
