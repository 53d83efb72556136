#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
NCCHInfo - ncchinfo.bin generator for Nintendo 3DS CCI and CXI images

Reads the headers of 3DS content images and writes the ncchinfo.bin
descriptor consumed by console-side xorpad generators:
- NCSD (CTR Cart Image) - gamecard image holding up to eight NCCH partitions
- NCCH (CTR eXecutable Image / CTR File Archive) - a single signed content container

Core functionality:
- Signature-driven detection of NCSD and NCCH images
- Declarative struct layouts with per-record and per-field byte order
- Per-section AES-CTR counter derivation for NCCH format versions 0, 1 and 2
- ExHeader, ExeFS (normal and 7.x) and RomFS descriptor entries

Technical implementation details:
- All offsets and sizes in NCSD/NCCH headers are expressed in 0x200-byte media units
- KeyY is the first 16 bytes of the NCCH header RSA-2048 signature
- Section sizes are rounded up to whole megabytes for xorpad generation
- The descriptor is assembled in memory and written atomically
"""

import argparse
import glob
import os
import sys
import tempfile
import traceback
from enum import IntEnum

from art import text2art
from Crypto.Util.number import long_to_bytes


class Config:
    """
    Configuration constants for the NCSD/NCCH and ncchinfo.bin formats.

    These values are derived from file format documentation
    and reverse engineering of the 3DS content structures.
    https://www.3dbrew.org/wiki/NCCH
    """

    # Media unit - every offset and size in NCSD/NCCH headers is counted in 512-byte units
    MEDIA_UNIT_SIZE = 0x200

    BYTES_PER_MEGABYTE = 1024 * 1024

    # Both header shapes store their magic right after the 0x100-byte RSA signature
    SIGNATURE_OFFSET = 0x100
    NCSD_MAGIC = b"NCSD"
    NCCH_MAGIC = b"NCCH"

    # ExHeader always follows the NCCH header directly
    EXHEADER_OFFSET = 0x200

    KEY_Y_SIZE = 16

    # flags[3] value selecting 9.x seed crypto
    SEED_CRYPTO_FLAG = 0x20

    SUPPORTED_FORMAT_VERSIONS = (0, 1, 2)

    # ncchinfo.bin layout
    OUTPUT_FILENAME = "ncchinfo.bin"
    OUTPUT_NAME_SIZE = 112
    NCCHINFO_RESERVED = 0xFFFFFFFF
    NCCHINFO_VERSION = 0xF0000004

    PARTITION_NAMES = (
        "Main",
        "Manual",
        "DownloadPlay",
        "Partition4",
        "Partition5",
        "Partition6",
        "Partition7",
        "UpdateData",
    )


class NCCHInfoError(Exception):
    """Base exception for ncchinfo operations."""

    pass


class FormatError(NCCHInfoError):
    """Exception for truncated or malformed image headers."""

    pass


class UnrecognizedSignatureError(FormatError):
    """Exception for headers that carry neither the NCSD nor the NCCH magic."""

    pass


class UnsupportedFormatVersionError(FormatError):
    """Exception for NCCH headers with a format version outside 0-2 (strict mode only)."""

    pass


class LabelOverflowError(NCCHInfoError):
    """Exception for xorpad output names that do not fit the 112-byte name field."""

    pass


class InputNotFoundError(NCCHInfoError):
    """Exception for input patterns that match no files."""

    pass


class LayoutError(TypeError):
    """Raised when a struct layout is declared incorrectly."""

    pass


class ByteOrder(IntEnum):
    """
    Byte order of a struct or struct field.

    DEFAULT keeps the byte order of the running machine, so fields
    resolving to it are never converted.
    """

    DEFAULT = 0
    BIG_ENDIAN = 1
    LITTLE_ENDIAN = 2


NATIVE_BYTE_ORDER = (
    ByteOrder.LITTLE_ENDIAN if sys.byteorder == "little" else ByteOrder.BIG_ENDIAN
)


class Field:
    """
    A single entry of a struct layout.

    A field is either a scalar unsigned integer, a fixed-size array of
    unsigned integers (a byte array when the element width is 1), or a
    fixed-size array of nested records. Arrays must declare their element
    count; the layout refuses to be built otherwise.
    """

    def __init__(self, name, width=1, count=None, is_array=False, byte_order=None, record=None):
        """
        Args:
            name: Attribute name of the field on the record
            width: Width of one element in bytes
            count: Number of elements (arrays only)
            is_array: Whether the field holds a fixed-size array
            byte_order: ByteOrder override, or None to inherit the struct's order
            record: Record subclass for arrays of nested records
        """
        self.name = name
        self.width = record.struct_size() if record is not None else width
        self.count = count
        self.is_array = is_array
        self.byte_order = byte_order
        self.record = record

    @property
    def element_count(self):
        return self.count if self.is_array else 1

    @property
    def size(self):
        return self.width * self.element_count

    @property
    def is_bytes(self):
        return self.is_array and self.record is None and self.width == 1

    def default_value(self):
        if self.record is not None:
            return [self.record() for _ in range(self.count)]
        if self.is_bytes:
            return bytes(self.count)
        if self.is_array:
            return [0] * self.count
        return 0


def uint(name, width, byte_order=None):
    """Declare an unsigned integer field of `width` bytes."""
    return Field(name, width=width, byte_order=byte_order)


def byte_array(name, count, byte_order=None):
    """Declare a fixed-size byte array field."""
    return Field(name, width=1, count=count, is_array=True, byte_order=byte_order)


def uint_array(name, width, count, byte_order=None):
    """Declare a fixed-size array of unsigned integers of `width` bytes each."""
    return Field(name, width=width, count=count, is_array=True, byte_order=byte_order)


def record_array(name, record, count):
    """Declare a fixed-size array of nested records."""
    return Field(name, count=count, is_array=True, record=record)


class StructLayout:
    """
    Declarative, packed (1-byte aligned) binary layout of a record.

    The layout is the single source for both directions: `pack` turns a
    mapping of field values into bytes and `unpack` turns bytes back into
    that mapping. Values are laid out in the byte order of the running
    machine first; every field whose effective byte order differs is then
    reversed in place, element by element. The effective byte order of a
    field is its own override, else the struct's declared order, else the
    machine's order.

    Nested records keep the byte order declared by their own layout.
    """

    def __init__(self, name, fields, byte_order=None):
        """
        Build and validate the layout.

        Args:
            name: Struct name used in error messages
            fields: Sequence of Field declarations in storage order
            byte_order: Default ByteOrder of the struct, or None for machine order

        Raises:
            LayoutError: If an array field lacks an element count, a field
                name is repeated, or a nested record field declares a byte order
        """
        self.name = name
        self.fields = list(fields)
        self.byte_order = byte_order
        self.offsets = {}

        offset = 0
        for field in self.fields:
            if field.is_array and not field.count:
                raise LayoutError(
                    f"Struct {name} contains array field '{field.name}' "
                    f"without an element count"
                )
            if field.name in self.offsets:
                raise LayoutError(f"Struct {name} declares field '{field.name}' twice")
            if field.record is not None and field.byte_order is not None:
                raise LayoutError(
                    f"Struct {name} field '{field.name}' holds records, "
                    f"which carry their own byte order"
                )
            self.offsets[field.name] = offset
            offset += field.size

        self.size = offset

    def field_byte_order(self, field):
        """
        Resolve the concrete byte order a field is stored in.

        Returns:
            ByteOrder.BIG_ENDIAN or ByteOrder.LITTLE_ENDIAN
        """
        if field.byte_order is not None:
            order = field.byte_order
        elif self.byte_order is not None:
            order = self.byte_order
        else:
            order = ByteOrder.DEFAULT

        if order == ByteOrder.DEFAULT:
            return NATIVE_BYTE_ORDER
        return order

    def _fix_byte_order(self, buffer):
        """Reverse, in place, every element span whose byte order differs from the machine's."""
        for field in self.fields:
            if field.record is not None:
                continue
            if self.field_byte_order(field) == NATIVE_BYTE_ORDER:
                continue

            start = self.offsets[field.name]
            for i in range(field.element_count):
                lo = start + i * field.width
                hi = lo + field.width
                buffer[lo:hi] = buffer[lo:hi][::-1]

    def _store(self, buffer, field, value):
        start = self.offsets[field.name]

        if field.is_bytes:
            value = bytes(value)
            if len(value) != field.count:
                raise ValueError(
                    f"{self.name}.{field.name} needs {field.count} bytes, got {len(value)}"
                )
            buffer[start : start + field.count] = value
            return

        elements = list(value) if field.is_array else [value]
        if len(elements) != field.element_count:
            raise ValueError(
                f"{self.name}.{field.name} needs {field.element_count} elements, "
                f"got {len(elements)}"
            )
        for i, element in enumerate(elements):
            lo = start + i * field.width
            buffer[lo : lo + field.width] = int(element).to_bytes(
                field.width, byteorder=sys.byteorder
            )

    def pack(self, values):
        """
        Encode field values into bytes.

        Args:
            values: Mapping of field name to value

        Returns:
            Encoded struct as bytes (exactly `size` bytes long)
        """
        buffer = bytearray(self.size)

        for field in self.fields:
            if field.record is None:
                self._store(buffer, field, values[field.name])

        self._fix_byte_order(buffer)

        for field in self.fields:
            if field.record is None:
                continue
            elements = list(values[field.name])
            if len(elements) != field.count:
                raise ValueError(
                    f"{self.name}.{field.name} needs {field.count} records, got {len(elements)}"
                )
            start = self.offsets[field.name]
            for i, element in enumerate(elements):
                lo = start + i * field.width
                buffer[lo : lo + field.width] = element.to_bytes()

        return bytes(buffer)

    def unpack(self, data):
        """
        Decode bytes into field values.

        Args:
            data: Buffer holding at least `size` bytes; extra bytes are ignored

        Returns:
            Dictionary mapping field name to decoded value

        Raises:
            ValueError: If the buffer is shorter than the struct
        """
        if len(data) < self.size:
            raise ValueError(f"{self.name} needs {self.size} bytes, got {len(data)}")

        raw = bytes(data[: self.size])
        buffer = bytearray(raw)
        self._fix_byte_order(buffer)

        values = {}
        for field in self.fields:
            start = self.offsets[field.name]
            if field.record is not None:
                values[field.name] = [
                    field.record.from_bytes(
                        raw[start + i * field.width : start + (i + 1) * field.width]
                    )
                    for i in range(field.count)
                ]
            elif field.is_bytes:
                values[field.name] = bytes(buffer[start : start + field.count])
            else:
                elements = [
                    int.from_bytes(
                        buffer[start + i * field.width : start + (i + 1) * field.width],
                        byteorder=sys.byteorder,
                    )
                    for i in range(field.element_count)
                ]
                values[field.name] = elements if field.is_array else elements[0]

        return values


class Record:
    """
    Base class for fixed-layout binary records.

    Subclasses declare a class-level LAYOUT (a StructLayout); every field of
    the layout becomes an attribute, defaulting to zero when not given.
    """

    LAYOUT = None

    def __init__(self, **values):
        layout = self._get_layout()
        for field in layout.fields:
            if field.name in values:
                setattr(self, field.name, values.pop(field.name))
            else:
                setattr(self, field.name, field.default_value())
        if values:
            raise TypeError(
                f"{type(self).__name__} has no field(s): {', '.join(sorted(values))}"
            )

    @classmethod
    def _get_layout(cls):
        if cls.LAYOUT is None:
            raise LayoutError(f"{cls.__name__} does not declare a LAYOUT")
        return cls.LAYOUT

    @classmethod
    def struct_size(cls):
        return cls._get_layout().size

    @classmethod
    def from_bytes(cls, data):
        return cls(**cls._get_layout().unpack(data))

    def to_bytes(self):
        return self._get_layout().pack(self.as_dict())

    def as_dict(self):
        return {field.name: getattr(self, field.name) for field in self._get_layout().fields}

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __repr__(self):
        fields = ", ".join(f"{name}={value!r}" for name, value in self.as_dict().items())
        return f"{type(self).__name__}({fields})"


class PartitionEntry(Record):
    """NCSD partition table slot: offset and size in media units (offset 0 = empty slot)."""

    LAYOUT = StructLayout(
        "PartitionEntry",
        [
            uint("offset", 4),
            uint("size", 4),
        ],
        byte_order=ByteOrder.LITTLE_ENDIAN,
    )


class NCSDHeader(Record):
    """
    NCSD (CTR Cart Image) header, 0x200 bytes at the start of a gamecard image.

    Structure:
    - signature (0x100 bytes): RSA-2048 signature of the header
    - magic (4 bytes): "NCSD"
    - media_size (4 bytes): Image size in media units
    - title_id (8 bytes): Media ID, little-endian
    - partition_table (8 x 8 bytes): Offset/size of each NCCH partition in media units
    - flags, partition ID table and padding
    """

    LAYOUT = StructLayout(
        "NCSDHeader",
        [
            byte_array("signature", 0x100),
            byte_array("magic", 4),
            uint("media_size", 4),
            byte_array("title_id", 8),
            byte_array("padding0", 0x10),
            record_array("partition_table", PartitionEntry, 8),
            byte_array("padding1", 0x28),
            byte_array("flags", 8),
            byte_array("ncch_id_table", 0x40),
            byte_array("padding2", 0x30),
        ],
        byte_order=ByteOrder.LITTLE_ENDIAN,
    )


class NCCHHeader(Record):
    """
    NCCH header, 0x200 bytes at the start of every CXI/CFA container.

    Structure (relevant fields):
    - signature (0x100 bytes): RSA-2048 signature; its first 16 bytes are the KeyY
    - magic (4 bytes): "NCCH"
    - title_id (8 bytes): Partition ID, little-endian
    - format_version (1 byte): Selects the AES counter layout
    - program_id (8 bytes): Program ID, little-endian
    - product_code (16 bytes): ASCII, NUL-padded
    - exhdr_size (4 bytes): ExHeader size; the ExHeader always sits at 0x200
    - flags (8 bytes): flags[3] selects 7.x (non-zero) / 9.x seed (0x20) crypto
    - exefs_offset/exefs_size, romfs_offset/romfs_size (4 bytes each, media units)
    """

    LAYOUT = StructLayout(
        "NCCHHeader",
        [
            byte_array("signature", 0x100),
            byte_array("magic", 4),
            uint("content_size", 4),
            byte_array("title_id", 8),
            uint("maker_code", 2),
            uint("format_version", 1),
            uint("format_version2", 1),
            uint("padding0", 4),
            byte_array("program_id", 8),
            byte_array("padding1", 0x10),
            byte_array("logo_hash", 0x20),
            byte_array("product_code", 0x10),
            byte_array("exhdr_hash", 0x20),
            uint("exhdr_size", 4),
            uint("padding2", 4),
            byte_array("flags", 8),
            uint("plain_region_offset", 4),
            uint("plain_region_size", 4),
            uint("logo_offset", 4),
            uint("logo_size", 4),
            uint("exefs_offset", 4),
            uint("exefs_size", 4),
            uint("exefs_hash_size", 4),
            uint("padding4", 4),
            uint("romfs_offset", 4),
            uint("romfs_size", 4),
            uint("romfs_hash_size", 4),
            uint("padding5", 4),
            byte_array("exefs_hash", 0x20),
            byte_array("romfs_hash", 0x20),
        ],
        byte_order=ByteOrder.LITTLE_ENDIAN,
    )

    @property
    def key_y(self):
        return bytes(self.signature[: Config.KEY_Y_SIZE])

    @property
    def uses_7x_crypto(self):
        return self.flags[3] != 0x00

    @property
    def uses_seed_crypto(self):
        return self.flags[3] == Config.SEED_CRYPTO_FLAG

    @property
    def product_code_text(self):
        return self.product_code.decode("ascii", errors="replace").rstrip("\x00")


class NCCHInfoHeader(Record):
    """ncchinfo.bin file header (16 bytes)."""

    LAYOUT = StructLayout(
        "NCCHInfoHeader",
        [
            uint("reserved", 4),
            uint("version", 4),
            uint("entries", 4),
            uint("reserved2", 4),
        ],
        byte_order=ByteOrder.LITTLE_ENDIAN,
    )

    @classmethod
    def for_entries(cls, count):
        return cls(
            reserved=Config.NCCHINFO_RESERVED,
            version=Config.NCCHINFO_VERSION,
            entries=count,
            reserved2=0,
        )


class NCCHInfoEntry(Record):
    """
    One ncchinfo.bin entry (168 bytes), describing the xorpad of one NCCH section.

    Entry structure:
    - counter (16 bytes): AES-CTR initial counter, big-endian
    - key_y (16 bytes): KeyY taken from the NCCH signature
    - size (4 bytes): Section size in megabytes, rounded up
    - reserved (4 bytes): Always 0
    - uses_7x_crypto (4 bytes): 1 if the section uses 7.x crypto
    - uses_seed_crypto (4 bytes): 1 if the section uses 9.x seed crypto
    - title_id (8 bytes): Program ID of the NCCH
    - output_name (112 bytes): UTF-8 xorpad file name, NUL-padded

    The 7.x flag precedes the seed flag. NCCHInfo.cs and the v4 ncchinfo.bin
    readers built from it store the seed flag first.
    """

    LAYOUT = StructLayout(
        "NCCHInfoEntry",
        [
            byte_array("counter", 16, byte_order=ByteOrder.BIG_ENDIAN),
            byte_array("key_y", 16, byte_order=ByteOrder.DEFAULT),
            uint("size", 4),
            uint("reserved", 4),
            uint("uses_7x_crypto", 4),
            uint("uses_seed_crypto", 4),
            byte_array("title_id", 8, byte_order=ByteOrder.DEFAULT),
            byte_array("output_name", Config.OUTPUT_NAME_SIZE, byte_order=ByteOrder.DEFAULT),
        ],
        byte_order=ByteOrder.LITTLE_ENDIAN,
    )

    @property
    def output_name_text(self):
        return self.output_name.rstrip(b"\x00").decode("utf-8")


class NCCHSection(IntEnum):
    """NCCH sections with their own xorpad; the value is part of the v0/v2 counter."""

    EXHEADER = 1
    EXEFS = 2
    ROMFS = 3


SECTION_NAMES = {
    NCCHSection.EXHEADER: "ExHeader",
    NCCHSection.EXEFS: "ExeFS",
    NCCHSection.ROMFS: "RomFS",
}


def title_id_to_str(raw):
    """
    Render a little-endian 3DS identifier as text.

    Bytes are taken in reverse storage order, so b"\\x01\\x02...\\x08"
    becomes "0807060504030201".
    """
    return bytes(raw)[::-1].hex().upper()


def to_hex(raw):
    return bytes(raw).hex().upper()


def partition_name(index):
    if 0 <= index < len(Config.PARTITION_NAMES):
        return Config.PARTITION_NAMES[index]
    return "UNKNOWN"


def megabytes_rounded_up(size):
    """
    Convert a byte count to whole megabytes, rounding up.

    Args:
        size: Size in bytes

    Returns:
        Number of megabytes needed to hold `size` bytes (0 for 0)
    """
    megabytes, remainder = divmod(size, Config.BYTES_PER_MEGABYTE)
    if remainder:
        megabytes += 1
    return megabytes


def ncch_aes_counter(title_id, format_version, section, offset):
    """
    Build the AES-CTR initial counter of an NCCH section.

    Counter layout (same scheme as ctrtool):
    - Format version 0 and 2: title ID in reverse storage order, then the
      section number, then 7 zero bytes
    - Format version 1: title ID in storage order, 4 zero bytes, then the
      section byte offset as a big-endian 32-bit integer

    Any other format version yields an all-zero counter.

    Args:
        title_id: Raw 8-byte title ID from the NCCH header
        format_version: NCCH format version
        section: NCCHSection the counter is for
        offset: Byte offset of the section inside the NCCH

    Returns:
        16-byte counter
    """
    counter = bytearray(16)
    if format_version in (0, 2):
        counter[0:8] = bytes(title_id)[::-1]
        counter[8] = int(section)
    elif format_version == 1:
        counter[0:8] = bytes(title_id)
        counter[12:16] = long_to_bytes(offset & 0xFFFFFFFF, 4)
    return bytes(counter)


def generate_output_name(title_id, partition, section_tag):
    """
    Build the NUL-padded xorpad file name of an entry.

    Args:
        title_id: Title ID text (see title_id_to_str)
        partition: Partition name
        section_tag: One of exheader, exefs_norm, exefs_7x, romfs

    Returns:
        UTF-8 encoded name padded to Config.OUTPUT_NAME_SIZE bytes

    Raises:
        LabelOverflowError: If the encoded name does not fit the name field
    """
    name = f"/{title_id}.{partition}.{section_tag}.xorpad"
    encoded = name.encode("utf-8")
    if len(encoded) > Config.OUTPUT_NAME_SIZE:
        raise LabelOverflowError(
            f"Output file name too large ({len(encoded)} > {Config.OUTPUT_NAME_SIZE} bytes): {name}"
        )
    return encoded.ljust(Config.OUTPUT_NAME_SIZE, b"\x00")


def resolve_pattern(pattern):
    """
    Expand a file pattern to the list of matching files.

    Wildcards are only honoured in the file name part and only the
    directory named by the pattern is searched (no recursion). A path that
    names an existing file is returned as-is, even if it contains glob
    characters.

    Args:
        pattern: File path, optionally with wildcards in its last component

    Returns:
        Sorted list of absolute file paths

    Raises:
        InputNotFoundError: If nothing matches
    """
    if os.path.isfile(pattern):
        return [os.path.abspath(pattern)]

    directory, filename_pattern = os.path.split(pattern)
    directory = os.path.abspath(directory or ".")
    candidates = glob.glob(os.path.join(glob.escape(directory), filename_pattern))
    matches = sorted(path for path in candidates if os.path.isfile(path))
    if not matches:
        raise InputNotFoundError(f'No files match "{pattern}"')
    return matches


class ConsoleReporter:
    """
    Console output shared by all handlers.

    Messages go to the registered progress callback when there is one,
    otherwise to stdout (stderr for errors), flushed line by line. Text the
    console cannot encode is printed with replacement characters.
    """

    def __init__(self, progress_callback=None):
        self.progress_callback = progress_callback

    def _emit(self, message, stream):
        if self.progress_callback:
            self.progress_callback(message + "\n")
            return
        try:
            print(message, file=stream)
        except UnicodeEncodeError:
            safe_message = message.encode("ascii", errors="replace").decode("ascii")
            print(safe_message, file=stream)
        stream.flush()

    def _print(self, message):
        self._emit(message, sys.stdout)

    def _print_error(self, message):
        self._emit(message, sys.stderr)


class SectionResolver(ConsoleReporter):
    """
    Turns one section of a decoded NCCH header into an ncchinfo.bin entry.

    Resolves the section's byte offset and size, its AES counter and its
    size in megabytes, and narrates them.
    """

    def section_offset(self, header, section):
        """
        Byte offset of a section inside its NCCH.

        Raises:
            ValueError: If `section` is not an NCCHSection
        """
        if section == NCCHSection.EXHEADER:
            return Config.EXHEADER_OFFSET
        if section == NCCHSection.EXEFS:
            return header.exefs_offset * Config.MEDIA_UNIT_SIZE
        if section == NCCHSection.ROMFS:
            return header.romfs_offset * Config.MEDIA_UNIT_SIZE
        raise ValueError(f"Illegal NCCH section type: {section!r}")

    def section_size(self, header, section):
        """Byte size of a section (0 if the section is absent)."""
        if section == NCCHSection.EXHEADER:
            return header.exhdr_size * Config.MEDIA_UNIT_SIZE
        if section == NCCHSection.EXEFS:
            return header.exefs_size * Config.MEDIA_UNIT_SIZE
        if section == NCCHSection.ROMFS:
            return header.romfs_size * Config.MEDIA_UNIT_SIZE
        raise ValueError(f"Illegal NCCH section type: {section!r}")

    def counter(self, header, section):
        return ncch_aes_counter(
            header.title_id,
            header.format_version,
            section,
            self.section_offset(header, section),
        )

    def resolve(
        self,
        header,
        section,
        output_name,
        uses_7x_crypto=False,
        uses_seed_crypto=False,
        verbose=True,
        indent="  ",
    ):
        """
        Build the ncchinfo.bin entry of one NCCH section.

        Args:
            header: Decoded NCCHHeader
            section: NCCHSection to describe
            output_name: Padded xorpad file name (see generate_output_name)
            uses_7x_crypto: Value of the entry's 7.x crypto flag
            uses_seed_crypto: Value of the entry's seed crypto flag
            verbose: Whether to print offset, counter and size
            indent: Prefix of every printed line

        Returns:
            NCCHInfoEntry, or None if the section is absent (size 0)
        """
        size = self.section_size(header, section)
        if size == 0:
            return None

        offset = self.section_offset(header, section)
        counter = self.counter(header, section)
        size_mb = megabytes_rounded_up(size)

        entry = NCCHInfoEntry(
            counter=counter,
            key_y=header.key_y,
            size=size_mb,
            reserved=0,
            uses_7x_crypto=1 if uses_7x_crypto else 0,
            uses_seed_crypto=1 if uses_seed_crypto else 0,
            title_id=bytes(header.program_id),
            output_name=output_name,
        )

        if verbose:
            name = SECTION_NAMES[section]
            self._print(f"{indent}{name} offset:  {offset:08X}")
            self._print(f"{indent}{name} counter: {to_hex(counter)}")
            self._print(f"{indent}{name} Megabytes(rounded up): {size_mb}")

        return entry


class NCCHParser(ConsoleReporter):
    """
    Decodes NCSD and NCCH images into ncchinfo.bin entries.

    The magic at offset 0x100 selects the image type:
    - NCSD: every partition slot with a non-zero offset holds an NCCH
      that is decoded in slot order, labelled with the NCSD title ID
    - NCCH: the image is a single standalone NCCH ("Main" partition)

    Entries of one NCCH are emitted in the order ExHeader, ExeFS (normal),
    ExeFS (7.x, only with 7.x crypto), RomFS.
    """

    def __init__(self, progress_callback=None, strict=False):
        """
        Args:
            progress_callback: Optional callback function for progress updates
            strict: Reject NCCH format versions without a known counter layout
        """
        super().__init__(progress_callback)
        self.strict = strict
        self.resolver = SectionResolver(progress_callback)

    def parse(self, filepath):
        """
        Parse an image file.

        Args:
            filepath: Path to a CCI/3DS or CXI/CFA file

        Returns:
            List of NCCHInfoEntry (empty if the file is not recognized)

        Raises:
            FormatError: If a header is truncated or malformed
            LabelOverflowError: If an output name does not fit its field
            OSError: If the file cannot be read
        """
        with open(filepath, "rb") as f:
            return self.parse_stream(f, filepath)

    def parse_stream(self, stream, name="<stream>"):
        """Parse an image from a seekable binary stream; `name` is only used for messages."""
        signature = self.read_signature(stream)

        if signature == Config.NCSD_MAGIC:
            return self._parse_ncsd(stream, name)
        if signature == Config.NCCH_MAGIC:
            return self._parse_ncch(stream, name)

        self._print(f'File "{name}" does not have a valid signature.')
        return []

    def read_signature(self, stream, offset=Config.SIGNATURE_OFFSET):
        stream.seek(offset)
        return stream.read(4)

    def _read_record(self, stream, record, offset):
        stream.seek(offset)
        size = record.struct_size()
        data = stream.read(size)
        if len(data) < size:
            raise FormatError(
                f"Truncated {record.__name__} at offset 0x{offset:08X}: "
                f"expected {size} bytes, got {len(data)}"
            )
        return record.from_bytes(data)

    def _parse_ncsd(self, stream, name):
        self._print(f'Parsing NCSD in file "{name}"')

        header = self._read_record(stream, NCSDHeader, 0)
        title_id = title_id_to_str(header.title_id)

        entries = []
        for idx, partition in enumerate(header.partition_table):
            if partition.offset == 0:
                continue
            try:
                entries.extend(
                    self._parse_ncch(
                        stream,
                        name,
                        partition.offset * Config.MEDIA_UNIT_SIZE,
                        idx,
                        title_id,
                        standalone=False,
                    )
                )
            except UnrecognizedSignatureError as e:
                self._print_error(f"  Skipping {partition_name(idx)} partition: {e}")

        return entries

    def _parse_ncch(self, stream, name, offset=0, idx=0, title_id=None, standalone=True):
        indent = "  " if standalone else "    "

        if standalone:
            self._print(f'Parsing NCCH in file "{name}"')
        else:
            self._print(f"  Parsing {partition_name(idx)} NCCH")

        header = self._read_record(stream, NCCHHeader, offset)
        if header.magic != Config.NCCH_MAGIC:
            raise UnrecognizedSignatureError(f"no NCCH signature at offset 0x{offset:08X}")

        if title_id is None:
            title_id = title_id_to_str(header.title_id)
        key_y = header.key_y

        if not standalone:
            self._print(f"{indent}NCCH offset: {offset:08X}")
        self._print(f"{indent}Product code: {header.product_code_text}")
        if not standalone:
            self._print(f"{indent}Partition number: {idx}")
        self._print(f"{indent}KeyY: {to_hex(key_y)}")
        self._print(f"{indent}Title ID: {title_id_to_str(header.title_id)}")
        self._print(f"{indent}Format version: {header.format_version}")

        if header.format_version not in Config.SUPPORTED_FORMAT_VERSIONS:
            if self.strict:
                raise UnsupportedFormatVersionError(
                    f"Unsupported NCCH format version {header.format_version} "
                    f"at offset 0x{offset:08X}"
                )
            self._print(
                f"{indent}Warning: unsupported format version, counters will be zero"
            )

        uses_7x_crypto = header.uses_7x_crypto
        uses_seed_crypto = header.uses_seed_crypto
        if uses_7x_crypto:
            self._print(f"{indent}Uses 7.x NCCH crypto")
        if uses_seed_crypto:
            self._print(f"{indent}Uses 9.x SEED crypto")
        self._print("")

        partition = partition_name(idx)
        entries = []

        if header.exhdr_size != 0:
            entries.append(
                self.resolver.resolve(
                    header,
                    NCCHSection.EXHEADER,
                    generate_output_name(title_id, partition, "exheader"),
                    indent=indent,
                )
            )
            self._print("")

        if header.exefs_size != 0:
            # Only part of the ExeFS uses the 7.x key, so it needs a second xorpad
            entries.append(
                self.resolver.resolve(
                    header,
                    NCCHSection.EXEFS,
                    generate_output_name(title_id, partition, "exefs_norm"),
                    indent=indent,
                )
            )
            if uses_7x_crypto:
                entries.append(
                    self.resolver.resolve(
                        header,
                        NCCHSection.EXEFS,
                        generate_output_name(title_id, partition, "exefs_7x"),
                        uses_7x_crypto,
                        uses_seed_crypto,
                        verbose=False,
                        indent=indent,
                    )
                )
            self._print("")

        if header.romfs_size != 0:
            entries.append(
                self.resolver.resolve(
                    header,
                    NCCHSection.ROMFS,
                    generate_output_name(title_id, partition, "romfs"),
                    uses_7x_crypto,
                    uses_seed_crypto,
                    indent=indent,
                )
            )
            self._print("")

        self._print("")
        return entries


class NCCHInfoWriter:
    """
    Serializes ncchinfo.bin: a 16-byte header followed by 168-byte entries.

    The whole file is built in memory and written to a temporary file in
    the destination directory, which then replaces the destination. A
    failed write never leaves a partial ncchinfo.bin behind.
    """

    def serialize(self, entries):
        header = NCCHInfoHeader.for_entries(len(entries))
        return header.to_bytes() + b"".join(entry.to_bytes() for entry in entries)

    def write(self, output_path, entries):
        """
        Write the descriptor file.

        Args:
            output_path: Destination path
            entries: Sequence of NCCHInfoEntry

        Returns:
            Number of bytes written
        """
        data = self.serialize(entries)
        directory = os.path.dirname(os.path.abspath(output_path))

        temp = tempfile.NamedTemporaryFile(
            dir=directory, prefix=".ncchinfo-", suffix=".tmp", delete=False
        )
        try:
            with temp:
                temp.write(data)
            os.replace(temp.name, output_path)
        except Exception:
            if os.path.exists(temp.name):
                os.remove(temp.name)
            raise

        return len(data)


class NCCHInfoBuilder(ConsoleReporter):
    """
    Accumulates entries from any number of images, in input order.

    Entries of a file are only added once the whole file has been decoded,
    so a file that fails halfway contributes nothing. Format and read
    errors are reported and confined to their file; LabelOverflowError
    propagates and aborts the run.
    """

    def __init__(self, progress_callback=None, strict=False):
        super().__init__(progress_callback)
        self.entries = []
        self.parser = NCCHParser(progress_callback, strict=strict)
        self.writer = NCCHInfoWriter()

    def add_file(self, filepath):
        """
        Decode one image and append its entries.

        Returns:
            Number of entries added
        """
        try:
            new_entries = self.parser.parse(filepath)
        except FormatError as e:
            self._print_error(f'Error parsing "{filepath}": {e}')
            return 0
        except OSError as e:
            self._print_error(f'Error reading "{filepath}": {e}')
            return 0

        self.entries.extend(new_entries)
        return len(new_entries)

    def write(self, output_path=Config.OUTPUT_FILENAME):
        return self.writer.write(output_path, self.entries)


class NCCHInfo(ConsoleReporter):
    """
    Main application class: expands the input patterns, decodes every
    image and writes one ncchinfo.bin.
    """

    def get_ascii_banner(self):
        """
        Generate ASCII art banner for application branding.

        Returns:
            ASCII art string representation of "NCCHINFO"
        """
        return text2art("NCCHINFO", font="tarty1")

    def __init__(self):
        super().__init__()
        self.parser = self._create_argument_parser()

    def set_progress_callback(self, callback):
        """
        Set a callback function to receive progress updates.

        Args:
            callback: Function that accepts a string message
        """
        self.progress_callback = callback

    def _create_argument_parser(self):
        parser = argparse.ArgumentParser(
            description="NCCHInfo - ncchinfo.bin generator for Nintendo 3DS CCI/CXI images",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "files",
            nargs="*",
            help="Input 3DS/CCI/CXI files; wildcards are allowed in the file name",
        )
        parser.add_argument(
            "-o",
            "--output",
            default=Config.OUTPUT_FILENAME,
            help=f"Output file (default: {Config.OUTPUT_FILENAME})",
        )
        parser.add_argument(
            "--strict",
            action="store_true",
            help="Skip NCCHs with an unsupported format version instead of writing zero counters",
        )
        return parser

    def _print_usage(self):
        self._print_error(self.parser.format_usage().rstrip())

    def _resolve_inputs(self, patterns):
        file_list = []
        for pattern in patterns:
            try:
                file_list.extend(resolve_pattern(pattern))
            except InputNotFoundError as e:
                self._print_error(str(e))
        return file_list

    def run(self, args=None):
        """
        Application entry point.

        Args:
            args: Optional command-line arguments (for testing)

        Returns:
            Exit code (0 for success, 1 for error)
        """
        args = self.parser.parse_args(args)

        if not args.files:
            self._print_error("No 3DS ROM file provided. Please provide a file.")
            self._print_usage()
            return 1

        file_list = self._resolve_inputs(args.files)
        if not file_list:
            self._print_usage()
            return 1

        self._print("")

        try:
            builder = NCCHInfoBuilder(self.progress_callback, strict=args.strict)
            for filepath in file_list:
                builder.add_file(filepath)
                self._print("")

            builder.write(args.output)
        except NCCHInfoError as e:
            self._print_error(f"Error: {e}")
            return 1
        except OSError as e:
            self._print_error(f"Error writing {args.output}: {e}")
            return 1
        except Exception as e:
            self._print_error(f"Unexpected error: {e}")
            if not self.progress_callback:
                traceback.print_exc()
            return 1

        self._print(f"Wrote {len(builder.entries)} entries to {args.output}")
        self._print("Done!")
        return 0


def main():
    """Main entry point"""
    app = NCCHInfo()
    app._print(app.get_ascii_banner())
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
