"""
Tests for per-section resolution: counters, sizes, flags and output names.
"""

import pytest

from conftest import PROGRAM_ID, SIGNATURE, TITLE_ID, build_ncch
from ncchinfo import (
    Config,
    LabelOverflowError,
    NCCHHeader,
    NCCHSection,
    SectionResolver,
    generate_output_name,
    megabytes_rounded_up,
    ncch_aes_counter,
)

NAME = generate_output_name("0807060504030201", "Main", "romfs")


def header(**kwargs):
    return NCCHHeader.from_bytes(build_ncch(**kwargs))


class TestMegabytes:
    """Tests for rounding section sizes up to whole megabytes."""

    @pytest.mark.parametrize(
        "size, expected",
        [(0, 0), (1, 1), (512, 1), (1048576, 1), (1048577, 2), (3 * 1048576, 3)],
    )
    def test_rounding(self, size, expected):
        assert megabytes_rounded_up(size) == expected

    def test_monotonic(self):
        sizes = range(0, 5 * 1048576, 65536)
        results = [megabytes_rounded_up(size) for size in sizes]
        assert results == sorted(results)


class TestCounter:
    """Tests for AES counter derivation."""

    def test_version_2_layout(self):
        counter = ncch_aes_counter(TITLE_ID, 2, NCCHSection.EXEFS, 0xA00)
        assert counter == bytes.fromhex("0807060504030201" "02" "00000000000000")

    def test_version_0_matches_version_2(self):
        for section in NCCHSection:
            assert ncch_aes_counter(TITLE_ID, 0, section, 0x1234) == ncch_aes_counter(
                TITLE_ID, 2, section, 0x5678
            )

    def test_section_number_is_embedded(self):
        assert [ncch_aes_counter(TITLE_ID, 2, s, 0)[8] for s in NCCHSection] == [1, 2, 3]

    def test_version_1_layout(self):
        counter = ncch_aes_counter(TITLE_ID, 1, NCCHSection.ROMFS, 0x12345600)
        assert counter == bytes.fromhex("0102030405060708" "00000000" "12345600")

    def test_version_1_exheader_offset(self):
        counter = ncch_aes_counter(TITLE_ID, 1, NCCHSection.EXHEADER, 0x200)
        assert counter[12:] == b"\x00\x00\x02\x00"

    def test_version_1_offset_is_truncated_to_32_bits(self):
        counter = ncch_aes_counter(TITLE_ID, 1, NCCHSection.ROMFS, 0x1_0000_0400)
        assert counter[12:] == b"\x00\x00\x04\x00"

    def test_unknown_version_is_all_zero(self):
        assert ncch_aes_counter(TITLE_ID, 3, NCCHSection.EXEFS, 0x200) == bytes(16)

    def test_deterministic(self):
        assert ncch_aes_counter(TITLE_ID, 1, NCCHSection.EXEFS, 0xA00) == ncch_aes_counter(
            TITLE_ID, 1, NCCHSection.EXEFS, 0xA00
        )


class TestOutputName:
    """Tests for xorpad output names."""

    def test_format_and_padding(self):
        name = generate_output_name("0004000000055D00", "Main", "exefs_norm")
        assert len(name) == Config.OUTPUT_NAME_SIZE
        assert name.rstrip(b"\x00") == b"/0004000000055D00.Main.exefs_norm.xorpad"

    def test_exactly_full_name_is_accepted(self):
        partition = "P" * (Config.OUTPUT_NAME_SIZE - len("/T.") - len(".romfs.xorpad"))
        assert len(generate_output_name("T", partition, "romfs")) == Config.OUTPUT_NAME_SIZE

    def test_overflow(self):
        with pytest.raises(LabelOverflowError):
            generate_output_name("0004000000055D00", "X" * 100, "romfs")

    def test_length_is_measured_in_utf8_bytes(self):
        # 40 three-byte characters fit in 112 characters but not in 112 bytes
        with pytest.raises(LabelOverflowError):
            generate_output_name("T", "テ" * 40, "romfs")


class TestSectionResolver:
    """Tests for resolving sections of a decoded NCCH header."""

    def test_offsets_and_sizes(self):
        h = header(exhdr_size=2, exefs=(5, 10), romfs=(0x40, 0x800))
        resolver = SectionResolver()
        assert resolver.section_offset(h, NCCHSection.EXHEADER) == 0x200
        assert resolver.section_size(h, NCCHSection.EXHEADER) == 0x400
        assert resolver.section_offset(h, NCCHSection.EXEFS) == 5 * 0x200
        assert resolver.section_size(h, NCCHSection.EXEFS) == 10 * 0x200
        assert resolver.section_offset(h, NCCHSection.ROMFS) == 0x40 * 0x200
        assert resolver.section_size(h, NCCHSection.ROMFS) == 0x800 * 0x200

    def test_illegal_section(self):
        with pytest.raises(ValueError):
            SectionResolver().section_offset(header(), 4)

    def test_absent_section_is_not_resolved(self):
        assert SectionResolver().resolve(header(), NCCHSection.ROMFS, NAME) is None

    def test_entry_fields(self, capsys):
        h = header(format_version=1, romfs=(0x40, 0x1000), crypto_flag=0x20)
        entry = SectionResolver().resolve(h, NCCHSection.ROMFS, NAME, True, True)
        assert entry.counter == bytes.fromhex("0102030405060708" "00000000" "00008000")
        assert entry.key_y == SIGNATURE[:16]
        assert entry.size == 2
        assert entry.reserved == 0
        assert entry.uses_7x_crypto == 1
        assert entry.uses_seed_crypto == 1
        assert entry.title_id == PROGRAM_ID
        assert entry.output_name == NAME

        out = capsys.readouterr().out
        assert "RomFS offset:  00008000" in out
        assert "RomFS counter: 01020304050607080000000000008000" in out
        assert "RomFS Megabytes(rounded up): 2" in out

    def test_quiet_resolution(self, capsys):
        SectionResolver().resolve(header(exefs=(1, 1)), NCCHSection.EXEFS, NAME, verbose=False)
        assert capsys.readouterr().out == ""
