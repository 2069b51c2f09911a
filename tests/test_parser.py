"""Tests for the makemkvcon robot-mode output parser."""

import pytest

from mkvauto.disc.media import MediaKind
from mkvauto.disc.parser import (
    Title,
    calculate_percentage,
    extract_error_message,
    extract_quoted_value,
    format_duration,
    format_size,
    parse_duration,
    parse_info,
    parse_message,
    parse_progress,
    parse_status_message,
    parse_title_info,
)

SAMPLE_INFO_OUTPUT = """MSG:1005,0,1,"MakeMKV v1.17.7 linux(x64-release) started","%1 started","MakeMKV v1.17.7 linux(x64-release)"
DRV:0,2,999,1,"BD-ROM HL-DT-ST BD-RE  WH16NS40","MOVIE_DISC","/dev/sr0"
TCOUNT:3
CINFO:1,6209,"Blu-ray disc"
CINFO:2,0,"MOVIE_DISC"
TINFO:0,2,0,"Main Feature"
TINFO:0,8,0,"24"
TINFO:0,9,0,"2:15:30"
TINFO:0,10,0,"23.9 GB"
TINFO:0,11,0,"25769803776"
TINFO:1,2,0,"Trailer"
TINFO:1,9,0,"0:02:30"
TINFO:1,11,0,"157286400"
TINFO:2,2,0,"Broken"
TINFO:2,9,0,"0:00:00"
PRGV:0,0,65536
"""


class TestHelpers:
    """Test small parsing helpers."""

    def test_extract_quoted_value(self):
        """Test text between the first and last quote is returned."""
        assert extract_quoted_value('TINFO:0,2,0,"Main Feature"') == "Main Feature"
        assert extract_quoted_value("no quotes") == ""

    def test_parse_duration(self):
        """Test H:MM:SS parsing."""
        assert parse_duration("1:30:45") == 5445
        assert parse_duration("0:00:00") == 0
        assert parse_duration('"2:15:30"') == 8130

    def test_parse_duration_malformed(self):
        """Test malformed durations read as zero."""
        assert parse_duration("30:45") == 0
        assert parse_duration("a:b:c") == 0
        assert parse_duration("") == 0

    def test_format_duration(self):
        """Test seconds are formatted as H:MM:SS."""
        assert format_duration(5445) == "1:30:45"
        assert format_duration(59) == "0:00:59"

    def test_format_size(self):
        """Test binary unit formatting."""
        assert format_size(512) == "512 B"
        assert format_size(1536) == "1.5 KB"
        assert format_size(25769803776) == "24.0 GB"


class TestTitleInfo:
    """Test TINFO record handling."""

    def test_attributes_are_merged_per_title(self):
        """Test several TINFO lines build one title."""
        titles: dict[int, Title] = {}
        parse_title_info('TINFO:3,2,0,"Episode"', titles)
        parse_title_info('TINFO:3,9,0,"0:22:10"', titles)
        parse_title_info('TINFO:3,8,0,"6"', titles)
        parse_title_info('TINFO:3,11,0,"1048576"', titles)

        title = titles[3]
        assert title.name == "Episode"
        assert title.duration == 1330
        assert title.chapters == 6
        assert title.size == 1048576

    def test_human_readable_size_is_ignored(self):
        """Test a size like '23.9 GB' does not become 23."""
        titles: dict[int, Title] = {}
        parse_title_info('TINFO:0,10,0,"23.9 GB"', titles)
        assert titles[0].size == 0

    def test_short_lines_are_skipped(self):
        """Test lines with too few fields change nothing."""
        titles: dict[int, Title] = {}
        parse_title_info("TINFO:0,2", titles)
        parse_title_info('TINFO:x,2,0,"Name"', titles)
        assert titles == {}

    def test_name_with_commas(self):
        """Test commas inside the quoted value survive."""
        titles: dict[int, Title] = {}
        parse_title_info('TINFO:0,2,0,"Hello, World"', titles)
        assert titles[0].name == "Hello, World"


class TestParseInfo:
    """Test parsing a complete info scan."""

    def test_disc_name_and_kind(self):
        """Test CINFO name and Blu-ray detection."""
        result = parse_info(SAMPLE_INFO_OUTPUT)

        assert result.disc_name == "MOVIE_DISC"
        assert result.media_kind == MediaKind.BLURAY

    def test_zero_duration_titles_are_dropped(self):
        """Test titles without a duration are not reported."""
        result = parse_info(SAMPLE_INFO_OUTPUT)

        assert [t.title_id for t in result.titles] == [0, 1]
        main = result.titles[0]
        assert main.name == "Main Feature"
        assert main.duration == 8130
        assert main.size == 25769803776
        assert main.chapters == 24

    def test_titles_are_ordered_by_id(self):
        """Test output order does not depend on line order."""
        output = "\n".join(
            [
                'TINFO:5,9,0,"0:30:00"',
                'TINFO:1,9,0,"0:20:00"',
                'TINFO:3,9,0,"0:25:00"',
            ],
        )
        result = parse_info(output)
        assert [t.title_id for t in result.titles] == [1, 3, 5]

    def test_defaults_to_dvd(self):
        """Test output without media hints is treated as DVD."""
        result = parse_info('TINFO:0,9,0,"1:00:00"')
        assert result.media_kind == MediaKind.DVD
        assert result.disc_name == ""

    def test_dvd_detection(self):
        """Test DVD hints are recognised."""
        result = parse_info('CINFO:1,6206,"DVD disc"\nTINFO:0,9,0,"1:00:00"')
        assert result.media_kind == MediaKind.DVD

    def test_empty_output(self):
        """Test empty output yields an empty scan."""
        result = parse_info("")
        assert result.titles == []


class TestProgress:
    """Test progress and status records."""

    def test_parse_progress(self):
        """Test PRGV triplets are parsed."""
        assert parse_progress("PRGV:100,200,65536") == (100, 200, 65536)

    @pytest.mark.parametrize(
        "line",
        ["PRGV:1,2", "PRGV:a,b,c", "PRGC:1,2,3", "garbage"],
    )
    def test_parse_progress_rejects(self, line):
        """Test anything else is not progress."""
        assert parse_progress(line) is None

    def test_percentage_uses_current_and_max(self):
        """Test percentage ignores the total counter."""
        assert calculate_percentage(32768, 100, 65536) == 50.0
        assert calculate_percentage(65536, 0, 65536) == 100.0

    def test_percentage_zero_max(self):
        """Test a zero maximum gives zero."""
        assert calculate_percentage(10, 10, 0) == 0.0

    def test_status_messages(self):
        """Test PRGC and PRGT carry operation names."""
        assert parse_status_message('PRGC:5018,0,"Scanning CD-ROM devices"') == (
            "Scanning CD-ROM devices"
        )
        assert parse_status_message('PRGT:5004,0,"Saving all titles to MKV files"') == (
            "Saving all titles to MKV files"
        )
        assert parse_status_message('PRGV:1,2,3') is None


class TestMessages:
    """Test MSG record handling."""

    def test_parse_message(self):
        """Test the message text is extracted."""
        line = 'MSG:5010,0,0,"Failed to open disc, error 5","%1",""'
        assert parse_message(line) == "Failed to open disc, error 5"

    def test_parse_message_escaped_quote(self):
        """Test escaped quotes do not end the text."""
        line = r'MSG:1,0,0,"Say \"hi\"","x"'
        assert parse_message(line) == r"Say \"hi\""

    def test_non_message(self):
        """Test other records are ignored."""
        assert parse_message('TINFO:0,2,0,"x"') is None

    def test_extract_error_prefers_error_messages(self):
        """Test the most useful MSG line is chosen."""
        output = "\n".join(
            [
                'MSG:1005,0,1,"MakeMKV started","%1 started"',
                'MSG:5021,0,0,"This application version is too old.","x"',
                "last line",
            ],
        )
        assert extract_error_message(output) == "This application version is too old."

    def test_extract_error_falls_back_to_last_line(self):
        """Test the last non-empty line is used without error messages."""
        assert extract_error_message("one\ntwo\n\n") == "two"
        assert extract_error_message("") == "no output"
