"""Tests for KEY=VALUE record parsing."""
import pytest

from portalloc.exceptions import MetadataError
from portalloc.metadata import LockMetadata, format_records, parse_int, parse_records


def test_parse_skips_comments_blanks_and_malformed_lines():
    text = "# header\n\nPID=42\nnot a record\n  Worktree = /src/app  \n"
    assert parse_records(text) == {'PID': '42', 'Worktree': '/src/app'}


def test_parse_splits_on_first_equals():
    assert parse_records("URL=http://x?a=b\n") == {'URL': 'http://x?a=b'}


def test_last_duplicate_wins():
    assert parse_records("PORT_BASE=1\nPORT_BASE=2\n")['PORT_BASE'] == '2'


def test_format_records_with_header():
    text = format_records([('A', 1), ('B', 'x')], header='portalloc test v1')
    assert text == "# portalloc test v1\nA=1\nB=x\n"


@pytest.mark.parametrize('value,expected', [('12', 12), (' 7 ', 7), ('abc', 0), (None, 0)])
def test_parse_int(value, expected):
    assert parse_int(value) == expected


class TestLockMetadata:
    def test_render_and_parse(self):
        metadata = LockMetadata(pid=1234, timestamp=1700000000, worktree='/repo')
        text = metadata.render()

        assert text.startswith('# portalloc lock v1\n')
        assert 'PID=1234' in text
        assert LockMetadata.parse(text) == metadata

    def test_partial_body_uses_defaults(self):
        metadata = LockMetadata.parse("PID=99\n")

        assert metadata.pid == 99
        assert metadata.timestamp == 0
        assert metadata.worktree == ''

    @pytest.mark.parametrize('text', ['', '# only a comment\n', 'garbage\n'])
    def test_body_without_owner_keys_rejected(self, text):
        with pytest.raises(MetadataError):
            LockMetadata.parse(text)
