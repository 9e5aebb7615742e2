import pytest

from vmmcomponents.stringreverse import STRING_REVERSE_BUFSIZE, reverse_dataport_string


def test_reverses_and_terminates():
    assert reverse_dataport_string(b"hello\0garbage") == b"olleh\0"


def test_empty_string():
    assert reverse_dataport_string(b"\0abc") == b"\0"


def test_truncates_to_size_minus_one():
    assert reverse_dataport_string(b"abcdef", 4) == b"cba\0"


def test_reversing_twice_restores_text():
    text = b"a man, a plan"
    once = reverse_dataport_string(text)
    assert reverse_dataport_string(once) == text + b"\0"


def test_long_input_limited_by_default_buffer():
    result = reverse_dataport_string(b"x" * (STRING_REVERSE_BUFSIZE + 10))
    assert len(result) == STRING_REVERSE_BUFSIZE
    assert result.endswith(b"\0")


def test_zero_size_rejected():
    with pytest.raises(ValueError):
        reverse_dataport_string(b"abc", 0)