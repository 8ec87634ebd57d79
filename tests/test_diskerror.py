import pytest

from rasdecode.diskerror import block_error_name, handle_diskerror_event
from rasdecode.events import FieldError, RasContext, TraceEvent, format_timestamp


def _fields(**overrides):
    fields = {
        "dev": 0x801,
        "sector": 2048,
        "nr_sector": 8,
        "error": -5,
        "rwbs": b"W\0",
        "cmd": "",
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def context():
    return RasContext(use_uptime=True, uptime_diff=1_700_000_000)


def test_block_error_names():
    assert block_error_name(-5) == "I/O error"
    assert block_error_name(-110) == "timeout error"
    assert block_error_name(0) == "unknown block error"


def test_handler_decodes_fields(context):
    decoded = handle_diskerror_event(TraceEvent(fields=_fields()), context)
    assert decoded.dev == "8:1"
    assert decoded.sector == 2048
    assert decoded.nr_sector == 8
    assert decoded.error == "I/O error"
    assert decoded.rwbs == "W"
    assert decoded.cmd == ""
    assert decoded.text == f"{format_timestamp(1_700_000_000)} "


def test_error_given_as_unsigned_value(context):
    decoded = handle_diskerror_event(
        TraceEvent(fields=_fields(error=(1 << 32) - 5)), context
    )
    assert decoded.error == "I/O error"


def test_nr_sector_is_truncated_to_32_bits(context):
    decoded = handle_diskerror_event(
        TraceEvent(fields=_fields(nr_sector=(1 << 32) + 7)), context
    )
    assert decoded.nr_sector == 7


def test_missing_cmd_raises(context):
    fields = _fields()
    del fields["cmd"]
    with pytest.raises(FieldError) as info:
        handle_diskerror_event(TraceEvent(fields=fields), context)
    assert info.value.name == "cmd"