import pytest

from rasdecode.cxl import convert_timestamp, uuid_be
from rasdecode.cxl_records import (
    handle_dram_event,
    handle_general_media_event,
    handle_generic_event,
    handle_memory_module_event,
    parse_common_header,
)
from rasdecode.events import FieldError, RasContext, TraceEvent, format_timestamp

UUID_BYTES = bytes(range(16))


def _context():
    return RasContext(use_uptime=True, uptime_diff=1000, user_hz=1)


def _header_fields(**extra):
    fields = {
        "memdev": b"mem0\0",
        "host": b"0000:0d:00.0\0",
        "serial": 0x1234,
        "log": 2,
        "hdr_uuid": UUID_BYTES,
        "hdr_flags": (1 << 2) | (1 << 5),
        "hdr_handle": 0xAB,
        "hdr_related_handle": 0xCD,
        "hdr_timestamp": 0,
        "hdr_length": 128,
        "hdr_maint_op_class": 0,
    }
    fields.update(extra)
    return fields


def _media_fields(region_field, **extra):
    fields = _header_fields(
        dpa=0x1000,
        dpa_flags=1,
        descriptor=2,
        type=0,
        transaction_type=1,
        hpa=0x2000,
        region_uuid=UUID_BYTES,
        validity_flags=0,
    )
    fields[region_field] = b"region0\0"
    fields.update(extra)
    return fields


def test_common_header_values():
    hdr = parse_common_header(TraceEvent(ts=5, fields=_header_fields()), _context())
    assert hdr.timestamp == format_timestamp(1005)
    assert hdr.memdev == "mem0"
    assert hdr.host == "0000:0d:00.0"
    assert hdr.log_type == "Failure"
    assert hdr.hdr_uuid == uuid_be(UUID_BYTES)
    assert hdr.hdr_timestamp == convert_timestamp(0)
    assert hdr.hdr_handle == 0xAB


def test_common_header_text_flags_in_order():
    hdr = parse_common_header(TraceEvent(ts=5, fields=_header_fields()), _context())
    assert "'PERMANENT_CONDITION' 'HARDWARE_REPLACEMENT_NEEDED' hdr_handle:0xab " in hdr.text
    assert hdr.text.startswith(format_timestamp(1005) + " memdev:mem0 ")
    assert hdr.text.endswith("hdr_length:128 hdr_maint_op_class:0 ")


def test_common_header_missing_field():
    fields = _header_fields()
    del fields["hdr_uuid"]
    with pytest.raises(FieldError):
        parse_common_header(TraceEvent(fields=fields), _context())


def test_generic_event_dump_layout():
    fields = _header_fields(data=bytes(range(80)))
    ev = handle_generic_event(TraceEvent(fields=fields), _context())
    dump = ev.text[len(ev.hdr.text):]
    assert dump.startswith("\ndata:\n  00000000: 00010203 ")
    assert dump.count("\n  ") == 5
    assert ev.data == bytes(range(80))


def test_generic_event_needs_data():
    with pytest.raises(FieldError):
        handle_generic_event(TraceEvent(fields=_header_fields()), _context())


def test_general_media_without_validity():
    ev = handle_general_media_event(
        TraceEvent(fields=_media_fields("region_name")), _context()
    )
    assert "dpa_flags:'VOLATILE' descriptor:'THRESHOLD EVENT' " in ev.text
    assert "type:ECC Error transaction_type:Host Read " in ev.text
    assert "region:region0 " in ev.text
    assert "channel:" not in ev.text
    assert ev.region_uuid == uuid_be(UUID_BYTES)


def test_general_media_with_all_valid_fields():
    fields = _media_fields(
        "region_name",
        validity_flags=0xF,
        channel=3,
        rank=1,
        device=0x1F,
        comp_id=bytes(range(1, 17)),
        type=9,
    )
    ev = handle_general_media_event(TraceEvent(fields=fields), _context())
    assert "type:Unknown " in ev.text
    assert "channel:3 rank:1 device:1f comp_id:01 02 03 " in ev.text
    assert ev.comp_id == bytes(range(1, 17))
    assert ev.channel == 3


def test_dram_event_valid_fields():
    fields = _media_fields(
        "region",
        validity_flags=0xFF,
        channel=2,
        rank=4,
        nibble_mask=7,
        bank_group=1,
        bank=5,
        row=100,
        column=200,
        cor_mask=bytes(32),
    )
    ev = handle_dram_event(TraceEvent(fields=fields), _context())
    assert ev.row == 100 and ev.column == 200 and ev.bank == 5
    assert "nibble_mask:7 bank_group:1 bank:5 row:100 column:200 " in ev.text
    assert ev.text.endswith("correction_mask:" + "00 " * 32)


def test_dram_event_missing_valid_field():
    fields = _media_fields("region", validity_flags=1)
    with pytest.raises(FieldError):
        handle_dram_event(TraceEvent(fields=fields), _context())


def _module_fields(**extra):
    fields = _header_fields(
        event_type=1,
        health_status=1,
        media_status=0,
        add_status=0,
        life_used=10,
        device_temp=40,
        dirty_shutdown_cnt=0,
        cor_vol_err_cnt=2,
        cor_per_err_cnt=3,
    )
    fields.update(extra)
    return fields


def test_memory_module_event_normal():
    ev = handle_memory_module_event(TraceEvent(fields=_module_fields()), _context())
    assert "event_type:Media Status Change " in ev.text
    assert "health_status:'MAINTENANCE_NEEDED' media_status:Normal " in ev.text
    assert (
        "as_life_used:Normal as_dev_temp:Normal "
        "as_cor_vol_err_cnt:Normal as_cor_per_err_cnt:Normal "
    ) in ev.text
    assert ev.text.endswith("cor_vol_err_cnt:2 cor_per_err_cnt:3 ")


def test_memory_module_additional_status_bits():
    fields = _module_fields(add_status=0x3 | 0x4 | 0x10)
    ev = handle_memory_module_event(TraceEvent(fields=fields), _context())
    assert "as_life_used:Unknown " in ev.text
    assert "as_dev_temp:Warning " in ev.text
    assert "as_cor_vol_err_cnt:Warning as_cor_per_err_cnt:Normal " in ev.text