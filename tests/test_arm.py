import struct

import pytest

from rasdecode.arm import (
    ARM_BUS_ERROR,
    ARM_CACHE_ERROR,
    ARM_TLB_ERROR,
    ARM_VENDOR_ERROR,
    ERR_INFO_SIZE,
    PROC_ERROR_TYPES,
    ArmErrorInfo,
    count_errors,
    decode_bits,
    decode_error_info,
    format_processor_error_info,
    format_raw_data,
    handle_arm_event,
    parse_error_infos,
)
from rasdecode.cpu_isolation import CpuIsolation, CpuState
from rasdecode.events import FieldError, GhesSeverity, RasContext, TraceEvent


def pack_info(validation_bits=0, type_=0, multiple_error=0, flags=0,
              error_info=0, virt=0, phys=0):
    return struct.pack("<BBHBHBQQQ", 0, ERR_INFO_SIZE, validation_bits, type_,
                       multiple_error, flags, error_info, virt, phys)


def make_info(**kwargs):
    return ArmErrorInfo.from_bytes(pack_info(**kwargs))


def base_fields():
    return {
        "affinity": 1,
        "mpidr": 0x81000000,
        "midr": 0x410FD0C0,
        "running_state": 1,
        "psci_state": 0,
    }


CONTEXT = RasContext(use_uptime=True, uptime_diff=0, clock=lambda: 0)


def test_raw_data_contains_little_endian_words():
    buf = struct.pack("<II", 0xDEADBEEF, 0x01020304)
    out = format_raw_data(buf, len(buf))
    assert out.startswith("  00000000: ")
    assert "deadbeef" in out
    assert "01020304" in out


def test_raw_data_ignores_partial_word():
    buf = struct.pack("<II", 0xCAFEBABE, 0x11223344) + b"\x99"
    assert format_raw_data(buf, 9) == format_raw_data(buf[:8], 8)


def test_raw_data_breaks_line_after_four_words():
    buf = bytes(32)
    out = format_raw_data(buf, 32)
    assert out.count("\n") == 2
    assert "\n  00000010: " in out


def test_decode_bits_uses_source_names():
    out = decode_bits(ARM_CACHE_ERROR | ARM_BUS_ERROR, PROC_ERROR_TYPES)
    assert "cache error" in out
    assert "bus error" in out
    assert "TLB error" not in out


def test_decode_bits_empty_when_no_bits():
    assert decode_bits(0, PROC_ERROR_TYPES) == ""


def test_cache_operation_type():
    info = 0x2 | (3 << 18)
    out = decode_error_info(ARM_CACHE_ERROR, info)
    assert out == " cache error, operation type:Data read"


def test_vendor_error_has_no_decoding():
    assert decode_error_info(ARM_VENDOR_ERROR | ARM_CACHE_ERROR, 0xFFF) == ""


def test_tlb_level():
    out = decode_error_info(ARM_TLB_ERROR, 0x4 | (2 << 22))
    assert " TLB level: 2" in out


def test_bus_only_fields_need_pure_bus_error():
    info = (1 << 8) | (1 << 31)
    assert " request timed out" in decode_error_info(ARM_BUS_ERROR, info)
    assert "timed out" not in decode_error_info(ARM_BUS_ERROR | ARM_CACHE_ERROR, info)


def test_access_mode_secure_and_normal():
    assert " access mode: secure" in decode_error_info(ARM_BUS_ERROR, 1 << 11)
    assert " access mode: normal" in decode_error_info(
        ARM_BUS_ERROR, (1 << 11) | (1 << 43)
    )


def test_context_corruption_flags():
    out = decode_error_info(ARM_CACHE_ERROR, (1 << 3) | (1 << 25))
    assert out == " processor context corrupted"


def test_from_bytes_round_trip():
    info = make_info(validation_bits=0x1F, type_=ARM_TLB_ERROR, multiple_error=7,
                     flags=3, error_info=0x1234, virt=0xAAAA, phys=0xBBBB)
    assert info.validation_bits == 0x1F
    assert info.type == ARM_TLB_ERROR
    assert info.multiple_error == 7
    assert info.error_info == 0x1234
    assert info.physical_fault_addr == 0xBBBB


def test_from_bytes_rejects_wrong_size():
    with pytest.raises(ValueError):
        ArmErrorInfo.from_bytes(b"\0" * (ERR_INFO_SIZE - 1))


def test_parse_error_infos_splits_entries():
    buf = pack_info(multiple_error=1) + pack_info(multiple_error=2)
    infos = parse_error_infos(buf, len(buf))
    assert [i.multiple_error for i in infos] == [1, 2]


def test_parse_error_infos_length_mismatch():
    with pytest.raises(ValueError):
        parse_error_infos(bytes(ERR_INFO_SIZE + 1), ERR_INFO_SIZE + 1)


def test_core_failure():
    assert make_info(validation_bits=0x2, flags=1).is_core_failure()
    assert not make_info(validation_bits=0x2, flags=5).is_core_failure()
    assert not make_info(validation_bits=0, flags=1).is_core_failure()


def test_count_errors_corrected_uses_multiple_error():
    infos = [make_info(validation_bits=0x1, multiple_error=4), make_info()]
    assert count_errors(infos, GhesSeverity.CORRECTED) == 6


def test_count_errors_recoverable_needs_core_failure():
    infos = [make_info(validation_bits=0x1, multiple_error=4),
             make_info(validation_bits=0x2, flags=1)]
    assert count_errors(infos, GhesSeverity.RECOVERABLE) == 1


def test_processor_error_info_text():
    info = make_info(validation_bits=0x1 | 0x10, type_=ARM_CACHE_ERROR,
                     multiple_error=2, phys=0x1000)
    out = format_processor_error_info([info])
    assert out.startswith("\nARM processor error info:\n")
    assert " error_count:3" in out
    assert "physical fault address: 0x0000000000001000" in out


def test_handle_without_pei():
    event = TraceEvent(ts=0, fields=base_fields())
    ev = handle_arm_event(event, CONTEXT)
    assert " MPIDR: 0x81000000" in ev.text
    assert " MIDR: 0x410fd0c0" in ev.text
    assert "ARM Processor Err Info" not in ev.text
    assert ev.error_infos == []


def test_handle_missing_field():
    fields = base_fields()
    del fields["midr"]
    with pytest.raises(FieldError):
        handle_arm_event(TraceEvent(ts=0, fields=fields), CONTEXT)


def test_handle_with_pei_buffers():
    pei = pack_info(validation_bits=0x1 | 0x8, multiple_error=9, virt=0xFEED)
    fields = base_fields()
    fields.update(pei_len=len(pei), pei_buf=pei, ctx_len=4, ctx_buf=b"\0" * 4,
                  oem_len=0, oem_buf=b"")
    ev = handle_arm_event(TraceEvent(ts=0, fields=fields), CONTEXT)
    assert ev.error_count == 10
    assert ev.virt_fault_addr == 0xFEED
    assert " Vendor Specific Err Info data len: 0\n" in ev.text


def test_handle_legacy_buffers():
    pei = pack_info()
    fields = base_fields()
    fields.update(pei_len=len(pei), buf=pei, ctx_len=0, buf1=b"",
                  oem_len=4, buf2=struct.pack("<I", 0xABCDEF01))
    ev = handle_arm_event(TraceEvent(ts=0, fields=fields), CONTEXT)
    assert ev.vsei_error == struct.pack("<I", 0xABCDEF01)
    assert "abcdef01" in ev.text


def test_handle_missing_context_buffer():
    pei = pack_info()
    fields = base_fields()
    fields.update(pei_len=len(pei), pei_buf=pei, ctx_len=0)
    with pytest.raises(FieldError):
        handle_arm_event(TraceEvent(ts=0, fields=fields), CONTEXT)


def test_handle_offlines_cpu(tmp_path):
    for cpu in range(2):
        (tmp_path / f"cpu{cpu}").mkdir()
        (tmp_path / f"cpu{cpu}" / "online").write_text("1")
    env = {"CPU_ISOLATION_ENABLE": "yes", "CPU_ISOLATION_LIMIT": "1",
           "CPU_CE_THRESHOLD": "3"}
    isolation = CpuIsolation(2, env=env, sysfs_root=tmp_path, online_count=lambda: 2)

    pei = pack_info(validation_bits=0x1, multiple_error=4)
    fields = base_fields()
    fields.update(pei_len=len(pei), pei_buf=pei, ctx_len=0, ctx_buf=b"",
                  oem_len=0, oem_buf=b"", cpu=0, sev=int(GhesSeverity.CORRECTED))
    ev = handle_arm_event(TraceEvent(ts=0, fields=fields), CONTEXT, isolation)
    assert "\n severity: Corrected" in ev.text
    assert (tmp_path / "cpu0" / "online").read_text() == "0"
    assert isolation.infos[0].state == CpuState.OFFLINE
    assert (tmp_path / "cpu1" / "online").read_text() == "1"