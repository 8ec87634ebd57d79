import pytest

from rasdecode.mce import (
    MCG_STATUS_EIPV,
    MCI_STATUS_ADDRV,
    MCI_STATUS_MISCV,
    CpuInfo,
    CpuType,
    MceEvent,
    cputype_name,
    detect_cpu,
    format_mce_event,
    format_offline_report,
    select_intel_cputype,
)


def cpuinfo(vendor, family, model, flags="fpu vme"):
    return (
        "processor\t: 0\n"
        f"vendor_id\t: {vendor}\n"
        f"cpu family\t: {family}\n"
        f"model\t\t: {model}\n"
        "model name\t: Example CPU\n"
        "cpu MHz\t\t: 2100.000\n"
        f"flags\t\t: {flags}\n"
    )


def test_cputype_names_from_table():
    assert cputype_name(CpuType.SKYLAKE_XEON) == "Skylake server"
    assert cputype_name(CpuType.AMD_SMCA) == "AMD Scalable MCA"
    assert cputype_name(0) == "generic CPU"


def test_every_cputype_has_a_name():
    assert all(cputype_name(t) for t in CpuType)


@pytest.mark.parametrize(
    "family,model,expected",
    [
        (15, 6, CpuType.TULSA),
        (15, 2, CpuType.P4),
        (6, 0x0E, CpuType.P6OLD),
        (6, 0x17, CpuType.CORE2),
        (6, 0x1D, CpuType.DUNNINGTON),
        (6, 0x2C, CpuType.NEHALEM),
        (6, 0x3F, CpuType.HASWELL_EPEX),
        (6, 0x55, CpuType.SKYLAKE_XEON),
        (6, 0x8F, CpuType.SAPPHIRERAPIDS),
        (6, 0xCF, CpuType.EMERALDRAPIDS),
        (6, 0x99, CpuType.INTEL),
        (6, 0x10, CpuType.P6OLD),
        (7, 1, CpuType.INTEL),
        (5, 1, CpuType.GENERIC),
    ],
)
def test_select_intel_cputype(family, model, expected):
    assert select_intel_cputype(CpuInfo(family=family, model=model)) == expected


def test_mc_error_support_flag():
    info = CpuInfo(family=6, model=0x55)
    select_intel_cputype(info)
    assert info.mc_error_support is True
    old = CpuInfo(family=6, model=28)
    select_intel_cputype(old)
    assert old.mc_error_support is False


def test_detect_intel_cpu():
    info = detect_cpu(cpuinfo("GenuineIntel", 6, 85))
    assert info.vendor == "GenuineIntel"
    assert info.family == 6
    assert info.model == 85
    assert info.mhz == 2100.0
    assert info.cputype == CpuType.SKYLAKE_XEON


def test_detect_amd_smca_and_k8():
    assert detect_cpu(cpuinfo("AuthenticAMD", 25, 1, "fpu smca")).cputype == CpuType.AMD_SMCA
    assert detect_cpu(cpuinfo("AuthenticAMD", 15, 1)).cputype == CpuType.K8


def test_detect_amd_new_family_without_smca_fails():
    with pytest.raises(ValueError):
        detect_cpu(cpuinfo("AuthenticAMD", 26, 1))


def test_detect_hygon():
    assert detect_cpu(cpuinfo("HygonGenuine", 24, 1)).cputype == CpuType.DHYANA


def test_detect_unknown_vendor():
    with pytest.raises(ValueError):
        detect_cpu(cpuinfo("SomeVendor", 6, 85))


def test_detect_no_cpu():
    with pytest.raises(LookupError):
        detect_cpu("processor\t: 0\nBogoMIPS\t: 50.00\n")


def test_detect_missing_fields():
    text = "vendor_id\t: GenuineIntel\ncpu family\t: 6\n"
    with pytest.raises(ValueError, match=r"\[model\]"):
        detect_cpu(text)


def test_format_mce_event_basic():
    ev = MceEvent(bank=5, status=0x10, cpu=3, socketid=1, apicid=0x1A)
    text = format_mce_event(ev, CpuType.SKYLAKE_XEON, "TS")
    assert text.startswith("TS bank=5, status= 10")
    assert ", cpu_type= Skylake server" in text
    assert ", cpu= 3" in text
    assert ", socketid= 1" in text
    assert text.endswith(", mcgstatus= 0, apicid= 1a")


def test_format_mce_event_optional_fields():
    ev = MceEvent(
        bank_name="Memory controller",
        status=MCI_STATUS_MISCV | MCI_STATUS_ADDRV,
        misc=0xAB,
        addr=0x1000,
        ip=0xFFFF,
        mcgstatus=0,
        mcgstatus_msg="MCIP",
        error_msg="read error",
    )
    text = format_mce_event(ev, CpuType.GENERIC, "TS")
    assert text.startswith("TS Memory controller,")
    assert ", read error" in text
    assert ", ip= ffff (INEXACT)" in text
    assert ", misc= ab" in text
    assert ", addr= 1000" in text
    assert ", MCIP" in text
    assert "mcgstatus=" not in text


def test_format_mce_event_exact_ip():
    ev = MceEvent(ip=0x42, mcgstatus=MCG_STATUS_EIPV)
    text = format_mce_event(ev, CpuType.GENERIC, "TS")
    assert ", ip= 42," in text
    assert "INEXACT" not in text


def test_fru_text_only_with_vendor_data():
    ev = MceEvent(frutext="DIMM_A1")
    assert "FRU Text" not in format_mce_event(ev, CpuType.GENERIC, "TS")
    ev.vdata = b"\x01" * 8
    assert format_mce_event(ev, CpuType.GENERIC, "TS").endswith(", FRU Text= DIMM_A1")


def test_format_offline_report():
    ev = MceEvent(
        bank=7,
        mcastatus_msg="A",
        mcistatus_msg="B",
        mc_location="C",
        error_msg="D",
    )
    assert format_offline_report(ev, "TS") == "TS, bank=7, mca: A, mci: B, Locn: C, Error Msg: D\n"


def test_format_offline_report_bank_name():
    ev = MceEvent(bank_name="L2 Cache")
    assert format_offline_report(ev, "TS") == "TS, L2 Cache,"