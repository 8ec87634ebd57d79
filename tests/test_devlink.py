import pytest

from rasdecode.devlink import handle_devlink_event, handle_net_xmit_timeout
from rasdecode.events import FieldError, RasContext, TraceEvent, format_timestamp


def _wall_context():
    return RasContext(use_uptime=False, clock=lambda: 1000.0)


def _devlink_fields():
    return {
        "bus_name": b"pci\0",
        "dev_name": b"0000:01:00.0\0",
        "driver_name": b"mlx5_core\0",
        "reporter_name": b"tx\0",
        "msg": b"TX timeout on queue: 1\0",
    }


def test_xmit_timeout_message():
    event = TraceEvent(fields={"name": b"eth0\0", "driver": b"e1000\0", "queue_index": 3})
    ev = handle_net_xmit_timeout(event, _wall_context())
    assert ev.msg == "TX timeout on queue: 3\n"
    assert ev.dev_name == "eth0"
    assert ev.driver_name == "e1000"
    assert ev.bus_name == "" and ev.reporter_name == ""
    assert ev.timestamp == format_timestamp(1000)
    assert ev.text == ev.timestamp + " "


def test_xmit_timeout_queue_is_signed():
    event = TraceEvent(fields={"name": "eth0", "driver": "e1000", "queue_index": 0xFFFFFFFF})
    ev = handle_net_xmit_timeout(event, _wall_context())
    assert ev.msg == "TX timeout on queue: -1\n"


def test_xmit_timeout_missing_field():
    event = TraceEvent(fields={"name": "eth0", "driver": "e1000"})
    with pytest.raises(FieldError):
        handle_net_xmit_timeout(event, _wall_context())


def test_devlink_event_fields():
    ev = handle_devlink_event(TraceEvent(fields=_devlink_fields()), _wall_context())
    assert ev.bus_name == "pci"
    assert ev.dev_name == "0000:01:00.0"
    assert ev.driver_name == "mlx5_core"
    assert ev.reporter_name == "tx"
    assert ev.msg == "TX timeout on queue: 1"


def test_devlink_event_uses_uptime():
    context = RasContext(use_uptime=True, uptime_diff=500, user_hz=10)
    ev = handle_devlink_event(TraceEvent(ts=100, fields=_devlink_fields()), context)
    assert ev.timestamp == format_timestamp(510)


def test_devlink_event_skipped_by_filter():
    event = TraceEvent(fields=_devlink_fields())
    result = handle_devlink_event(
        event, _wall_context(), skip=lambda e: _msg_starts(e, b"TX timeout")
    )
    assert result is None


def test_devlink_event_filter_not_matching():
    event = TraceEvent(fields=_devlink_fields())
    result = handle_devlink_event(
        event, _wall_context(), skip=lambda e: _msg_starts(e, b"RX")
    )
    assert result.reporter_name == "tx"


def test_devlink_event_missing_field():
    fields = _devlink_fields()
    del fields["reporter_name"]
    with pytest.raises(FieldError):
        handle_devlink_event(TraceEvent(fields=fields), _wall_context())


def _msg_starts(event, prefix):
    return bytes(event.raw("msg")).startswith(prefix)