# rasdecode

`rasdecode` turns the fields of Linux RAS (Reliability, Availability and
Serviceability) trace records into readable reports and structured records.
It has no dependencies beyond the standard library.

| Module | What it decodes |
| --- | --- |
| `rasdecode.events` | Shared types: `TraceEvent`, `RasContext`, `FieldError`, `EventId`, `GhesSeverity`, `McErrorType`, `format_timestamp` |
| `rasdecode.mc` | EDAC memory controller errors (`mc_event`) |
| `rasdecode.memory_failure` | Kernel memory-failure actions (`memory_failure_event`) |
| `rasdecode.diskerror` | Block request errors (`block_rq_error` / `block_rq_complete`) |
| `rasdecode.extlog` | Extended error log memory events (`extlog_mem_event`) |
| `rasdecode.arm` | ARM processor errors (`arm_event`) and their processor error information entries |
| `rasdecode.cxl` | CXL poison, AER uncorrectable/correctable and overflow events |
| `rasdecode.cxl_records` | CXL generic, general media, DRAM and memory module records |
| `rasdecode.devlink` | devlink health reports and network transmit timeouts |
| `rasdecode.mce` | x86 CPU detection from `/proc/cpuinfo` text and machine check report formatting |
| `rasdecode.cpu_isolation` | Counting errors per CPU and taking failing CPUs offline through sysfs |

## Installation

```
pip install rasdecode
```

## Decoding events

A `TraceEvent` holds one record: its trace timestamp `ts` and a mapping of
field names to integers, bytes or strings. A `RasContext` turns the trace
timestamp into wall-clock time: with `use_uptime=True` it uses
`ts // user_hz + uptime_diff`, otherwise the current time from its `clock`.

```python
from rasdecode.events import RasContext, TraceEvent
from rasdecode.memory_failure import handle_memory_failure_event

event = TraceEvent(ts=0, fields={"pfn": 0x1234, "type": 4, "result": 3})
record = handle_memory_failure_event(event, RasContext())
record.pfn            # '0x1234'
record.page_type      # 'huge page'
record.action_result  # 'Recovered'
print(record.text)
```

Every handler returns a dataclass with the decoded fields and a `text`
member holding the report line. A required field that is missing raises
`rasdecode.events.FieldError`, with these exceptions:

- `rasdecode.mc.handle_mc_event` logs which field could not be parsed and
  returns `None`.
- `rasdecode.devlink.handle_devlink_event` takes an optional `skip`
  predicate and returns `None` when it matches the record.

The handlers are `handle_mc_event`, `handle_memory_failure_event`,
`handle_diskerror_event`, `handle_extlog_event`, `handle_arm_event`,
`handle_poison_event`, `handle_aer_ue_event`, `handle_aer_ce_event`,
`handle_overflow_event`, `handle_generic_event`,
`handle_general_media_event`, `handle_dram_event`,
`handle_memory_module_event`, `handle_net_xmit_timeout` and
`handle_devlink_event`.

## Lookup helpers

The tables behind the decoders can be used on their own:

```python
from rasdecode.mc import error_type_name
from rasdecode.memory_failure import page_type_name, action_result_name
from rasdecode.diskerror import block_error_name
from rasdecode.extlog import error_severity_name, error_type_name as extlog_type_name
from rasdecode.cxl import convert_timestamp, log_type_name

error_type_name(0)        # 'Corrected'
page_type_name(4)         # 'huge page'
action_result_name(3)     # 'Recovered'
block_error_name(-5)      # 'I/O error'
error_severity_name(2)    # 'corrected'
extlog_type_name(2)       # 'single-bit ECC'
log_type_name(1)          # 'Warning'
convert_timestamp(0)      # '1970-01-01 00:00:00 +0000'
```

`rasdecode.extlog` also has `error_mask`, `decode_cper_data` and `uuid_le`;
`rasdecode.cxl` has `uuid_be`, `decode_flags` and `type_name`.

## ARM processor errors

`rasdecode.arm.parse_error_infos(buf, length)` splits a buffer into
`ArmErrorInfo` entries (raising `ValueError` if the length is not a whole
number of entries), `format_processor_error_info` describes them,
`decode_error_info` explains an entry's error information word, and
`count_errors(infos, severity)` counts the errors that count against the
core. `handle_arm_event(event, context, isolation)` accepts an optional
`CpuIsolation` and, when one is given and the record carries `cpu` and
`sev` fields, feeds it the counted errors.

## Machine checks

`rasdecode.mce.detect_cpu` takes the text of `/proc/cpuinfo` and returns a
`CpuInfo` with vendor, family, model, MHz, flags and the `CpuType` used for
decoding. It raises `LookupError` if no x86 CPU is described and
`ValueError` if the description is incomplete or the CPU is unsupported.

```python
from pathlib import Path
from rasdecode.mce import detect_cpu, cputype_name

info = detect_cpu(Path("/proc/cpuinfo").read_text())
print(cputype_name(info.cputype))
```

`format_mce_event(event, cputype, timestamp)` and
`format_offline_report(event, timestamp)` render an `MceEvent` as a report
line; when `timestamp` is omitted the current local time is used.

## CPU fault isolation

`rasdecode.cpu_isolation.CpuIsolation(cpus, env, sysfs_root, online_count)`
keeps per-CPU error counts. It is enabled only when the environment holds
`CPU_ISOLATION_ENABLE=yes` (any case). `record_error(ErrorInfo(...), cpu)`
returns a `HandleResult`, or `None` when the error is skipped. A CPU is
taken offline, by writing `0` to `<sysfs_root>/cpu<N>/online`, once its
corrected errors within `CPU_ISOLATION_CYCLE` reach `CPU_CE_THRESHOLD`
(default 18, at most 10000), or as soon as it reports an uncorrected error.
Nothing is done while the number of offline CPUs is at or above
`CPU_ISOLATION_LIMIT` (default 0, at most one less than the CPU count), so
that variable must be set for any CPU to be taken offline. The cycle
defaults to one day, is capped at 30 days, and accepts `d`, `h`, `m` and
`s` suffixes, for example `CPU_ISOLATION_CYCLE=12h`.

## What this package does not do

`rasdecode` is a library of decoders. It does not mount or read the kernel
tracing interface, enable or filter trace events, or run as a background
service; the caller supplies each record as a `TraceEvent`. It does not
store events in a database, report them elsewhere or run trigger scripts.
For machine checks it detects the CPU and formats reports, but does not
decode vendor-specific bank registers into messages; the message members of
`MceEvent` are filled in by the caller. It provides no command-line tool.