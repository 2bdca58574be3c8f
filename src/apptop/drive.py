"""Block device counter readers for /sys/block."""

import time
from dataclasses import dataclass, field
from pathlib import Path

from apptop.errors import MalformedDataError, SourceUnreadableError, VanishedEntityError

SYS_BLOCK = Path("/sys/block")

SYS_STAT_FIELDS = (
    "read_ios",
    "read_merges",
    "read_sectors",
    "read_ticks",
    "write_ios",
    "write_merges",
    "write_sectors",
    "write_ticks",
    "in_flight",
    "io_ticks",
    "time_in_queue",
    "discard_ios",
    "discard_merges",
    "discard_sectors",
    "discard_ticks",
    "flush_ios",
    "flush_ticks",
)

VIRTUAL_DEVICE_PREFIXES = ("loop", "ram", "zram")


@dataclass(slots=True, frozen=True)
class DiskStats:
    """Counters of one block device at one sampling instant."""

    device: str
    fields: dict[str, int] = field(hash=False)
    sampled_at: float  # time.monotonic()
    sector_size: int | None = None

    def __getitem__(self, name: str) -> int:
        return self.fields[name]


def parse_sys_stat(text: str, device: str = "?") -> dict[str, int]:
    """
    Parse the contents of ``/sys/block/<dev>/stat`` into the 17 named fields.

    Raises:
        MalformedDataError: if a field is missing or not an unsigned integer.
    """
    values = text.split()
    if len(values) < len(SYS_STAT_FIELDS):
        missing = SYS_STAT_FIELDS[len(values)]
        raise MalformedDataError(f"unable to get {missing} from /sys/block/{device}/stat")

    parsed: dict[str, int] = {}
    for name, raw in zip(SYS_STAT_FIELDS, values):
        if not (raw.isascii() and raw.isdigit()):
            raise MalformedDataError(
                f"unable to parse {name} {raw!r} from /sys/block/{device}/stat"
            )
        parsed[name] = int(raw)
    return parsed


def _read(path: Path, device: str) -> str:
    """Read a sysfs file, mapping a vanished device to VanishedEntityError."""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError as exc:
        raise VanishedEntityError(f"block device {device} is gone") from exc
    except OSError as exc:
        raise SourceUnreadableError(f"unable to read {path}") from exc


def sys_stat(device: str, root: Path = SYS_BLOCK) -> dict[str, int]:
    """Return the parsed stat counters of ``device``."""
    return parse_sys_stat(_read(root / device / "stat", device), device)


def get_sector_size(device: str, root: Path = SYS_BLOCK) -> int:
    """Return the hardware sector size of ``device`` in bytes."""
    raw = _read(root / device / "queue" / "hw_sector_size", device).strip()
    if not (raw.isascii() and raw.isdigit()):
        raise MalformedDataError(f"unable to parse hw_sector_size {raw!r} of {device}")
    return int(raw)


def read_disk_stats(device: str, root: Path = SYS_BLOCK) -> DiskStats:
    """
    Take a snapshot of ``device``.

    The sector size is optional: some virtual devices have no queue directory.
    """
    fields = sys_stat(device, root)
    sampled_at = time.monotonic()
    try:
        sector_size = get_sector_size(device, root)
    except SourceUnreadableError:
        sector_size = None
    return DiskStats(device=device, fields=fields, sampled_at=sampled_at, sector_size=sector_size)


def list_block_devices(root: Path = SYS_BLOCK, include_virtual: bool = False) -> list[str]:
    """List block devices known to sysfs, sorted by name."""
    try:
        entries = sorted(entry.name for entry in root.iterdir())
    except OSError as exc:
        raise SourceUnreadableError(f"unable to list {root}") from exc

    if include_virtual:
        return entries
    return [name for name in entries if not name.startswith(VIRTUAL_DEVICE_PREFIXES)]
