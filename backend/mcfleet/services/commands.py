"""Shell command rendering and output parsing for managed hosts.

Every value that ends up on a command line passes through ``shlex.quote`` or
is base64-encoded first; nothing here talks to a host.
"""

import base64
import posixpath
import re
import shlex
from datetime import datetime
from enum import StrEnum

from mcfleet.core.exceptions import CommandFailed
from mcfleet.schemas.files import DirectoryListing, FileEntry
from mcfleet.schemas.host import SystemInfo
from mcfleet.schemas.metrics import HostMetrics

q = shlex.quote

SYSTEMD_UNIT_DIR = "/etc/systemd/system"


class ServiceAction(StrEnum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    ENABLE = "enable"
    DISABLE = "disable"


def unit_name(internal_name: str) -> str:
    return f"{internal_name}.service"


def unit_path(internal_name: str) -> str:
    return posixpath.join(SYSTEMD_UNIT_DIR, unit_name(internal_name))


# --- System probe ---------------------------------------------------------

PROBE_TOTAL_RAM = "free -m | awk '/^Mem:/ {print $2}'"
PROBE_CPU_CORES = "nproc"
PROBE_DISK_GB = "df -BG / | awk 'NR==2 {print $2}' | tr -d 'G'"
PROBE_OS_LABEL = "grep '^PRETTY_NAME=' /etc/os-release | cut -d'=' -f2- | tr -d '\"'"


def parse_int(stdout: str, what: str) -> int:
    value = stdout.strip().splitlines()[0].strip() if stdout.strip() else ""
    if not value.isdigit():
        raise CommandFailed(f"Unexpected {what} output: {stdout[:80]!r}")
    return int(value)


def parse_system_info(ram: str, cpu: str, disk: str, os_label: str) -> SystemInfo:
    return SystemInfo(
        total_ram_mb=parse_int(ram, "memory"),
        cpu_cores=parse_int(cpu, "CPU core"),
        disk_gb=parse_int(disk, "disk size"),
        os_label=os_label.strip() or "Unknown",
    )


# --- Service supervisor ---------------------------------------------------


def service_command(action: ServiceAction, internal_name: str) -> str:
    return f"sudo -n systemctl {action.value} {q(unit_name(internal_name))}"


def is_active_command(internal_name: str) -> str:
    # is-active exits non-zero for inactive units; the state is on stdout either way
    return f"systemctl is-active {q(unit_name(internal_name))} || true"


def parse_is_active(stdout: str) -> bool:
    lines = stdout.strip().splitlines()
    return bool(lines) and lines[0].strip() == "active"


def daemon_reload_command() -> str:
    return "sudo -n systemctl daemon-reload"


def install_unit_command(internal_name: str) -> str:
    """Install the unit text sent on stdin as produced by ``encode_payload``."""
    return f"base64 -d | sudo -n tee {q(unit_path(internal_name))} > /dev/null"


def remove_unit_command(internal_name: str) -> str:
    return f"sudo -n rm -f {q(unit_path(internal_name))}"


def service_status_command(internal_name: str) -> str:
    return f"sudo -n systemctl status {q(unit_name(internal_name))} --no-pager 2>&1 || true"


def journal_command(internal_name: str, lines: int = 50) -> str:
    return f"sudo -n journalctl -u {q(unit_name(internal_name))} -n {int(lines)} --no-pager 2>&1 || true"


# --- Files ----------------------------------------------------------------


def encode_payload(text: str) -> bytes:
    """Stdin body for the file-writing commands below; decoded remotely by ``base64 -d``."""
    return base64.b64encode(text.encode("utf-8")) + b"\n"


def mkdir_command(path: str) -> str:
    return f"mkdir -p {q(path)}"


def remove_tree_command(path: str) -> str:
    return f"rm -rf -- {q(path)}"


def list_directory_command(path: str) -> str:
    return f"cd {q(path)} && pwd && LC_ALL=C ls -la --time-style=long-iso"


def read_file_command(path: str) -> str:
    return f"test -f {q(path)} && base64 -w0 {q(path)}"


def write_file_command(path: str) -> str:
    return f"base64 -d > {q(path)}"


def file_size_command(path: str) -> str:
    return f"stat -c%s {q(path)}"


def file_exists_command(path: str) -> str:
    return f"test -f {q(path)} && echo exists || echo missing"


def tail_command(path: str, lines: int, fallback: str) -> str:
    return f"tail -n {int(lines)} {q(path)} 2>/dev/null || echo {q(fallback)}"


def list_tree_command(path: str) -> str:
    return f"ls -lh {q(path)}/ 2>&1 || echo 'Directory not found'"


def decode_file_content(stdout: str) -> str:
    try:
        return base64.b64decode(stdout.strip(), validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise CommandFailed("File is not valid UTF-8 text") from e


def parse_listing(stdout: str) -> DirectoryListing:
    """Parse ``pwd`` followed by ``ls -la --time-style=long-iso`` output."""
    lines = stdout.splitlines()
    if not lines:
        raise CommandFailed("Empty directory listing")
    current_path = lines[0].strip()
    entries: list[FileEntry] = []
    for line in lines[1:]:
        if not line or line.startswith("total "):
            continue
        parts = line.split(None, 7)
        if len(parts) < 8:
            continue
        perms, _, _, _, size, date, clock, name = parts
        if perms.startswith("l") and " -> " in name:
            name = name.split(" -> ", 1)[0]
        if name in (".", ".."):
            continue
        entries.append(FileEntry(
            name=name,
            is_directory=perms.startswith("d"),
            permissions=perms,
            size=int(size) if size.isdigit() else 0,
            modified=f"{date} {clock}",
        ))
    entries.sort(key=lambda e: (not e.is_directory, e.name.lower()))
    return DirectoryListing(current_path=current_path, entries=entries)


# --- Process and host metrics -------------------------------------------


def process_pattern(internal_name: str) -> str:
    # "[m]c-abc" matches the java process but not the shell running pgrep
    return f"[{internal_name[0]}]{internal_name[1:]}"


def process_stats_command(internal_name: str) -> str:
    pattern = q(process_pattern(internal_name))
    return (
        f"pid=$(pgrep -n -f -- {pattern}); "
        'if [ -n "$pid" ]; then ps -p "$pid" -o %cpu=,%mem=,etime=; fi'
    )


def parse_etime(value: str) -> int:
    """Convert ps ``etime`` (``[[dd-]hh:]mm:ss``) to seconds."""
    days = 0
    if "-" in value:
        day_part, value = value.split("-", 1)
        days = int(day_part)
    fields = [int(f) for f in value.split(":")]
    while len(fields) < 3:
        fields.insert(0, 0)
    hours, minutes, seconds = fields
    return ((days * 24 + hours) * 60 + minutes) * 60 + seconds


def parse_process_stats(stdout: str) -> tuple[float, float, int] | None:
    """Return ``(cpu_percent, memory_percent, uptime_seconds)`` or None if not running."""
    line = stdout.strip()
    if not line:
        return None
    parts = line.splitlines()[-1].split()
    if len(parts) < 3:
        return None
    try:
        return float(parts[0]), float(parts[1]), parse_etime(parts[2])
    except ValueError:
        return None


HOST_CPU_COMMAND = "LC_ALL=C top -bn1 | grep 'Cpu(s)' | head -n1"
HOST_MEMORY_COMMAND = "free -m | awk '/^Mem:/ {print $3, $2}'"
HOST_DISK_COMMAND = "df -BG / | awk 'NR==2 {print $3, $2, $5}'"
HOST_UPTIME_COMMAND = "cat /proc/uptime"
HOST_LOAD_COMMAND = "cat /proc/loadavg"

_CPU_IDLE = re.compile(r"([\d.]+)\s*id")


def _floats(stdout: str, count: int) -> list[float]:
    parts = stdout.replace("G", "").replace("%", "").split()
    try:
        values = [float(p) for p in parts[:count]]
    except ValueError:
        values = []
    return values + [0.0] * (count - len(values))


def parse_host_metrics(cpu: str, memory: str, disk: str, uptime: str, load: str) -> HostMetrics:
    idle = _CPU_IDLE.search(cpu)
    cpu_usage = round(100.0 - float(idle.group(1)), 1) if idle else 0.0
    mem_used, mem_total = _floats(memory, 2)
    disk_used, disk_total, disk_pct = _floats(disk, 3)
    (uptime_s,) = _floats(uptime, 1)
    load1, load5, load15 = _floats(load, 3)
    return HostMetrics(
        cpu_usage=cpu_usage,
        memory_used_mb=int(mem_used),
        memory_total_mb=int(mem_total),
        memory_usage_percent=round(mem_used / mem_total * 100) if mem_total else 0,
        disk_used_gb=disk_used,
        disk_total_gb=disk_total,
        disk_usage_percent=disk_pct,
        uptime_seconds=int(uptime_s),
        load_average_1m=load1,
        load_average_5m=load5,
        load_average_15m=load15,
    )


# --- Provisioning ---------------------------------------------------------


def download_command(url: str, directory: str, filename: str) -> str:
    dest = q(filename)
    return (
        f"cd {q(directory)} && "
        f"(curl -fsSL -o {dest} {q(url)} || wget -q -O {dest} {q(url)})"
    )


def eula_text() -> str:
    stamp = datetime.now().strftime("%a %b %d %H:%M:%S %Y")
    return (
        "#By changing the setting below to TRUE you are indicating your agreement "
        "to the Minecraft EULA (https://aka.ms/MinecraftEULA).\n"
        f"#{stamp}\neula=true\n"
    )


def run_installer_command(directory: str, installer: str, args: tuple[str, ...]) -> str:
    rendered = " ".join(q(a) for a in args)
    return f"cd {q(directory)} && java -jar {q(installer)} {rendered} 2>&1"


def find_jar_command(directory: str, pattern: str) -> str:
    return f"cd {q(directory)} && ls -1 {pattern} 2>/dev/null | grep -v installer | head -n1"


def copy_command(directory: str, src: str, dst: str) -> str:
    return f"cd {q(directory)} && cp -f -- {q(src)} {q(dst)}"


def make_executable_command(path: str) -> str:
    return f"chmod +x {q(path)}"


def remove_file_command(directory: str, name: str) -> str:
    return f"cd {q(directory)} && rm -f -- {q(name)}"


def set_ownership_command(path: str, user: str, executable: str | None = None) -> str:
    chown = f"chown -R {q(user)}:{q(user)} {q(path)}"
    if executable is None:
        return chown
    return f"chmod +x {q(executable)} && {chown}"
