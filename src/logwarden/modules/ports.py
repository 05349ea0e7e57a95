"""
LogWarden Ports

Decoding of the Linux /proc/net socket tables and termination of sshd
processes still connected to an address that was just blocked.
"""

import ipaddress
import os
import re
import signal
import struct
from dataclasses import dataclass
from typing import Callable, Iterable, List, Set

from logwarden.modules.address_set import normalize_ip, unwrap_mapped
from logwarden.modules.logging_utils import get_logger

logger = get_logger("ports")

SOCKET_LINK = re.compile(r"^socket:\[(\d+)\]$")

TCP_STATES = {
    "01": "ESTABLISHED",
    "02": "SYN_SENT",
    "03": "SYN_RECV",
    "04": "FIN_WAIT1",
    "05": "FIN_WAIT2",
    "06": "TIME_WAIT",
    "07": "CLOSE",
    "08": "CLOSE_WAIT",
    "09": "LAST_ACK",
    "0A": "LISTEN",
    "0B": "CLOSING",
}


def hex_to_ip(value: str) -> str:
    """
    Decode an address column from /proc/net/tcp{,6}.

    The kernel writes each 32-bit word in host (little-endian) order, so
    "0100007F" is 127.0.0.1. Returns "" for malformed input.
    """
    try:
        raw = bytes.fromhex(value)
    except (TypeError, ValueError):
        return ""

    if len(raw) not in (4, 16):
        return ""
    words = struct.unpack(f"<{len(raw) // 4}I", raw)
    packed = b"".join(struct.pack(">I", word) for word in words)
    if len(packed) == 4:
        return str(ipaddress.IPv4Address(packed))
    return str(ipaddress.IPv6Address(packed))


@dataclass(frozen=True)
class SocketEntry:
    protocol: str
    local_ip: str
    local_port: int
    remote_ip: str
    remote_port: int
    state: str
    inode: int


def _split_endpoint(value: str):
    address, _, port = value.partition(":")
    return hex_to_ip(address), int(port, 16)


def parse_proc_net(text: str, protocol: str = "tcp") -> List[SocketEntry]:
    """Parse the contents of /proc/net/<protocol>, skipping malformed rows."""
    entries = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 10 or fields[0] == "sl":
            continue
        try:
            local_ip, local_port = _split_endpoint(fields[1])
            remote_ip, remote_port = _split_endpoint(fields[2])
            inode = int(fields[9])
        except ValueError:
            continue
        if not local_ip or not remote_ip:
            continue
        entries.append(SocketEntry(
            protocol=protocol,
            local_ip=local_ip,
            local_port=local_port,
            remote_ip=remote_ip,
            remote_port=remote_port,
            state=TCP_STATES.get(fields[3].upper(), fields[3]),
            inode=inode,
        ))
    return entries


def _socket_inodes(address: str, ports: Set[int], proc_root: str) -> Set[int]:
    inodes = set()
    for protocol in ("tcp", "tcp6"):
        try:
            with open(os.path.join(proc_root, "net", protocol), "r") as handle:
                text = handle.read()
        except OSError:
            continue
        for entry in parse_proc_net(text, protocol):
            remote = normalize_ip(unwrap_mapped(entry.remote_ip))
            if remote == address and entry.local_port in ports:
                inodes.add(entry.inode)
    return inodes


def _is_sshd(pid_dir: str) -> bool:
    try:
        return "sshd" in os.readlink(os.path.join(pid_dir, "exe"))
    except OSError:
        return False


def kill_ssh_connections(
    address: str,
    ports: Iterable[int] = (22,),
    proc_root: str = "/proc",
    kill: Callable[[int, int], None] = os.kill
) -> List[int]:
    """
    Send SIGKILL to sshd processes holding a connection from ``address``
    to one of ``ports``.

    Returns:
        The PIDs that were killed. Processes that vanish meanwhile are skipped.
    """
    address = normalize_ip(address)
    if not address:
        return []
    inodes = _socket_inodes(address, {int(port) for port in ports}, proc_root)
    if not inodes:
        return []

    killed = []
    try:
        pids = [name for name in os.listdir(proc_root) if name.isdigit()]
    except OSError:
        return []

    for pid in pids:
        pid_dir = os.path.join(proc_root, pid)
        fd_dir = os.path.join(pid_dir, "fd")
        try:
            descriptors = os.listdir(fd_dir)
        except OSError:
            continue

        for descriptor in descriptors:
            try:
                target = os.readlink(os.path.join(fd_dir, descriptor))
            except OSError:
                continue
            link = SOCKET_LINK.match(target)
            if not link or int(link.group(1)) not in inodes or not _is_sshd(pid_dir):
                continue
            try:
                kill(int(pid), signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                break
            killed.append(int(pid))
            logger.security_event("SSHD_KILLED", "WARN", {"pid": int(pid), "address": address})
            break
    return killed
