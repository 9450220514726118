"""Network link lookups and the RDMA subsystem network namespace mode."""

from __future__ import annotations

import fcntl
import os
import socket
import struct
from dataclasses import dataclass
from typing import Iterator, Optional

SYS_NET_DEVICES = "/sys/class/net"

NETLINK_RDMA = 20
RDMA_SYS_GET_TYPE = (5 << 10) | 6  # RDMA_NL_NLDEV, RDMA_NLDEV_CMD_SYS_GET
RDMA_NLDEV_SYS_ATTR_NETNS_MODE = 66
NLM_F_REQUEST = 0x1
NLM_F_ACK = 0x4
NLMSG_ERROR = 0x2
NLMSG_DONE = 0x3

EXCLUSIVE = "exclusive"
SHARED = "shared"

_SIOCGIFFLAGS = 0x8913
_SIOCSIFFLAGS = 0x8914
_IFF_UP = 0x1
_IFREQ = "16sh22x"
_HEADER = struct.Struct("=IHHII")
_ATTR = struct.Struct("=HH")

# Link encapsulation names by ARP hardware type.
_ENCAP_TYPES = {
    1: "ether", 32: "infiniband", 512: "ppp", 768: "ipip", 772: "loopback",
    776: "sit", 778: "gre", 0xFFFE: "none", 0xFFFF: "void",
}


@dataclass
class Link:
    """A network link and the attributes the plugin uses."""

    name: str = ""
    index: int = 0
    encap_type: str = ""
    flags: int = 0


def _read_int(path: str, base: int = 10) -> Optional[int]:
    try:
        with open(path, encoding="utf-8") as handle:
            return int(handle.read().strip(), base)
    except (OSError, ValueError):
        return None


class NetlinkManager:
    """Looks up network links and brings them up."""

    def __init__(self, sys_net_devices: Optional[str] = None):
        self.sys_net_devices = sys_net_devices or SYS_NET_DEVICES

    def link_by_name(self, if_name: str) -> Link:
        """Return the link with the given name; raises LookupError when there is none."""
        link_dir = os.path.join(self.sys_net_devices, if_name)
        arp_type = _read_int(os.path.join(link_dir, "type")) if if_name else None
        if arp_type is None:
            raise LookupError(f"Link not found: {if_name!r}")
        return Link(
            name=if_name,
            index=_read_int(os.path.join(link_dir, "ifindex")) or 0,
            encap_type=_ENCAP_TYPES.get(arp_type, "unknown"),
            flags=_read_int(os.path.join(link_dir, "flags"), 0) or 0,
        )

    def link_set_up(self, link: Link) -> None:
        """Set the link administratively up; raises OSError on failure."""
        name = link.name.encode("utf-8")[:15]
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            reply = fcntl.ioctl(sock.fileno(), _SIOCGIFFLAGS, struct.pack(_IFREQ, name, 0))
            flags = struct.unpack(_IFREQ, reply)[1]
            if not flags & _IFF_UP:
                fcntl.ioctl(sock.fileno(), _SIOCSIFFLAGS, struct.pack(_IFREQ, name, flags | _IFF_UP))


def _sys_get_request(seq: int) -> bytes:
    return _HEADER.pack(_HEADER.size, RDMA_SYS_GET_TYPE, NLM_F_REQUEST | NLM_F_ACK, seq, 0)


def _netlink_messages(data: bytes) -> Iterator[tuple[int, int, int, bytes]]:
    """Yield (type, flags, sequence, payload) for each message in a datagram."""
    pos = 0
    while pos + _HEADER.size <= len(data):
        length, msg_type, flags, seq, _ = _HEADER.unpack_from(data, pos)
        if length < _HEADER.size or pos + length > len(data):
            raise ValueError("truncated netlink message")
        yield msg_type, flags, seq, data[pos + _HEADER.size : pos + length]
        pos += (length + 3) & ~3


def _netns_mode(payload: bytes) -> str:
    pos = 0
    while pos + _ATTR.size <= len(payload):
        length, attr_type = _ATTR.unpack_from(payload, pos)
        if length < _ATTR.size or pos + length > len(payload):
            break
        if attr_type & 0x3FFF == RDMA_NLDEV_SYS_ATTR_NETNS_MODE and length > _ATTR.size:
            return EXCLUSIVE if payload[pos + _ATTR.size] == 0 else SHARED
        pos += (length + 3) & ~3
    raise ValueError("invalid netlink message")


def _reply_mode(data: bytes, seq: int) -> Optional[str]:
    """Return the mode carried by a reply, or None when it holds nothing for seq."""
    for msg_type, _flags, msg_seq, payload in _netlink_messages(data):
        if msg_seq != seq:
            continue
        if msg_type == NLMSG_ERROR:
            (code,) = struct.unpack_from("=i", payload)
            if code:
                raise OSError(-code, os.strerror(-code))
        if msg_type in (NLMSG_ERROR, NLMSG_DONE):
            raise ValueError("invalid netlink message")
        return _netns_mode(payload)
    return None


def rdma_netns_mode() -> str:
    """Return the RDMA subsystem network namespace mode: "exclusive" or "shared"."""
    seq = 1
    with socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, NETLINK_RDMA) as sock:
        sock.bind((0, 0))
        sock.send(_sys_get_request(seq))
        while (mode := _reply_mode(sock.recv(65536), seq)) is None:
            pass
        return mode