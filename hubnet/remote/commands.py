# hubnet/remote/commands.py
"""Shell commands run on hub hosts"""

import posixpath
import re
import shlex
from typing import List

_LINK_FLAGS = re.compile(r"<([^>]*)>")


def config_path(config_dir: str, interface: str) -> str:
    return posixpath.join(config_dir, f"{interface}.conf")


def backup_path(backup_dir: str, interface: str) -> str:
    return posixpath.join(backup_dir, f"{interface}.conf.bak")


def file_exists(path: str) -> str:
    return f"test -f {shlex.quote(path)}"


def read_file(path: str) -> str:
    return f"cat {shlex.quote(path)}"


def make_dir(path: str) -> str:
    return f"mkdir -p {shlex.quote(path)}"


def copy_file(src: str, dst: str) -> str:
    return f"cp {shlex.quote(src)} {shlex.quote(dst)}"


def restrict_permissions(path: str) -> str:
    return f"chmod 600 {shlex.quote(path)}"


def remove_file(path: str) -> str:
    return f"rm -f {shlex.quote(path)}"


def interface_down(interface: str) -> str:
    # Not an error if the interface was never up
    return f"wg-quick down {shlex.quote(interface)} 2>/dev/null || true"


def interface_up(interface: str) -> str:
    return f"wg-quick up {shlex.quote(interface)}"


def link_show(interface: str) -> str:
    return f"ip link show {shlex.quote(interface)}"


def listen_port(interface: str) -> str:
    return f"wg show {shlex.quote(interface)} listen-port"


def address_show(interface: str) -> str:
    return f"ip -4 addr show {shlex.quote(interface)}"


def wg_dump(interface: str) -> str:
    return f"wg show {shlex.quote(interface)} dump"


def link_flags(output: str) -> List[str]:
    """
    Flags from `ip link show` output

    VD: "5: wg0: <POINTOPOINT,NOARP,UP,LOWER_UP> mtu 1420 ..." -> [..., "UP", ...]
    """
    match = _LINK_FLAGS.search(output)
    if not match:
        return []
    return [flag.strip() for flag in match.group(1).split(",") if flag.strip()]


def carries_address(output: str, address: str) -> bool:
    """True if `ip -4 addr show` output lists `address`"""
    return re.search(rf"\binet {re.escape(address)}/\d+", output) is not None
