from __future__ import annotations

import base64
import struct
import time
from typing import Dict, Iterable, List

from ssh_get_id import KeySource, SourceUnavailable


def wire(*fields: bytes) -> bytes:
    return b"".join(struct.pack(">I", len(field)) + field for field in fields)


def key_blob(key_type: str, seed: int) -> bytes:
    fill = bytes([seed % 256])
    if key_type == "ssh-ed25519":
        return wire(b"ssh-ed25519", fill * 32)
    if key_type == "ssh-rsa":
        return wire(b"ssh-rsa", b"\x01\x00\x01", b"\x00" + fill * 64)
    if key_type == "ecdsa-sha2-nistp256":
        return wire(b"ecdsa-sha2-nistp256", b"nistp256", b"\x04" + fill * 64)
    if key_type == "sk-ssh-ed25519@openssh.com":
        return wire(key_type.encode(), fill * 32, b"ssh:")
    raise ValueError(key_type)


def key_line(seed: int, comment: str = "", key_type: str = "ssh-ed25519") -> str:
    encoded = base64.b64encode(key_blob(key_type, seed)).decode("ascii")
    line = f"{key_type} {encoded}"
    if comment:
        line += " " + comment
    return line


class FakeSource(KeySource):
    def __init__(self, payloads: Dict[str, bytes], delays: Dict[str, float] | None = None):
        self.payloads = payloads
        self.delays = delays or {}
        self.calls: List[str] = []

    def fetch(self, identity: str) -> bytes:
        self.calls.append(identity)
        time.sleep(self.delays.get(identity, 0))
        if identity not in self.payloads:
            raise SourceUnavailable("no such user")
        return self.payloads[identity]


def payload(lines: Iterable[str]) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


