"""Length-prefixed text frames shared by the coordination service and brokers.

Every frame is a little-endian uint32 byte count followed by that many bytes
of UTF-8 text. Replies start with ``OK`` or ``ERR``.
"""

from __future__ import annotations

import socket
import struct
from contextlib import closing
from typing import BinaryIO, Optional

HEADER = struct.Struct("<I")


def encode_frame(text: str) -> bytes:
    data = text.encode("utf-8")
    return HEADER.pack(len(data)) + data


def recv_exact(sock: socket.socket, n: int) -> bytes:
    chunks = []
    remaining = n
    while remaining:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_frame(stream: BinaryIO) -> Optional[str]:
    """Read one frame from a buffered stream, ``None`` on EOF or truncation."""
    raw_len = stream.read(HEADER.size)
    if len(raw_len) < HEADER.size:
        return None
    (size,) = HEADER.unpack(raw_len)
    data = stream.read(size)
    if len(data) < size:
        return None
    return data.decode("utf-8")


def send_command(host: str, port: int, command: str, timeout: float = 5.0) -> str:
    with closing(socket.create_connection((host, port), timeout=timeout)) as sock:
        sock.sendall(encode_frame(command))
        len_buf = recv_exact(sock, HEADER.size)
        if len(len_buf) < HEADER.size:
            raise ConnectionError(f"no response length from {host}:{port}")
        (resp_len,) = HEADER.unpack(len_buf)
        resp = recv_exact(sock, resp_len)
        if len(resp) < resp_len:
            raise ConnectionError(f"short read from {host}:{port}")
        return resp.decode("utf-8")


def ok(payload: str = "") -> str:
    return f"OK {payload}" if payload else "OK"


def err(reason: str) -> str:
    return f"ERR {reason}"


def parse_reply(reply: str) -> tuple[bool, str]:
    """Split a reply into ``(ok, payload)``."""
    status, _, payload = reply.partition(" ")
    if status == "OK":
        return True, payload
    if status == "ERR":
        return False, payload
    return False, reply


def split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"expected host:port, got {address!r}")
    return host, int(port)
