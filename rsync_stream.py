#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
rsync-stream: Streaming Delta Transfer over a Framed TCP Connection
===================================================================

Moves rsync-style signatures and deltas between two peers through a pair of
fixed-capacity windows, so that memory use stays bounded no matter how large
the files are.

Quick Start:
-----------
    Server (holds the new version of a file):

        $ rsync-stream server data.bin

    Client (holds the old version, receives data.bin.new):

        $ rsync-stream client data.bin

    Local, file to file:

        $ rsync-stream signature old.bin -o old.sig
        $ rsync-stream delta old.sig new.bin -o new.delta
        $ rsync-stream patch old.bin new.delta -o rebuilt.bin

    From Python:

        >>> sock = connect_to_server("127.0.0.1", 5612)
        >>> send_signature(sock, "data.bin")
        >>> recv_delta_and_patch(sock, "data.bin")

Wire Protocol:
-------------
    Every message is a 2-byte big-endian header followed by a payload:

        +------------------+----------+
        | payload length   | EOF flag |
        | bits 15..1       | bit 0    |
        +------------------+----------+

    A stream ends with the first frame whose EOF flag is set. The payload may
    be empty (a bare terminal marker).

Architecture:
------------
    1. Framing codec:   encode_frame() / decode_frame() / send_message() / recv_message()
    2. Transport I/O:   FileSource, FileSink, SocketSource, SocketSink
    3. Pump:            Pump (refill -> step -> drain, until the job is done)
    4. Jobs:            SignatureJob, LoadSignatureJob, DeltaJob, PatchJob
    5. Role drivers:    send_signature, recv_signature, send_delta, recv_delta_and_patch
    6. Connections:     connect_to_server, accept_connection

Copyright:
---------
    rsync algorithm: Andrew Tridgell, Paul Mackerras
    License: GPLv3+
"""

from __future__ import annotations

__version__ = "1.0.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Framing
    'Frame',
    'encode_header',
    'decode_header',
    'encode_frame',
    'decode_frame',
    'send_message',
    'recv_message',

    # Buffers and pump
    'Window',
    'Pump',
    'PumpStats',

    # Sources and sinks
    'Source',
    'Sink',
    'FileSource',
    'FileSink',
    'SocketSource',
    'SocketSink',
    'CompressingSink',
    'DecompressingSource',
    'CompressionType',

    # Random-access basis readers
    'DataSource',
    'BytesDataSource',
    'FileDataSource',

    # Jobs
    'JobResult',
    'Job',
    'SignatureJob',
    'LoadSignatureJob',
    'DeltaJob',
    'PatchJob',

    # Checksums and signatures
    'ChecksumType',
    'ChecksumRegistry',
    'Checksum',
    'BlockChecksum',
    'HashTable',
    'Signature',
    'SyncStats',
    'sig_args',
    'checksum_type_for_magic',
    'encode_literal_command',
    'encode_copy_command',

    # Role drivers
    'send_signature',
    'recv_signature',
    'send_delta',
    'recv_delta_and_patch',
    'signature_file',
    'load_signature_file',
    'delta_file',
    'patch_file',

    # Connection setup
    'connect_to_server',
    'open_listener',
    'accept_one',
    'accept_connection',

    # Exceptions
    'StreamError',
    'IoError',
    'ProtocolViolation',
    'TransformFailed',
    'ArgumentError',
    'ValidationError',

    # Configuration and CLI
    'Config',
    'Colors',
    'configure_logging',
    'format_size',
    'create_parser',
    'parse_args',
    'main',

    # Protocol constants
    'MAX_PAYLOAD',
    'HEADER_SIZE',
    'DEFAULT_PORT',
    'SIG_MAGIC_BASE',
    'DELTA_MAGIC',
]

import os
import sys
import socket
import struct
import hashlib
import logging
import zlib
import argparse
from typing import (
    Optional, Tuple, List, Dict, Any, Callable, BinaryIO, ClassVar, Sequence
)
from enum import Enum, IntEnum
from dataclasses import dataclass, field
from abc import ABC, abstractmethod

import xxhash
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

# Normalize untyped third-party modules to `Any` for strict type-checkers.
_lz4_frame: Any = lz4.frame
_zstandard: Any = zstandard

# ============================================================================
# PROTOCOL CONSTANTS
# ============================================================================

# Framing: 15-bit payload length + 1-bit end-of-stream flag
MAX_PAYLOAD = 0x7FFF  # 32767, largest length representable in 15 bits
EOF_FLAG = 0x0001
_HEADER = struct.Struct('>H')
HEADER_SIZE = _HEADER.size

# Connection defaults
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5612
DEFAULT_BACKLOG = 1

# Block sizing (generator.c: sum_sizes_sqroot)
BLOCK_SIZE = 700  # Minimum block length picked by the square-root sizing
MAX_BLOCK_SIZE = 0x20000  # 131072 bytes
DEFAULT_BLOCK_LEN = 2048  # Used when the basis size is unknown
BLOCKSUM_BIAS = 10
CHUNK_SIZE = 32 * 1024

# Rolling checksum (rsync.h: CHAR_OFFSET must stay 0 for compatibility)
CHAR_OFFSET = 0

# Hash table sizing (match.c)
TRADITIONAL_TABLESIZE = 1 << 16

# Wire checksum type numbers (lib/md-defines.h), used in the signature magic
CSUM_MD5 = 5
CSUM_XXH64 = 6
CSUM_XXH3_64 = 7
CSUM_XXH3_128 = 8
CSUM_SHA1 = 9
CSUM_SHA256 = 10

# Signature stream: magic, block_len, strong_len, then (weak, strong) records
SIG_MAGIC_BASE = 0x72730100  # "rs\x01" + checksum type number
_SIG_HEADER = struct.Struct('>III')
SIG_HEADER_SIZE = _SIG_HEADER.size
_WEAK_SUM = struct.Struct('>I')

# Delta stream: magic followed by commands
DELTA_MAGIC = 0x72730236
_DELTA_HEADER = struct.Struct('>I')
OP_END = 0x00
OP_LITERAL_1 = 0x01   # 0x01..0x40: literal of 1..64 bytes, no parameter
OP_LITERAL_64 = 0x40
OP_LITERAL_N1 = 0x41  # 0x41..0x44: literal, length parameter of 1/2/4/8 bytes
OP_LITERAL_N8 = 0x44
OP_COPY_N1_N1 = 0x45  # 0x45..0x54: copy, offset width x length width
OP_COPY_N8_N8 = 0x54
_PARAM_WIDTHS: Tuple[int, ...] = (1, 2, 4, 8)

# Exit codes (errcode.h)
RERR_SYNTAX = 1
RERR_PROTOCOL = 2
RERR_UNSUPPORTED = 4
RERR_SOCKETIO = 10
RERR_FILEIO = 11
RERR_STREAMIO = 12


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration for rsync-stream behavior.

    Settings can be modified at runtime; command-line flags override them
    per invocation.

    Attributes:
        BUFFER_SIZE (int): Capacity of each pump window
        HOST (str): Address the client connects to
        PORT (int): TCP port used by both peers
        BACKLOG (int): Listen backlog of the server socket
        OUTPUT_SUFFIX (str): Appended to the basis name for the patched file
        SOCKET_TIMEOUT (float): Per-operation socket timeout (None = block)
        CHECKSUM_TYPE (str): Default strong checksum for new signatures
        MIN_STRONG_LEN (int): Lower bound for the strong checksum prefix
        MAX_LITERAL_RUN (int): Longest literal a delta job buffers before emitting
        COPY_CHUNK_SIZE (int): Bytes read from the basis per patch copy step
        COMPRESSION (str): Stream compression applied to socket traffic
        VERBOSE_LOGGING (bool): Enable INFO logging without -v
        USE_COLORS (bool): Enable colored terminal output (auto-detected)

    Example:
        >>> Config.BUFFER_SIZE = 4096
        >>> Config.COMPRESSION = "zstd"
        >>> Config.reset_defaults()
    """
    # Buffers and transfer
    BUFFER_SIZE: ClassVar[int] = MAX_PAYLOAD
    MAX_LITERAL_RUN: ClassVar[int] = CHUNK_SIZE
    COPY_CHUNK_SIZE: ClassVar[int] = CHUNK_SIZE

    # Network
    HOST: ClassVar[str] = DEFAULT_HOST
    PORT: ClassVar[int] = DEFAULT_PORT
    BACKLOG: ClassVar[int] = DEFAULT_BACKLOG
    SOCKET_TIMEOUT: ClassVar[Optional[float]] = None
    COMPRESSION: ClassVar[str] = "none"

    # Algorithm
    CHECKSUM_TYPE: ClassVar[str] = "md5"
    MIN_STRONG_LEN: ClassVar[int] = 8

    # Files
    OUTPUT_SUFFIX: ClassVar[str] = ".new"

    # UI
    VERBOSE_LOGGING: ClassVar[bool] = False
    USE_COLORS: ClassVar[bool] = True

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "BUFFER_SIZE": MAX_PAYLOAD,
            "MAX_LITERAL_RUN": CHUNK_SIZE,
            "COPY_CHUNK_SIZE": CHUNK_SIZE,
            "HOST": DEFAULT_HOST,
            "PORT": DEFAULT_PORT,
            "BACKLOG": DEFAULT_BACKLOG,
            "SOCKET_TIMEOUT": None,
            "COMPRESSION": "none",
            "CHECKSUM_TYPE": "md5",
            "MIN_STRONG_LEN": 8,
            "OUTPUT_SUFFIX": ".new",
            "VERBOSE_LOGGING": False,
            "USE_COLORS": True,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
logger = logging.getLogger('rsync-stream')


def configure_logging(verbosity: int = 0) -> None:
    """
    Configure the root handler and the rsync-stream logger.

    Args:
        verbosity: 0 = warnings only, 1 = progress (INFO), 2+ = DEBUG
    """
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1 or Config.VERBOSE_LOGGING:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logger.setLevel(level)


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def format_size(size: float) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}" if unit != 'B' else f"{int(size)} {unit}"
        size = size / 1024.0
    return f"{size:.2f} PB"


class Colors:
    """
    ANSI color helpers for CLI messages.

    Disabled automatically when stdout is not a TTY or when
    Config.USE_COLORS is False, in which case plain [OK]/[ERROR] tags are used.
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class StreamError(Exception):
    """
    Base exception for all rsync-stream errors.

    Attributes:
        message: Human-readable error description
        code: Process exit code (matches rsync RERR_* codes where applicable)
        step: Description of the operation that failed, filled in by the CLI

    Example:
        >>> raise StreamError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.step: Optional[str] = None

    def __str__(self) -> str:
        return self.message


class IoError(StreamError):
    """
    Raised when reading, writing, connecting, binding or accepting fails.

    The underlying OSError is kept as __cause__.
    """
    def __init__(self, message: str, code: int = RERR_SOCKETIO) -> None:
        super().__init__(message, code)


class ProtocolViolation(StreamError):
    """
    Raised for framing errors: oversized frames, short reads or writes where a
    whole message was expected, or undecodable stream data.

    The framing carries no resynchronization marker, so the connection must
    be abandoned.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=RERR_PROTOCOL)


class TransformFailed(StreamError):
    """
    Raised when a job reports an unrecoverable error (corrupt signature or
    delta, basis file too short).
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=RERR_STREAMIO)


class ArgumentError(StreamError):
    """
    Raised for missing or malformed invocation arguments, before any I/O.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=RERR_SYNTAX)


class ValidationError(StreamError):
    """
    Raised when an API is used with invalid parameters.

    This indicates a programming error, such as a block length of zero or a
    delta job started before the signature's hash table was built.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=RERR_UNSUPPORTED)


# ============================================================================
# FRAMING CODEC
# ============================================================================

@dataclass(frozen=True)
class Frame:
    """
    One unit of the wire protocol.

    Attributes:
        payload: Raw payload bytes (0..32767 bytes)
        eof: True if no further frames follow

    Example:
        >>> Frame(b"abc", eof=True).encode()
        b'\\x00\\x07abc'
    """
    payload: bytes
    eof: bool = False

    @property
    def length(self) -> int:
        return len(self.payload)

    def encode(self) -> bytes:
        return encode_frame(self.payload, self.eof)


def encode_header(length: int, eof: bool) -> bytes:
    """
    Pack a payload length and end-of-stream flag into the 2-byte header.

    Raises:
        ProtocolViolation: If length does not fit in 15 bits
    """
    if length < 0 or length > MAX_PAYLOAD:
        raise ProtocolViolation(
            f"payload length {length} outside 0..{MAX_PAYLOAD}"
        )
    header = length << 1
    if eof:
        header |= EOF_FLAG
    return _HEADER.pack(header)


def decode_header(header: bytes) -> Tuple[int, bool]:
    """
    Unpack a 2-byte header.

    Returns:
        Tuple of (payload_length, eof)
    """
    if len(header) != HEADER_SIZE:
        raise ProtocolViolation(
            f"frame header must be {HEADER_SIZE} bytes, got {len(header)}"
        )
    (value,) = _HEADER.unpack(header)
    return value >> 1, bool(value & EOF_FLAG)


def encode_frame(payload: bytes, eof: bool = False) -> bytes:
    """Encode one complete frame (header + payload)."""
    return encode_header(len(payload), eof) + bytes(payload)


def decode_frame(data: bytes) -> Tuple[Frame, bytes]:
    """
    Decode the first frame of a byte string.

    Returns:
        Tuple of (frame, remaining bytes after the frame)

    Raises:
        ProtocolViolation: If data holds less than one complete frame
    """
    length, eof = decode_header(bytes(data[:HEADER_SIZE]))
    end = HEADER_SIZE + length
    if len(data) < end:
        raise ProtocolViolation(
            f"truncated frame: header announces {length} bytes, "
            f"only {len(data) - HEADER_SIZE} present"
        )
    return Frame(bytes(data[HEADER_SIZE:end]), eof), bytes(data[end:])


def _recv_exact(sock: socket.socket, size: int, what: str) -> bytes:
    """Read exactly size bytes, treating an early close as a protocol error."""
    chunks: List[bytes] = []
    remaining = size
    while remaining > 0:
        try:
            part = sock.recv(remaining)
        except OSError as e:
            raise IoError(f"Failed to receive {what}: {e}") from e
        if not part:
            raise ProtocolViolation(
                f"Connection closed while receiving {what}: "
                f"got {size - remaining} of {size} bytes"
            )
        chunks.append(part)
        remaining -= len(part)
    return b"".join(chunks)


def send_message(sock: socket.socket, payload: bytes, eof: bool = False) -> None:
    """
    Send one framed message.

    Raises:
        ProtocolViolation: If the payload exceeds MAX_PAYLOAD
        IoError: If the socket write fails
    """
    wire = encode_frame(payload, eof)
    try:
        sock.sendall(wire)
    except OSError as e:
        raise IoError(f"Failed to send message: {e}") from e


def recv_message(sock: socket.socket, max_payload: int = MAX_PAYLOAD) -> Frame:
    """
    Receive one framed message.

    Args:
        sock: Connected stream socket
        max_payload: Largest payload this receiver accepts

    Raises:
        ProtocolViolation: If the frame is too large or the peer closes mid-frame
        IoError: If the socket read fails
    """
    length, eof = decode_header(_recv_exact(sock, HEADER_SIZE, "message header"))
    if length > max_payload:
        raise ProtocolViolation(
            f"frame of {length} bytes exceeds limit of {max_payload}"
        )
    payload = _recv_exact(sock, length, "message payload") if length else b""
    return Frame(payload, eof)


# ============================================================================
# RANDOM-ACCESS BASIS READERS - Side channel used by the patch job
# ============================================================================

class DataSource(ABC):
    """
    Seekable read interface over the basis file.

    The patch job queries this directly at arbitrary offsets; it is never
    driven by the pump.

    Example:
        >>> with FileDataSource("original.bin") as basis:
        ...     basis.seek(4096)
        ...     block = basis.read_chunk(700)
    """

    @abstractmethod
    def read_chunk(self, size: int) -> bytes:
        """Read up to size bytes from the current position."""
        raise NotImplementedError

    @abstractmethod
    def size(self) -> int:
        """Total size in bytes."""
        raise NotImplementedError

    @abstractmethod
    def seek(self, offset: int) -> None:
        """Move to a byte offset from the start."""
        raise NotImplementedError

    def close(self) -> None:
        """Close the data source and release resources."""
        pass

    def __enter__(self) -> 'DataSource':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class BytesDataSource(DataSource):
    """
    DataSource over in-memory bytes.

    Example:
        >>> source = BytesDataSource(b"Hello, World!")
        >>> source.seek(7)
        >>> source.read_chunk(5)
        b'World'
    """

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._position = 0

    def read_chunk(self, size: int) -> bytes:
        chunk = self._data[self._position:self._position + size]
        self._position += len(chunk)
        return chunk

    def size(self) -> int:
        return len(self._data)

    def seek(self, offset: int) -> None:
        self._position = max(0, min(offset, len(self._data)))


class FileDataSource(DataSource):
    """
    DataSource over a file on disk, opened by the `with` statement.

    Raises:
        IoError: If the file cannot be accessed, opened or read
    """

    def __init__(self, filepath: str) -> None:
        self.filepath = filepath
        self._file: Optional[BinaryIO] = None
        try:
            self._size = os.path.getsize(filepath)
        except OSError as e:
            raise IoError(f"Cannot access file {filepath}: {e}", code=RERR_FILEIO) from e

    def __enter__(self) -> 'FileDataSource':
        try:
            self._file = open(self.filepath, 'rb')
        except OSError as e:
            raise IoError(f"Cannot open file {self.filepath}: {e}", code=RERR_FILEIO) from e
        return self

    def read_chunk(self, size: int) -> bytes:
        if not self._file:
            raise RuntimeError("File not opened. Use 'with' statement.")
        try:
            return self._file.read(size)
        except OSError as e:
            raise IoError(f"Failed to read {self.filepath}: {e}", code=RERR_FILEIO) from e

    def size(self) -> int:
        return self._size

    def seek(self, offset: int) -> None:
        if not self._file:
            raise RuntimeError("File not opened. Use 'with' statement.")
        try:
            self._file.seek(offset)
        except OSError as e:
            raise IoError(f"Failed to seek {self.filepath}: {e}", code=RERR_FILEIO) from e

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None


# ============================================================================
# CHECKSUMS - Rolling (weak) and strong block checksums
# ============================================================================

class ChecksumType(Enum):
    """
    Strong checksum algorithms usable in a signature.

    The wire number (lib/md-defines.h) is folded into the signature magic so
    the receiving side knows which algorithm produced the strong sums:

        CSUM_MD5      = 5   -> ChecksumType.MD5
        CSUM_XXH64    = 6   -> ChecksumType.XXH64
        CSUM_XXH3_64  = 7   -> ChecksumType.XXH3
        CSUM_XXH3_128 = 8   -> ChecksumType.XXH128
        CSUM_SHA1     = 9   -> ChecksumType.SHA1
        CSUM_SHA256   = 10  -> ChecksumType.SHA256
    """
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    XXH64 = "xxh64"
    XXH3 = "xxh3"
    XXH128 = "xxh128"

    @property
    def code(self) -> int:
        """Wire checksum number."""
        return _CSUM_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> 'ChecksumType':
        for checksum_type, csum in _CSUM_CODES.items():
            if csum == code:
                return checksum_type
        raise ValidationError(f"Unknown checksum type number: {code}")


_CSUM_CODES: Dict[ChecksumType, int] = {
    ChecksumType.MD5: CSUM_MD5,
    ChecksumType.XXH64: CSUM_XXH64,
    ChecksumType.XXH3: CSUM_XXH3_64,
    ChecksumType.XXH128: CSUM_XXH3_128,
    ChecksumType.SHA1: CSUM_SHA1,
    ChecksumType.SHA256: CSUM_SHA256,
}


def checksum_type_for_magic(magic: int) -> ChecksumType:
    """
    Resolve the strong checksum algorithm announced by a signature magic.

    Raises:
        ValidationError: If the magic is not a signature magic
    """
    if magic & 0xFFFFFF00 != SIG_MAGIC_BASE:
        raise ValidationError(f"Not a signature magic: 0x{magic:08x}")
    return ChecksumType.from_code(magic & 0xFF)


class ChecksumRegistry:
    """
    Registry of available strong checksum algorithms.

    Abstracts the underlying implementations (hashlib, xxhash) behind a
    unified `bytes -> digest` interface.

    Example:
        >>> func = ChecksumRegistry.get_checksum_function(ChecksumType.XXH3)
        >>> len(func(b"Hello, World!"))
        8
    """

    _DIGEST_LENGTHS: ClassVar[Dict[ChecksumType, int]] = {
        ChecksumType.MD5: 16,
        ChecksumType.SHA1: 20,
        ChecksumType.SHA256: 32,
        ChecksumType.XXH64: 8,
        ChecksumType.XXH3: 8,
        ChecksumType.XXH128: 16,
    }

    @classmethod
    def get_checksum_function(cls, checksum_type: ChecksumType) -> Callable[[bytes], bytes]:
        """
        Get checksum function for given type.

        Raises:
            ValueError: If checksum type is not supported
        """
        if checksum_type == ChecksumType.MD5:
            return lambda data: hashlib.md5(data).digest()
        elif checksum_type == ChecksumType.SHA1:
            return lambda data: hashlib.sha1(data).digest()
        elif checksum_type == ChecksumType.SHA256:
            return lambda data: hashlib.sha256(data).digest()
        elif checksum_type == ChecksumType.XXH64:
            return lambda data: xxhash.xxh64(data).digest()
        elif checksum_type == ChecksumType.XXH3:
            return lambda data: xxhash.xxh3_64(data).digest()
        elif checksum_type == ChecksumType.XXH128:
            return lambda data: xxhash.xxh3_128(data).digest()
        else:
            raise ValueError(f"Unsupported checksum type: {checksum_type}")

    @classmethod
    def get_digest_length(cls, checksum_type: ChecksumType) -> int:
        """Get the digest length in bytes for a checksum type."""
        return cls._DIGEST_LENGTHS[checksum_type]


class Checksum:
    """
    rsync's rolling checksum plus a configurable strong checksum.

    1. Rolling Checksum (Weak Checksum):
       A 32-bit Adler-32 variant that can be updated in O(1) as a window
       slides through the data:

           s1 = Σ(data[i] + CHAR_OFFSET) mod 2^16
           s2 = Σ((n-i) * (data[i] + CHAR_OFFSET)) mod 2^16
           checksum = (s2 << 16) | s1

    2. Strong Checksum:
       A hash (MD5, SHA, xxHash) that confirms a weak checksum hit.

    Example:
        >>> cs = Checksum(ChecksumType.MD5)
        >>> weak = Checksum.rolling_checksum(b"abc")
        >>> strong = cs.strong_checksum(b"abc")
    """

    def __init__(self, checksum_type: ChecksumType = ChecksumType.MD5) -> None:
        self.checksum_type = checksum_type
        self.strong_checksum_func = ChecksumRegistry.get_checksum_function(checksum_type)

    @staticmethod
    def rolling_checksum(
        data: Any,
        offset: int = 0,
        length: Optional[int] = None
    ) -> int:
        """
        Weak checksum of data[offset:offset+length], four bytes per iteration.

        Returns:
            32-bit checksum as (s1 & 0xFFFF) | (s2 << 16)
        """
        if length is None:
            length = len(data) - offset

        s1 = 0
        s2 = 0
        i = 0

        while i < length - 3:
            b0 = data[offset + i] + CHAR_OFFSET
            b1 = data[offset + i + 1] + CHAR_OFFSET
            b2 = data[offset + i + 2] + CHAR_OFFSET
            b3 = data[offset + i + 3] + CHAR_OFFSET

            # s2 += 4*s1 + 4*b0 + 3*b1 + 2*b2 + b3
            s2 = (s2 + 4 * (s1 + b0) + 3 * b1 + 2 * b2 + b3) & 0xFFFF
            s1 = (s1 + b0 + b1 + b2 + b3) & 0xFFFF
            i += 4

        while i < length:
            s1 = (s1 + data[offset + i] + CHAR_OFFSET) & 0xFFFF
            s2 = (s2 + s1) & 0xFFFF
            i += 1

        return (s1 & 0xFFFF) | (s2 << 16)

    @staticmethod
    def rolling_update(
        old_byte: int,
        new_byte: int,
        old_s1: int,
        old_s2: int,
        length: int
    ) -> Tuple[int, int]:
        """
        Slide a window of `length` bytes forward by one byte:

            s1_new = s1_old - old_byte + new_byte
            s2_new = s2_old - (length * old_byte) + s1_new

        Returns:
            Tuple of (new_s1, new_s2)
        """
        old_val = old_byte + CHAR_OFFSET
        new_val = new_byte + CHAR_OFFSET
        new_s1 = (old_s1 - old_val + new_val) & 0xFFFF
        new_s2 = (old_s2 - length * old_val + new_s1) & 0xFFFF
        return new_s1, new_s2

    @staticmethod
    def rolling_remove(
        old_byte: int,
        old_s1: int,
        old_s2: int,
        length: int
    ) -> Tuple[int, int]:
        """
        Drop the first byte of a `length`-byte window without adding one.

        Used at end of input, where the window shrinks instead of sliding.
        """
        old_val = old_byte + CHAR_OFFSET
        new_s1 = (old_s1 - old_val) & 0xFFFF
        new_s2 = (old_s2 - length * old_val) & 0xFFFF
        return new_s1, new_s2

    @staticmethod
    def combine_checksum(s1: int, s2: int) -> int:
        """Combine s1 and s2 components into 32-bit checksum."""
        return (s1 & 0xFFFF) | ((s2 & 0xFFFF) << 16)

    @staticmethod
    def checksum_components(checksum: int) -> Tuple[int, int]:
        """Extract s1 and s2 components from 32-bit checksum."""
        return checksum & 0xFFFF, (checksum >> 16) & 0xFFFF

    def strong_checksum(self, data: Any) -> bytes:
        """Full-length strong checksum of data."""
        return self.strong_checksum_func(bytes(data))


# ============================================================================
# SIGNATURE STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class BlockChecksum:
    """
    Checksums of one basis block (struct sum_buf in rsync.h).

    Attributes:
        weak_checksum: 32-bit rolling checksum
        strong_checksum: Strong checksum prefix (strong_len bytes)
        offset: Byte offset of the block in the basis file
        length: Block length in bytes
    """
    weak_checksum: int
    strong_checksum: bytes
    offset: int
    length: int

    def __repr__(self) -> str:
        return (
            f"BlockChecksum(weak=0x{self.weak_checksum:08x}, "
            f"strong={self.strong_checksum.hex()[:16]}, offset={self.offset}, len={self.length})"
        )


class HashTable:
    """
    Weak-checksum index over a signature's blocks (match.c hash table).

    Table sizing follows build_hash_table():
        tablesize = (count/8) * 10 + 11, at least TRADITIONAL_TABLESIZE

    Small tables hash with SUM2HASH ((s1 + s2) & 0xFFFF); larger ones with
    BIG_SUM2HASH (sum % tablesize).

    Example:
        >>> ht = HashTable(signature.blocks)
        >>> for index in ht.lookup_indices(weak):
        ...     verify(signature.blocks[index])
    """

    def __init__(self, blocks: List[BlockChecksum]) -> None:
        self.blocks = blocks
        self.count = len(blocks)
        self.tablesize = max((self.count // 8) * 10 + 11, TRADITIONAL_TABLESIZE)
        self._table: Dict[int, List[int]] = {}
        for i, block in enumerate(blocks):
            self._table.setdefault(self._hash(block.weak_checksum), []).append(i)

    def _hash(self, weak_checksum: int) -> int:
        if self.tablesize == TRADITIONAL_TABLESIZE:
            return ((weak_checksum & 0xFFFF) + (weak_checksum >> 16)) & 0xFFFF
        return weak_checksum % self.tablesize

    def lookup_indices(self, weak_checksum: int, length: Optional[int] = None) -> List[int]:
        """
        Block indices whose weak checksum (and optionally length) match.

        Returns:
            List of indices into self.blocks, in basis order
        """
        indices = self._table.get(self._hash(weak_checksum))
        if not indices:
            return []
        return [
            i for i in indices
            if self.blocks[i].weak_checksum == weak_checksum
            and (length is None or self.blocks[i].length == length)
        ]

    def __len__(self) -> int:
        return self.count


@dataclass
class Signature:
    """
    A loaded signature: block layout, checksum algorithm and block sums.

    The hash index must be built with build_hash_table() before a delta can
    be computed against the signature; this is a one-time step outside the
    streaming pump.

    Attributes:
        block_len: Length of every basis block (the last one may be shorter)
        strong_len: Bytes of strong checksum kept per block
        checksum_type: Strong checksum algorithm
        blocks: Block sums in basis order
        hash_table: Weak-checksum index, None until built
    """
    block_len: int
    strong_len: int
    checksum_type: ChecksumType
    blocks: List[BlockChecksum] = field(default_factory=list)
    hash_table: Optional[HashTable] = field(default=None, repr=False, compare=False)

    @property
    def magic(self) -> int:
        return SIG_MAGIC_BASE + self.checksum_type.code

    @property
    def num_blocks(self) -> int:
        return len(self.blocks)

    def build_hash_table(self) -> HashTable:
        self.hash_table = HashTable(self.blocks)
        logger.debug("Built hash table: %d blocks, tablesize %d",
                     self.num_blocks, self.hash_table.tablesize)
        return self.hash_table


@dataclass
class SyncStats:
    """
    Matching statistics of one delta computation (match.c counters).

    Attributes:
        matches: Blocks matched (after strong verification)
        hash_hits: Weak checksum lookups that found candidates
        false_alarms: Hash hits rejected by the strong checksum
        literal_data: Bytes sent as literals
        matched_data: Bytes covered by copy commands
    """
    matches: int = 0
    hash_hits: int = 0
    false_alarms: int = 0
    literal_data: int = 0
    matched_data: int = 0

    @property
    def efficiency(self) -> float:
        """Fraction of the new file reconstructed from the basis."""
        total = self.literal_data + self.matched_data
        return self.matched_data / total if total else 0.0

    def __repr__(self) -> str:
        return (
            f"SyncStats(matches={self.matches}, hash_hits={self.hash_hits}, "
            f"false_alarms={self.false_alarms}, literal={format_size(self.literal_data)}, "
            f"matched={format_size(self.matched_data)}, efficiency={self.efficiency:.1%})"
        )


def _validate_lengths(block_len: int, strong_len: int, checksum_type: ChecksumType) -> None:
    if block_len <= 0:
        raise ValidationError(f"block_len must be positive, got {block_len}")
    if block_len > MAX_BLOCK_SIZE:
        raise ValidationError(
            f"block_len too large ({block_len}), maximum is {MAX_BLOCK_SIZE} bytes"
        )
    digest_len = ChecksumRegistry.get_digest_length(checksum_type)
    if not 1 <= strong_len <= digest_len:
        raise ValidationError(
            f"strong_len {strong_len} outside 1..{digest_len} for {checksum_type.value}"
        )


def sig_args(file_size: int,
             checksum_type: Optional[ChecksumType] = None,
             block_len: int = 0,
             strong_len: int = 0) -> Tuple[int, int, int]:
    """
    Recommended signature parameters for a basis of file_size bytes.

    Block length uses the square-root sizing of generator.c
    sum_sizes_sqroot(): BLOCK_SIZE for files up to BLOCK_SIZE^2 bytes,
    otherwise roughly sqrt(file_size), capped at MAX_BLOCK_SIZE. The strong
    length grows with the number of blocks so that the chance of a false
    match stays negligible, clamped to [Config.MIN_STRONG_LEN, digest length].

    Args:
        file_size: Basis size in bytes (negative = unknown)
        checksum_type: Strong checksum (default Config.CHECKSUM_TYPE)
        block_len: Fixed block length (0 = pick automatically)
        strong_len: Fixed strong length (0 = pick automatically)

    Returns:
        Tuple of (magic, block_len, strong_len)

    Example:
        >>> magic, block_len, strong_len = sig_args(10_000_000)
    """
    if checksum_type is None:
        checksum_type = ChecksumType(Config.CHECKSUM_TYPE)
    digest_len = ChecksumRegistry.get_digest_length(checksum_type)

    if block_len == 0:
        if file_size < 0:
            block_len = DEFAULT_BLOCK_LEN
        elif file_size <= BLOCK_SIZE * BLOCK_SIZE:
            block_len = BLOCK_SIZE
        else:
            c = 1
            length = file_size
            while length > 0:
                length >>= 2
                c <<= 1
            if c >= MAX_BLOCK_SIZE:
                block_len = MAX_BLOCK_SIZE
            else:
                block_len = 0
                while c >= 8:
                    block_len |= c
                    if file_size < block_len * block_len:
                        block_len &= ~c
                    c >>= 1
                block_len = max(block_len, BLOCK_SIZE)

    if strong_len == 0:
        if file_size < 0:
            strong_len = digest_len
        else:
            b = BLOCKSUM_BIAS
            length = file_size
            while length > 0:
                length >>= 1
                b += 2
            c = block_len
            while (c >> 1) and b:
                c >>= 1
                b -= 1
            # add a bit, subtract rollsum, round up
            strong_len = (b + 1 - 32 + 7) // 8
            strong_len = max(strong_len, Config.MIN_STRONG_LEN)
            strong_len = min(strong_len, digest_len)

    _validate_lengths(block_len, strong_len, checksum_type)
    return SIG_MAGIC_BASE + checksum_type.code, block_len, strong_len


def _width_index(value: int) -> int:
    for i, width in enumerate(_PARAM_WIDTHS):
        if value < 1 << (8 * width):
            return i
    raise ValidationError(f"delta parameter {value} does not fit in 8 bytes")


def encode_literal_command(length: int) -> bytes:
    """
    Encode a literal command header; the literal bytes follow it.

    Example:
        >>> encode_literal_command(10)
        b'\\n'
        >>> encode_literal_command(300)
        b'B\\x01,'
    """
    if length <= 0:
        raise ValidationError(f"literal length must be positive, got {length}")
    if length <= OP_LITERAL_64:
        return bytes([OP_LITERAL_1 + length - 1])
    i = _width_index(length)
    return bytes([OP_LITERAL_N1 + i]) + length.to_bytes(_PARAM_WIDTHS[i], 'big')


def encode_copy_command(offset: int, length: int) -> bytes:
    """Encode a copy of `length` basis bytes starting at `offset`."""
    if offset < 0 or length <= 0:
        raise ValidationError(f"invalid copy command: offset={offset}, length={length}")
    i = _width_index(offset)
    j = _width_index(length)
    return (bytes([OP_COPY_N1_N1 + 4 * i + j])
            + offset.to_bytes(_PARAM_WIDTHS[i], 'big')
            + length.to_bytes(_PARAM_WIDTHS[j], 'big'))


# ============================================================================
# WINDOWS - Fixed-capacity buffers shared between pump and job
# ============================================================================

class Window:
    """
    Fixed-capacity buffer with a sliding region of valid bytes.

    Valid, not-yet-consumed bytes live in storage[offset:offset+filled].
    Consumers advance `offset`; producers append at offset+filled. compact()
    moves the unconsumed tail to the front so a refill has room.

    The `eof` flag is only meaningful on an input window: once set it means
    no more bytes will ever be appended.

    Example:
        >>> w = Window(8)
        >>> w.append(b"abcdef")
        >>> w.take(4)
        b'abcd'
        >>> w.compact(); w.space
        6
    """
    __slots__ = ("storage", "capacity", "offset", "filled", "eof")

    def __init__(self, capacity: int = MAX_PAYLOAD) -> None:
        if capacity < 0:
            raise ValidationError(f"window capacity cannot be negative ({capacity})")
        self.storage = bytearray(capacity)
        self.capacity = capacity
        self.offset = 0
        self.filled = 0
        self.eof = False

    def __len__(self) -> int:
        return self.filled

    def __repr__(self) -> str:
        return (f"Window(capacity={self.capacity}, offset={self.offset}, "
                f"filled={self.filled}, eof={self.eof})")

    @property
    def space(self) -> int:
        """Free bytes after the valid region."""
        return self.capacity - self.offset - self.filled

    def compact(self) -> None:
        """Relocate the unconsumed bytes to the start of storage."""
        if self.offset == 0:
            return
        if self.filled:
            start = self.offset
            self.storage[0:self.filled] = self.storage[start:start + self.filled]
        self.offset = 0

    def append(self, data: bytes) -> None:
        size = len(data)
        if size > self.space:
            raise BufferError(
                f"Window overflow: appending {size} bytes with {self.space} bytes free"
            )
        end = self.offset + self.filled
        self.storage[end:end + size] = data
        self.filled += size

    def peek(self, size: Optional[int] = None) -> bytes:
        if size is None or size > self.filled:
            size = self.filled
        return bytes(self.storage[self.offset:self.offset + size])

    def consume(self, size: int) -> None:
        if size > self.filled:
            raise BufferError(f"Window underflow: consuming {size} of {self.filled} bytes")
        self.offset += size
        self.filled -= size

    def take(self, size: int) -> bytes:
        data = self.peek(size)
        self.consume(len(data))
        return data

    def getvalue(self) -> bytes:
        return self.peek()

    def clear(self) -> None:
        self.offset = 0
        self.filled = 0


# ============================================================================
# JOBS - Incremental transforms driven one step at a time
# ============================================================================

class JobResult(IntEnum):
    """Outcome of one Job.step() call."""
    DONE = 0     # Transform complete; drain output one last time
    BLOCKED = 1  # Needs more input and/or output space
    FAILED = 2   # Unrecoverable; see Job.error


class Job(ABC):
    """
    Base class for incremental transforms.

    step() consumes bytes from the front of the input window and appends to
    the output window, doing as much work as it can before it needs more
    input or more output space. Subclasses implement _advance(), which
    performs one unit of work and returns False when it cannot proceed
    without more input. Output is queued with _emit() and copied into the
    output window as space allows, so a job never overruns its window.

    A job learns that input is exhausted from `inbuf.eof` and must then
    finalize rather than wait.
    """

    name: ClassVar[str] = "job"

    def __init__(self) -> None:
        self._pending = bytearray()
        self._finished = False
        self._closed = False
        self.error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self._finished and not self._pending

    def step(self, inbuf: Window, outbuf: Window) -> JobResult:
        if self._closed:
            raise ValidationError(f"{self.name} job used after close()")
        if self.error is not None:
            return JobResult.FAILED
        try:
            while True:
                self._flush(outbuf)
                if self._pending:
                    return JobResult.BLOCKED
                if self._finished:
                    return JobResult.DONE
                if not self._advance(inbuf):
                    return JobResult.BLOCKED
        except TransformFailed as e:
            self.error = e.message
            logger.debug("%s job failed: %s", self.name, e.message)
            return JobResult.FAILED

    @abstractmethod
    def _advance(self, inbuf: Window) -> bool:
        raise NotImplementedError

    def _emit(self, data: bytes) -> None:
        self._pending += data

    def _flush(self, outbuf: Window) -> None:
        if not self._pending:
            return
        n = min(len(self._pending), outbuf.space)
        if n:
            outbuf.append(self._pending[:n])
            del self._pending[:n]

    def close(self) -> None:
        """Release job state. Safe to call more than once."""
        self._closed = True
        self._pending.clear()

    def __enter__(self) -> 'Job':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class SignatureJob(Job):
    """
    Builds a signature stream from basis bytes.

    Output: the 12-byte header (magic, block_len, strong_len), then one
    (weak, strong prefix) record per block_len bytes of input. The final
    block may be shorter.

    Example:
        >>> magic, block_len, strong_len = sig_args(len(data))
        >>> job = SignatureJob(block_len, strong_len)
    """

    name = "signature"

    def __init__(self, block_len: int, strong_len: int,
                 checksum_type: Optional[ChecksumType] = None) -> None:
        super().__init__()
        if checksum_type is None:
            checksum_type = ChecksumType(Config.CHECKSUM_TYPE)
        _validate_lengths(block_len, strong_len, checksum_type)
        self.block_len = block_len
        self.strong_len = strong_len
        self.checksum = Checksum(checksum_type)
        self.blocks_written = 0
        self._block = bytearray()
        self._header_sent = False

    def _advance(self, inbuf: Window) -> bool:
        if not self._header_sent:
            magic = SIG_MAGIC_BASE + self.checksum.checksum_type.code
            self._emit(_SIG_HEADER.pack(magic, self.block_len, self.strong_len))
            self._header_sent = True
            return True
        if inbuf.filled:
            self._block += inbuf.take(self.block_len - len(self._block))
            if len(self._block) == self.block_len:
                self._emit_block()
            return True
        if inbuf.eof:
            if self._block:
                self._emit_block()
            self._finished = True
            return True
        return False

    def _emit_block(self) -> None:
        weak = Checksum.rolling_checksum(self._block)
        strong = self.checksum.strong_checksum(self._block)[:self.strong_len]
        self._emit(_WEAK_SUM.pack(weak) + strong)
        self._block.clear()
        self.blocks_written += 1


class LoadSignatureJob(Job):
    """
    Parses a signature stream into a Signature.

    Whole block records are parsed as soon as they are available; the bytes
    of an incomplete record are held back until the rest of it arrives, so
    records may straddle any number of refills. Produces no output.

    Attributes:
        signature: The loaded Signature (set once the header is parsed)
    """

    name = "load signature"

    def __init__(self) -> None:
        super().__init__()
        self.signature: Optional[Signature] = None
        self._record_len = 0
        self._partial = bytearray()

    def _advance(self, inbuf: Window) -> bool:
        if inbuf.filled:
            self._partial += inbuf.take(inbuf.filled)
        if self.signature is None:
            return self._read_header(inbuf.eof)

        count = len(self._partial) // self._record_len
        if count:
            sig = self.signature
            size = count * self._record_len
            for pos in range(0, size, self._record_len):
                (weak,) = _WEAK_SUM.unpack_from(self._partial, pos)
                strong = bytes(self._partial[pos + _WEAK_SUM.size:pos + self._record_len])
                sig.blocks.append(BlockChecksum(
                    weak_checksum=weak,
                    strong_checksum=strong,
                    offset=len(sig.blocks) * sig.block_len,
                    length=sig.block_len,
                ))
            del self._partial[:size]
            return True
        if inbuf.eof:
            if self._partial:
                raise TransformFailed(
                    f"signature ends inside a block record ({len(self._partial)} stray bytes)"
                )
            self._finished = True
            return True
        return False

    def _read_header(self, at_eof: bool) -> bool:
        if len(self._partial) < SIG_HEADER_SIZE:
            if at_eof:
                raise TransformFailed(
                    f"signature header truncated ({len(self._partial)} of {SIG_HEADER_SIZE} bytes)"
                )
            return False
        magic, block_len, strong_len = _SIG_HEADER.unpack_from(self._partial)
        del self._partial[:SIG_HEADER_SIZE]
        try:
            checksum_type = checksum_type_for_magic(magic)
            _validate_lengths(block_len, strong_len, checksum_type)
        except ValidationError as e:
            raise TransformFailed(f"bad signature header: {e}") from e
        self.signature = Signature(block_len, strong_len, checksum_type)
        self._record_len = _WEAK_SUM.size + strong_len
        logger.debug("Signature header: %s, block_len=%d, strong_len=%d",
                     checksum_type.value, block_len, strong_len)
        return True


class DeltaJob(Job):
    """
    Computes a delta of new-file bytes against a signature.

    This is hash_search() from match.c reworked for streaming input:

        1. Compute the weak checksum of the block_len window at the cursor
        2. Look it up in the signature's hash table
        3. On a hit, confirm with the strong checksum and emit a copy
        4. Otherwise slide one byte, updating the weak sum in O(1)

    At end of input the window shrinks instead of sliding so a short final
    basis block can still match. Adjacent copies are coalesced, and pending
    literals are flushed once they reach Config.MAX_LITERAL_RUN bytes, which
    bounds the job's internal buffer.

    Raises:
        ValidationError: If the signature's hash table was not built
    """

    name = "delta"

    def __init__(self, signature: Signature) -> None:
        super().__init__()
        if signature.hash_table is None:
            raise ValidationError(
                "signature hash table not built; call build_hash_table() first"
            )
        self.signature = signature
        self.block_len = signature.block_len
        self.checksum = Checksum(signature.checksum_type)
        self.stats = SyncStats()
        self._table = signature.hash_table
        self._strong_len = signature.strong_len
        self._max_literal = max(1, Config.MAX_LITERAL_RUN)
        self._header_sent = False
        # Unsent input: literal run starts at _lit_start, search window at _pos
        self._scoop = bytearray()
        self._pos = 0
        self._lit_start = 0
        self._s1 = 0
        self._s2 = 0
        self._rolling = False
        self._checked = False
        # want_i: the block that would extend the previous match
        self._want = 0
        self._copy_offset = 0
        self._copy_len = 0

    def _advance(self, inbuf: Window) -> bool:
        if not self._header_sent:
            self._emit(_DELTA_HEADER.pack(DELTA_MAGIC))
            self._header_sent = True
            return True
        if inbuf.filled:
            self._scoop += inbuf.take(inbuf.filled)
        return self._search(inbuf.eof)

    def _search(self, at_eof: bool) -> bool:
        scoop = self._scoop
        blen = self.block_len
        while True:
            avail = len(scoop) - self._pos
            if avail == 0:
                if not at_eof:
                    return False
                self._finish()
                return True
            if avail < blen and not at_eof:
                return False

            wlen = min(blen, avail)
            if not self._rolling:
                weak = Checksum.rolling_checksum(scoop, self._pos, wlen)
                self._s1, self._s2 = Checksum.checksum_components(weak)
                self._rolling = True

            if not self._checked:
                index = self._find_block(Checksum.combine_checksum(self._s1, self._s2), wlen)
                if index is not None:
                    self._matched(index, wlen)
                    if self._pending:
                        return True
                    continue
                self._checked = True

            if avail > blen:
                self._s1, self._s2 = Checksum.rolling_update(
                    scoop[self._pos], scoop[self._pos + blen], self._s1, self._s2, blen
                )
            elif at_eof:
                self._s1, self._s2 = Checksum.rolling_remove(
                    scoop[self._pos], self._s1, self._s2, wlen
                )
            else:
                # Window is full but the byte after it has not arrived yet.
                return False
            self._pos += 1
            self._checked = False

            if self._pos - self._lit_start >= self._max_literal:
                self._flush_literal()
                self._trim()
                return True

    def _find_block(self, weak: int, wlen: int) -> Optional[int]:
        candidates = self._table.lookup_indices(weak)
        if not candidates:
            return None
        self.stats.hash_hits += 1
        if self._want in candidates:
            candidates.remove(self._want)
            candidates.insert(0, self._want)
        strong = self.checksum.strong_checksum(
            self._scoop[self._pos:self._pos + wlen]
        )[:self._strong_len]
        blocks = self.signature.blocks
        for index in candidates:
            if blocks[index].strong_checksum == strong:
                return index
        self.stats.false_alarms += 1
        return None

    def _matched(self, index: int, wlen: int) -> None:
        self._flush_literal()
        self._queue_copy(index * self.block_len, wlen)
        self.stats.matches += 1
        self.stats.matched_data += wlen
        self._pos += wlen
        self._lit_start = self._pos
        self._rolling = False
        self._checked = False
        self._want = index + 1
        self._trim()

    def _queue_copy(self, offset: int, length: int) -> None:
        if self._copy_len and offset == self._copy_offset + self._copy_len:
            self._copy_len += length
            return
        self._flush_copy()
        self._copy_offset = offset
        self._copy_len = length

    def _flush_copy(self) -> None:
        if self._copy_len:
            self._emit(encode_copy_command(self._copy_offset, self._copy_len))
            self._copy_len = 0

    def _flush_literal(self) -> None:
        length = self._pos - self._lit_start
        if length <= 0:
            return
        self._flush_copy()
        self._emit(encode_literal_command(length))
        self._emit(self._scoop[self._lit_start:self._pos])
        self.stats.literal_data += length
        self._lit_start = self._pos

    def _trim(self) -> None:
        cut = self._lit_start
        if cut:
            del self._scoop[:cut]
            self._pos -= cut
            self._lit_start = 0

    def _finish(self) -> None:
        self._flush_literal()
        self._flush_copy()
        self._emit(bytes([OP_END]))
        self._finished = True
        logger.debug("Delta complete: %r", self.stats)

    def close(self) -> None:
        super().close()
        self._scoop = bytearray()


class PatchJob(Job):
    """
    Applies a delta stream to a basis, producing the new file.

    Literal bytes come from the input window; copy commands read the basis
    through a DataSource at arbitrary offsets. Copies are emitted in
    Config.COPY_CHUNK_SIZE pieces so output stays bounded. The bytes of an
    incomplete command are held until its parameters have all arrived.

    Attributes:
        literal_bytes: Bytes taken from the delta stream
        copied_bytes: Bytes copied from the basis
    """

    name = "patch"

    def __init__(self, basis: DataSource) -> None:
        super().__init__()
        self.basis = basis
        self.literal_bytes = 0
        self.copied_bytes = 0
        self._magic_seen = False
        self._command = bytearray()
        self._literal_left = 0
        self._copy_offset = 0
        self._copy_left = 0

    def _advance(self, inbuf: Window) -> bool:
        if self._literal_left:
            return self._literal(inbuf)
        if self._copy_left:
            return self._copy()
        if not self._magic_seen:
            return self._read_magic(inbuf)
        return self._read_command(inbuf)

    def _gather(self, inbuf: Window, size: int, what: str) -> Optional[bytes]:
        """Collect size bytes of a header; None until all of them arrived."""
        missing = size - len(self._command)
        if missing > 0:
            self._command += inbuf.take(missing)
        if len(self._command) < size:
            if inbuf.eof:
                raise TransformFailed(
                    f"delta truncated in {what} ({len(self._command)} of {size} bytes)"
                )
            return None
        data = bytes(self._command)
        self._command.clear()
        return data

    def _read_magic(self, inbuf: Window) -> bool:
        header = self._gather(inbuf, _DELTA_HEADER.size, "header")
        if header is None:
            return False
        (magic,) = _DELTA_HEADER.unpack(header)
        if magic != DELTA_MAGIC:
            raise TransformFailed(f"bad delta magic 0x{magic:08x}")
        self._magic_seen = True
        return True

    @staticmethod
    def _command_size(op: int) -> int:
        if op == OP_END or OP_LITERAL_1 <= op <= OP_LITERAL_64:
            return 1
        if OP_LITERAL_N1 <= op <= OP_LITERAL_N8:
            return 1 + _PARAM_WIDTHS[op - OP_LITERAL_N1]
        if OP_COPY_N1_N1 <= op <= OP_COPY_N8_N8:
            return (1 + _PARAM_WIDTHS[(op - OP_COPY_N1_N1) // 4]
                    + _PARAM_WIDTHS[(op - OP_COPY_N1_N1) % 4])
        raise TransformFailed(f"unknown delta command 0x{op:02x}")

    def _read_command(self, inbuf: Window) -> bool:
        if self._command:
            op = self._command[0]
        elif inbuf.filled:
            op = inbuf.peek(1)[0]
        elif inbuf.eof:
            raise TransformFailed("delta ended without an END command")
        else:
            return False
        command = self._gather(inbuf, self._command_size(op), "command")
        if command is None:
            return False

        if op == OP_END:
            self._finished = True
            logger.debug("Patch complete: %d literal bytes, %d copied bytes",
                         self.literal_bytes, self.copied_bytes)
        elif op <= OP_LITERAL_64:
            self._literal_left = op - OP_LITERAL_1 + 1
        elif op <= OP_LITERAL_N8:
            self._literal_left = int.from_bytes(command[1:], 'big')
            if not self._literal_left:
                raise TransformFailed("zero-length literal command")
        else:
            offset_width = _PARAM_WIDTHS[(op - OP_COPY_N1_N1) // 4]
            offset = int.from_bytes(command[1:1 + offset_width], 'big')
            length = int.from_bytes(command[1 + offset_width:], 'big')
            if not length:
                raise TransformFailed("zero-length copy command")
            if offset + length > self.basis.size():
                raise TransformFailed(
                    f"copy of {length} bytes at offset {offset} runs past end of "
                    f"basis ({self.basis.size()} bytes)"
                )
            self._copy_offset = offset
            self._copy_left = length
        return True

    def _literal(self, inbuf: Window) -> bool:
        n = min(self._literal_left, inbuf.filled)
        if not n:
            if inbuf.eof:
                raise TransformFailed(
                    f"delta truncated inside literal ({self._literal_left} bytes missing)"
                )
            return False
        self._emit(inbuf.take(n))
        self._literal_left -= n
        self.literal_bytes += n
        return True

    def _copy(self) -> bool:
        n = min(self._copy_left, Config.COPY_CHUNK_SIZE)
        self.basis.seek(self._copy_offset)
        data = self.basis.read_chunk(n)
        if len(data) != n:
            raise TransformFailed(
                f"basis short read at offset {self._copy_offset}: wanted {n}, got {len(data)}"
            )
        self._emit(data)
        self._copy_offset += n
        self._copy_left -= n
        self.copied_bytes += n
        return True


# ============================================================================
# SOURCES AND SINKS - Transport I/O seen by the pump
# ============================================================================

class Source(ABC):
    """
    Sequential byte producer feeding the pump's input window.

    pull(size) returns up to size bytes and whether the source is exhausted.
    Read failures raise IoError; they are never reported as end-of-stream.
    """

    @abstractmethod
    def pull(self, size: int) -> Tuple[bytes, bool]:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> 'Source':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class Sink(ABC):
    """
    Sequential byte consumer draining the pump's output window.

    push(data, eof) either accepts all of data or raises; eof marks the last
    push of the stream.
    """

    @abstractmethod
    def push(self, data: bytes, eof: bool = False) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> 'Sink':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class FileSource(Source):
    """
    Reads a local (or in-memory) binary file.

    End of stream is a read returning zero bytes. A short read is not end of
    stream, since pipes and sockets wrapped as files may return partial data.

    Example:
        >>> with FileSource.open("data.bin") as source:
        ...     data, eof = source.pull(4096)
    """

    def __init__(self, fileobj: BinaryIO, name: str = "<file>", owns: bool = False) -> None:
        self._file = fileobj
        self.name = name
        self._owns = owns

    @classmethod
    def open(cls, path: str) -> 'FileSource':
        try:
            fileobj = open(path, 'rb')
        except OSError as e:
            raise IoError(f"Cannot open {path} for reading: {e}", code=RERR_FILEIO) from e
        return cls(fileobj, name=path, owns=True)

    def size(self) -> int:
        """Total size of the file, restoring the current position."""
        try:
            position = self._file.tell()
            end = self._file.seek(0, os.SEEK_END)
            self._file.seek(position)
        except OSError as e:
            raise IoError(f"Cannot determine size of {self.name}: {e}", code=RERR_FILEIO) from e
        return end

    def pull(self, size: int) -> Tuple[bytes, bool]:
        try:
            data = self._file.read(size)
        except OSError as e:
            raise IoError(f"Failed to read {self.name}: {e}", code=RERR_FILEIO) from e
        return data, not data

    def close(self) -> None:
        if self._owns:
            self._file.close()


class FileSink(Sink):
    """
    Writes to a local (or in-memory) binary file; eof is ignored.

    Example:
        >>> with FileSink.open("data.bin.new") as sink:
        ...     sink.push(b"patched bytes")
    """

    def __init__(self, fileobj: BinaryIO, name: str = "<file>", owns: bool = False) -> None:
        self._file = fileobj
        self.name = name
        self._owns = owns

    @classmethod
    def open(cls, path: str) -> 'FileSink':
        try:
            fileobj = open(path, 'wb')
        except OSError as e:
            raise IoError(f"Cannot open {path} for writing: {e}", code=RERR_FILEIO) from e
        return cls(fileobj, name=path, owns=True)

    def push(self, data: bytes, eof: bool = False) -> None:
        if not data:
            return
        try:
            written = self._file.write(data)
        except OSError as e:
            raise IoError(f"Failed to write to {self.name}: {e}", code=RERR_FILEIO) from e
        if written is not None and written != len(data):
            raise IoError(
                f"Short write to {self.name}: {written} of {len(data)} bytes",
                code=RERR_FILEIO,
            )

    def close(self) -> None:
        try:
            self._file.flush()
        except OSError as e:
            raise IoError(f"Failed to flush {self.name}: {e}", code=RERR_FILEIO) from e
        finally:
            if self._owns:
                self._file.close()

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.close()
            return
        # Keep the error that is already unwinding.
        try:
            self.close()
        except (IoError, OSError):
            logger.debug("Ignoring close failure of %s after %s", self.name, exc_type.__name__)


class SocketSource(Source):
    """
    Reads framed messages from a connected socket.

    End of stream is the peer's EOF flag, reported only once every payload
    byte has been handed out. A frame larger than the requested size is
    buffered and returned across several pulls.

    Attributes:
        frames: Number of frames received
    """

    def __init__(self, sock: socket.socket, max_payload: int = MAX_PAYLOAD) -> None:
        self._sock = sock
        self._max_payload = max_payload
        self._pending = bytearray()
        self._eof = False
        self.frames = 0

    def pull(self, size: int) -> Tuple[bytes, bool]:
        if not self._pending and not self._eof:
            frame = recv_message(self._sock, self._max_payload)
            self.frames += 1
            self._pending += frame.payload
            self._eof = frame.eof
        data = bytes(self._pending[:size])
        del self._pending[:size]
        return data, self._eof and not self._pending


class SocketSink(Sink):
    """
    Writes framed messages to a connected socket.

    Data longer than MAX_PAYLOAD is split across frames; only the last frame
    of an eof push carries the EOF flag. An eof push with no data sends a bare
    terminal frame.

    Attributes:
        frames: Number of frames sent
    """

    def __init__(self, sock: socket.socket, max_payload: int = MAX_PAYLOAD) -> None:
        if not 0 < max_payload <= MAX_PAYLOAD:
            raise ValidationError(f"max_payload must be in 1..{MAX_PAYLOAD}, got {max_payload}")
        self._sock = sock
        self._max_payload = max_payload
        self._eof_sent = False
        self.frames = 0

    def push(self, data: bytes, eof: bool = False) -> None:
        if self._eof_sent:
            raise ProtocolViolation("push after end of stream was sent")
        if not data:
            if eof:
                send_message(self._sock, b"", True)
                self.frames += 1
                self._eof_sent = True
            return
        step = self._max_payload
        for start in range(0, len(data), step):
            last = start + step >= len(data)
            send_message(self._sock, data[start:start + step], eof and last)
            self.frames += 1
        if eof:
            self._eof_sent = True


# ============================================================================
# STREAM COMPRESSION - Optional, applied between the pump and the framing
# ============================================================================

class CompressionType(Enum):
    """
    Stream compression algorithms (the CPRES_* family of rsync.h).

    Both peers must agree on the algorithm out of band; the framing carries
    no negotiation.
    """
    NONE = "none"
    ZLIB = "zlib"
    LZ4 = "lz4"
    ZSTD = "zstd"


_DEFAULT_LEVELS: Dict[CompressionType, int] = {
    CompressionType.ZLIB: 6,
    CompressionType.LZ4: 1,
    CompressionType.ZSTD: 3,
}

_DECOMPRESS_ERRORS: Tuple[type, ...] = (zlib.error, RuntimeError, _zstandard.ZstdError)


class _LZ4StreamCompressor:
    """compress()/flush() adapter over lz4.frame.LZ4FrameCompressor."""

    def __init__(self, level: int) -> None:
        self._ctx = _lz4_frame.LZ4FrameCompressor(compression_level=level)
        self._started = False

    def _begin(self) -> bytes:
        if self._started:
            return b""
        self._started = True
        return self._ctx.begin()

    def compress(self, data: bytes) -> bytes:
        return self._begin() + self._ctx.compress(data)

    def flush(self) -> bytes:
        return self._begin() + self._ctx.flush()


def _new_compressor(comp_type: CompressionType, level: Optional[int] = None) -> Any:
    if level is None:
        level = _DEFAULT_LEVELS.get(comp_type, 0)
    if comp_type == CompressionType.ZLIB:
        return zlib.compressobj(level)
    elif comp_type == CompressionType.LZ4:
        return _LZ4StreamCompressor(level)
    elif comp_type == CompressionType.ZSTD:
        return _zstandard.ZstdCompressor(level=level).compressobj()
    raise ValueError(f"Unsupported compression type: {comp_type}")


def _new_decompressor(comp_type: CompressionType) -> Any:
    if comp_type == CompressionType.ZLIB:
        return zlib.decompressobj()
    elif comp_type == CompressionType.LZ4:
        return _lz4_frame.LZ4FrameDecompressor()
    elif comp_type == CompressionType.ZSTD:
        return _zstandard.ZstdDecompressor().decompressobj()
    raise ValueError(f"Unsupported compression type: {comp_type}")


class CompressingSink(Sink):
    """
    Compresses the byte stream before handing it to an inner sink.

    The compressor is finished on the eof push, so the inner sink always
    receives a complete compressed stream ending with eof.
    """

    def __init__(self, inner: Sink, comp_type: CompressionType,
                 level: Optional[int] = None) -> None:
        self._inner = inner
        self._compressor = _new_compressor(comp_type, level)
        self.comp_type = comp_type
        self.bytes_in = 0
        self.bytes_out = 0

    def push(self, data: bytes, eof: bool = False) -> None:
        out = self._compressor.compress(data) if data else b""
        if eof:
            out += self._compressor.flush()
        self.bytes_in += len(data)
        self.bytes_out += len(out)
        if out or eof:
            self._inner.push(out, eof)

    def close(self) -> None:
        self._inner.close()


class DecompressingSource(Source):
    """
    Decompresses the byte stream produced by an inner source.

    Raises:
        ProtocolViolation: If the compressed data is corrupt or truncated
    """

    def __init__(self, inner: Source, comp_type: CompressionType) -> None:
        self._inner = inner
        self._decompressor = _new_decompressor(comp_type)
        self.comp_type = comp_type
        self._pending = bytearray()
        self._inner_eof = False

    def pull(self, size: int) -> Tuple[bytes, bool]:
        while not self._pending and not self._inner_eof:
            data, self._inner_eof = self._inner.pull(MAX_PAYLOAD)
            if data:
                try:
                    self._pending += self._decompressor.decompress(data)
                except _DECOMPRESS_ERRORS as e:
                    raise ProtocolViolation(
                        f"corrupt {self.comp_type.value} stream: {e}"
                    ) from e
            if self._inner_eof and not getattr(self._decompressor, "eof", True):
                raise ProtocolViolation(f"truncated {self.comp_type.value} stream")
        data = bytes(self._pending[:size])
        del self._pending[:size]
        return data, self._inner_eof and not self._pending

    def close(self) -> None:
        self._inner.close()


# ============================================================================
# PUMP - The refill / step / drain engine
# ============================================================================

@dataclass
class PumpStats:
    """
    Counters of one pump run.

    Attributes:
        iterations: Refill/step/drain cycles
        pulls: Calls to Source.pull
        pushes: Calls to Sink.push
        bytes_in: Bytes pulled from the source
        bytes_out: Bytes pushed to the sink
    """
    iterations: int = 0
    pulls: int = 0
    pushes: int = 0
    bytes_in: int = 0
    bytes_out: int = 0

    def __repr__(self) -> str:
        return (
            f"PumpStats(iterations={self.iterations}, in={format_size(self.bytes_in)}, "
            f"out={format_size(self.bytes_out)}, pulls={self.pulls}, pushes={self.pushes})"
        )


class Pump:
    """
    Moves bytes from a source, through a job, to a sink.

    Each iteration:

        1. Refill (until end of stream): move the unconsumed tail of the input
           window to the front, then pull from the source into the free space.
           The source's eof sets the window's end flag for the rest of the run.
        2. Step: run the job once. FAILED raises TransformFailed.
        3. Drain: push everything the job produced to the sink in one call,
           then empty the output window. When the job is DONE this final push
           carries eof.

    A step that neither consumes nor produces raises TransformFailed when the
    input window can no longer change: at end of input, or when it is full.

    The loop ends after the drain that follows DONE. Both windows are owned by
    the run, so one Pump per connection can run concurrently with others.
    The job is closed on every exit path; the source and sink belong to the
    caller.

    Args:
        source: Where input bytes come from
        sink: Where output bytes go (None: the job produces no output)
        job: The transform to drive
        capacity: Window size (default Config.BUFFER_SIZE)

    Example:
        >>> with FileSource.open("basis.bin") as source:
        ...     Pump(source, SocketSink(sock), SignatureJob(700, 8)).run()
    """

    def __init__(self, source: Source, sink: Optional[Sink], job: Job,
                 capacity: Optional[int] = None) -> None:
        if capacity is None:
            capacity = Config.BUFFER_SIZE
        if capacity <= 0:
            raise ValidationError(f"pump capacity must be positive, got {capacity}")
        self.source = source
        self.sink = sink
        self.job = job
        self.capacity = capacity

    def run(self) -> PumpStats:
        inbuf = Window(self.capacity)
        outbuf = Window(self.capacity if self.sink is not None else 0)
        stats = PumpStats()
        try:
            while True:
                stats.iterations += 1
                if not inbuf.eof:
                    self._refill(inbuf, stats)

                filled_before = inbuf.filled
                result = self.job.step(inbuf, outbuf)
                if result == JobResult.FAILED:
                    raise TransformFailed(
                        f"{self.job.name} job failed: {self.job.error or 'unknown error'}"
                    )
                done = result == JobResult.DONE
                if not done and inbuf.filled == filled_before and not outbuf.filled:
                    if inbuf.eof:
                        raise TransformFailed(
                            f"{self.job.name} job stalled at end of input "
                            f"with {inbuf.filled} unconsumed bytes"
                        )
                    if inbuf.filled == inbuf.capacity:
                        raise TransformFailed(
                            f"{self.job.name} job stalled with a full "
                            f"{inbuf.capacity}-byte input window"
                        )

                self._drain(outbuf, done, stats)
                if done:
                    logger.debug("%s pump finished: %r", self.job.name, stats)
                    return stats
        finally:
            self.job.close()

    def _refill(self, inbuf: Window, stats: PumpStats) -> None:
        inbuf.compact()
        space = inbuf.space
        if space == 0:
            return
        try:
            data, eof = self.source.pull(space)
        except OSError as e:
            raise IoError(f"Failed to read input: {e}") from e
        stats.pulls += 1
        if len(data) > space:
            raise ProtocolViolation(
                f"source returned {len(data)} bytes for a {space}-byte request"
            )
        inbuf.append(data)
        stats.bytes_in += len(data)
        if eof:
            inbuf.eof = True
            logger.debug("%s pump: end of input after %s",
                         self.job.name, format_size(stats.bytes_in))

    def _drain(self, outbuf: Window, done: bool, stats: PumpStats) -> None:
        if self.sink is None:
            return
        if outbuf.filled or done:
            data = outbuf.getvalue()
            try:
                self.sink.push(data, eof=done)
            except OSError as e:
                raise IoError(f"Failed to write output: {e}") from e
            stats.pushes += 1
            stats.bytes_out += len(data)
        outbuf.clear()


# ============================================================================
# CONNECTION SETUP
# ============================================================================

def connect_to_server(host: Optional[str] = None, port: Optional[int] = None,
                      timeout: Optional[float] = None) -> socket.socket:
    """
    Open a TCP connection to the server.

    Args:
        host: Server address (default Config.HOST)
        port: Server port (default Config.PORT)
        timeout: Socket timeout for connect and all later I/O (default
            Config.SOCKET_TIMEOUT, None blocks indefinitely)

    Raises:
        IoError: If the connection cannot be established
    """
    host = Config.HOST if host is None else host
    port = Config.PORT if port is None else port
    if timeout is None:
        timeout = Config.SOCKET_TIMEOUT
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise IoError(f"Failed to connect to {host}:{port}: {e}") from e
    sock.settimeout(timeout)
    logger.info("Connected to %s:%d", host, port)
    return sock


def open_listener(host: str = "", port: Optional[int] = None,
                  backlog: Optional[int] = None) -> socket.socket:
    """
    Bind and listen on a TCP port with SO_REUSEADDR.

    Port 0 picks a free port; read it back with getsockname().

    Raises:
        IoError: If binding or listening fails
    """
    port = Config.PORT if port is None else port
    backlog = Config.BACKLOG if backlog is None else backlog
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as e:
        raise IoError(f"Failed to create socket: {e}") from e
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise IoError(f"Failed to bind port {port}: {e}") from e
    try:
        sock.listen(backlog)
    except OSError as e:
        sock.close()
        raise IoError(f"Failed to listen on port {port}: {e}") from e
    logger.info("Listening on %s:%d", host or "*", sock.getsockname()[1])
    return sock


def accept_one(listener: socket.socket, timeout: Optional[float] = None) -> socket.socket:
    """
    Accept a single connection, then close the listener.

    Raises:
        IoError: If accept fails
    """
    if timeout is None:
        timeout = Config.SOCKET_TIMEOUT
    try:
        conn, addr = listener.accept()
    except OSError as e:
        raise IoError(f"Failed to accept: {e}") from e
    finally:
        # Only one connection is served.
        listener.close()
    conn.settimeout(timeout)
    logger.info("Accepted connection from %s:%d", addr[0], addr[1])
    return conn


def accept_connection(port: Optional[int] = None, host: str = "",
                      timeout: Optional[float] = None) -> socket.socket:
    """Listen with a backlog of one, accept one connection, stop listening."""
    return accept_one(open_listener(host, port), timeout)


# ============================================================================
# ROLE DRIVERS - Concrete pumps for each phase of a transfer
# ============================================================================

def _compression(compression: Optional[CompressionType]) -> CompressionType:
    if compression is None:
        return CompressionType(Config.COMPRESSION)
    return compression


def _socket_sink(sock: socket.socket, compression: Optional[CompressionType]) -> Sink:
    comp_type = _compression(compression)
    sink: Sink = SocketSink(sock)
    if comp_type != CompressionType.NONE:
        sink = CompressingSink(sink, comp_type)
    return sink


def _socket_source(sock: socket.socket, compression: Optional[CompressionType]) -> Source:
    comp_type = _compression(compression)
    source: Source = SocketSource(sock)
    if comp_type != CompressionType.NONE:
        source = DecompressingSource(source, comp_type)
    return source


def _new_signature_job(source: FileSource, checksum_type: Optional[ChecksumType],
                       block_len: int, strong_len: int) -> SignatureJob:
    file_size = source.size()
    magic, block_len, strong_len = sig_args(file_size, checksum_type, block_len, strong_len)
    logger.info("Signature of %s (%s): block_len=%d, strong_len=%d",
                source.name, format_size(file_size), block_len, strong_len)
    return SignatureJob(block_len, strong_len, checksum_type_for_magic(magic))


def send_signature(sock: socket.socket, basis_path: str,
                   checksum_type: Optional[ChecksumType] = None,
                   block_len: int = 0, strong_len: int = 0,
                   compression: Optional[CompressionType] = None,
                   capacity: Optional[int] = None) -> PumpStats:
    """
    Emit Signature: stream the signature of a basis file to the peer.

    Args:
        sock: Connected socket (left open)
        basis_path: File whose signature is sent
        checksum_type: Strong checksum (default Config.CHECKSUM_TYPE)
        block_len: Fixed block length (0 = recommended for the file size)
        strong_len: Fixed strong length (0 = recommended)
        compression: Stream compression (default Config.COMPRESSION)
        capacity: Window size (default Config.BUFFER_SIZE)
    """
    with FileSource.open(basis_path) as source:
        with _new_signature_job(source, checksum_type, block_len, strong_len) as job, \
                _socket_sink(sock, compression) as sink:
            stats = Pump(source, sink, job, capacity).run()
    logger.info("Sent signature: %d blocks, %s", job.blocks_written, format_size(stats.bytes_out))
    return stats


def recv_signature(sock: socket.socket,
                   compression: Optional[CompressionType] = None,
                   capacity: Optional[int] = None) -> Signature:
    """
    Ingest Signature: read a signature stream from the peer.

    The pump runs without a sink; the job builds the Signature in memory.
    """
    with LoadSignatureJob() as job, _socket_source(sock, compression) as source:
        stats = Pump(source, None, job, capacity).run()
    signature = job.signature
    assert signature is not None  # DONE implies the header was parsed
    logger.info("Received signature: %d blocks of %d bytes (%s on the wire)",
                signature.num_blocks, signature.block_len, format_size(stats.bytes_in))
    return signature


def send_delta(sock: socket.socket, signature: Signature, new_path: str,
               compression: Optional[CompressionType] = None,
               capacity: Optional[int] = None) -> SyncStats:
    """
    Emit Delta: stream the delta of a local file against a signature.

    Builds the signature's hash table first if needed.

    Returns:
        SyncStats of the delta computation
    """
    if signature.hash_table is None:
        signature.build_hash_table()
    with FileSource.open(new_path) as source:
        with DeltaJob(signature) as job, _socket_sink(sock, compression) as sink:
            stats = Pump(source, sink, job, capacity).run()
    logger.info("Sent delta of %s: %s on the wire, %r",
                new_path, format_size(stats.bytes_out), job.stats)
    return job.stats


def recv_delta_and_patch(sock: socket.socket, basis_path: str,
                         out_path: Optional[str] = None,
                         compression: Optional[CompressionType] = None,
                         capacity: Optional[int] = None) -> PumpStats:
    """
    Apply Patch: read a delta from the peer and write the patched file.

    The basis is read at random offsets by the patch job, outside the pump.

    Args:
        sock: Connected socket (left open)
        basis_path: Old version of the file
        out_path: Output path (default basis_path + Config.OUTPUT_SUFFIX)
    """
    if out_path is None:
        out_path = basis_path + Config.OUTPUT_SUFFIX
    with FileDataSource(basis_path) as basis, FileSink.open(out_path) as sink:
        with PatchJob(basis) as job, _socket_source(sock, compression) as source:
            stats = Pump(source, sink, job, capacity).run()
    logger.info("Patched %s -> %s: %s written (%s copied, %s literal)",
                basis_path, out_path, format_size(stats.bytes_out),
                format_size(job.copied_bytes), format_size(job.literal_bytes))
    return stats


def signature_file(basis_path: str, sig_path: str,
                   checksum_type: Optional[ChecksumType] = None,
                   block_len: int = 0, strong_len: int = 0,
                   capacity: Optional[int] = None) -> PumpStats:
    """Write the signature of basis_path to sig_path."""
    with FileSource.open(basis_path) as source, FileSink.open(sig_path) as sink:
        with _new_signature_job(source, checksum_type, block_len, strong_len) as job:
            return Pump(source, sink, job, capacity).run()


def load_signature_file(sig_path: str, capacity: Optional[int] = None) -> Signature:
    """Load a signature file written by signature_file()."""
    with LoadSignatureJob() as job, FileSource.open(sig_path) as source:
        Pump(source, None, job, capacity).run()
    assert job.signature is not None
    return job.signature


def delta_file(sig_path: str, new_path: str, delta_path: str,
               capacity: Optional[int] = None) -> SyncStats:
    """Write the delta of new_path against the signature in sig_path."""
    signature = load_signature_file(sig_path, capacity)
    signature.build_hash_table()
    with FileSource.open(new_path) as source, FileSink.open(delta_path) as sink:
        with DeltaJob(signature) as job:
            Pump(source, sink, job, capacity).run()
    logger.info("Delta of %s: %r", new_path, job.stats)
    return job.stats


def patch_file(basis_path: str, delta_path: str, out_path: str,
               capacity: Optional[int] = None) -> PumpStats:
    """Apply the delta in delta_path to basis_path, writing out_path."""
    with FileDataSource(basis_path) as basis, \
            FileSource.open(delta_path) as source, \
            FileSink.open(out_path) as sink:
        with PatchJob(basis) as job:
            return Pump(source, sink, job, capacity).run()


# ============================================================================
# COMMAND-LINE INTERFACE
# ============================================================================

class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ArgumentError instead of exiting."""

    def error(self, message: str) -> Any:  # type: ignore[override]
        raise ArgumentError(message)


def create_parser() -> argparse.ArgumentParser:
    """Build the rsync-stream argument parser."""
    parser = _ArgumentParser(
        prog="rsync-stream",
        description="Stream rsync signatures and deltas over a framed TCP connection.",
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help="increase verbosity (-vv for debug output)")
    parser.add_argument('--no-color', action='store_true', help="disable colored output")

    network = _ArgumentParser(add_help=False)
    network.add_argument('--port', type=int, default=None,
                         help=f"TCP port (default {DEFAULT_PORT})")
    network.add_argument('--timeout', type=float, default=None,
                         help="socket timeout in seconds (default: wait forever)")
    network.add_argument('--compress', choices=[c.value for c in CompressionType],
                         default=None, help="stream compression, must match the peer")

    tuning = _ArgumentParser(add_help=False)
    tuning.add_argument('--buffer-size', type=int, default=None,
                        help=f"window capacity in bytes (1..{MAX_PAYLOAD})")

    sig_opts = _ArgumentParser(add_help=False)
    sig_opts.add_argument('--checksum', choices=[c.value for c in ChecksumType],
                          default=None, help="strong checksum algorithm (default md5)")
    sig_opts.add_argument('--block-size', type=int, default=0,
                          help="signature block length (default: from file size)")
    sig_opts.add_argument('--strong-len', type=int, default=0,
                          help="strong checksum bytes per block (default: from file size)")

    sub = parser.add_subparsers(dest='command', metavar='COMMAND')
    sub.required = True

    server = sub.add_parser('server', parents=[network, tuning],
                            help="send the delta of FILE to one client")
    server.add_argument('file', metavar='FILE')
    server.add_argument('--bind', default="", help="address to listen on (default: all)")

    client = sub.add_parser('client', parents=[network, tuning, sig_opts],
                            help="update FILE from the server, writing FILE.new")
    client.add_argument('file', metavar='FILE')
    client.add_argument('--host', default=None, help=f"server address (default {DEFAULT_HOST})")
    client.add_argument('-o', '--output', default=None, help="patched file path")

    signature = sub.add_parser('signature', parents=[tuning, sig_opts],
                               help="write the signature of BASIS")
    signature.add_argument('basis', metavar='BASIS')
    signature.add_argument('-o', '--output', required=True)

    delta = sub.add_parser('delta', parents=[tuning], help="write the delta of NEW against SIGNATURE")
    delta.add_argument('signature', metavar='SIGNATURE')
    delta.add_argument('new', metavar='NEW')
    delta.add_argument('-o', '--output', required=True)

    patch = sub.add_parser('patch', parents=[tuning], help="apply DELTA to BASIS")
    patch.add_argument('basis', metavar='BASIS')
    patch.add_argument('delta', metavar='DELTA')
    patch.add_argument('-o', '--output', required=True)

    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse and validate command-line arguments.

    Raises:
        ArgumentError: For missing or malformed arguments
    """
    args = create_parser().parse_args(argv)

    for name in ('file', 'basis', 'signature', 'new', 'delta', 'output'):
        value = getattr(args, name, None)
        if value is not None and not value:
            raise ArgumentError(f"{name} must not be empty")

    port = getattr(args, 'port', None)
    if port is not None and not 0 < port <= 0xFFFF:
        raise ArgumentError(f"port must be in 1..65535, got {port}")
    timeout = getattr(args, 'timeout', None)
    if timeout is not None and timeout <= 0:
        raise ArgumentError(f"timeout must be positive, got {timeout}")
    buffer_size = getattr(args, 'buffer_size', None)
    if buffer_size is not None and not 0 < buffer_size <= MAX_PAYLOAD:
        raise ArgumentError(f"buffer size must be in 1..{MAX_PAYLOAD}, got {buffer_size}")
    if getattr(args, 'block_size', 0) < 0 or getattr(args, 'strong_len', 0) < 0:
        raise ArgumentError("block size and strong length cannot be negative")
    block_size = getattr(args, 'block_size', 0)
    if block_size > MAX_BLOCK_SIZE:
        raise ArgumentError(f"block size too large ({block_size}), maximum is {MAX_BLOCK_SIZE}")
    strong_len = getattr(args, 'strong_len', 0)
    if strong_len:
        checksum_type = ChecksumType(getattr(args, 'checksum', None) or Config.CHECKSUM_TYPE)
        digest_len = ChecksumRegistry.get_digest_length(checksum_type)
        if strong_len > digest_len:
            raise ArgumentError(
                f"strong length {strong_len} exceeds {digest_len} bytes for {checksum_type.value}"
            )

    return args


def _step(description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run one phase of a command, tagging any failure with its description."""
    print(Colors.info(f"{description}..."))
    try:
        return func(*args, **kwargs)
    except StreamError as e:
        e.step = description
        raise


def _checksum_arg(args: argparse.Namespace) -> Optional[ChecksumType]:
    name = getattr(args, 'checksum', None)
    return ChecksumType(name) if name else None


def _compress_arg(args: argparse.Namespace) -> Optional[CompressionType]:
    name = getattr(args, 'compress', None)
    return CompressionType(name) if name else None


def _cmd_server(args: argparse.Namespace) -> int:
    compression = _compress_arg(args)
    conn = _step("Waiting for connection", accept_connection,
                 port=args.port, host=args.bind, timeout=args.timeout)
    try:
        signature = _step("Receiving signature", recv_signature, conn,
                          compression=compression, capacity=args.buffer_size)
        stats = _step("Sending delta", send_delta, conn, signature, args.file,
                      compression=compression, capacity=args.buffer_size)
    finally:
        conn.close()
    print(f"  Matched: {format_size(stats.matched_data)}, "
          f"literal: {format_size(stats.literal_data)} ({stats.efficiency:.1%} reused)")
    print(Colors.success("Success!"))
    return 0


def _cmd_client(args: argparse.Namespace) -> int:
    compression = _compress_arg(args)
    out_path = args.output or args.file + Config.OUTPUT_SUFFIX
    sock = _step("Connecting to server", connect_to_server,
                 args.host, args.port, timeout=args.timeout)
    try:
        _step("Sending signature", send_signature, sock, args.file,
              checksum_type=_checksum_arg(args), block_len=args.block_size,
              strong_len=args.strong_len, compression=compression,
              capacity=args.buffer_size)
        _step("Receiving delta and patching file", recv_delta_and_patch, sock,
              args.file, out_path, compression=compression, capacity=args.buffer_size)
    finally:
        sock.close()
    print(Colors.success(f"Success! Wrote {out_path}"))
    return 0


def _cmd_signature(args: argparse.Namespace) -> int:
    stats = _step("Generating signature", signature_file, args.basis, args.output,
                  checksum_type=_checksum_arg(args), block_len=args.block_size,
                  strong_len=args.strong_len, capacity=args.buffer_size)
    print(Colors.success(f"Wrote {args.output} ({format_size(stats.bytes_out)})"))
    return 0


def _cmd_delta(args: argparse.Namespace) -> int:
    stats = _step("Generating delta", delta_file, args.signature, args.new, args.output,
                  capacity=args.buffer_size)
    print(f"  Matched: {format_size(stats.matched_data)}, literal: {format_size(stats.literal_data)}")
    print(Colors.success(f"Wrote {args.output}"))
    return 0


def _cmd_patch(args: argparse.Namespace) -> int:
    stats = _step("Applying patch", patch_file, args.basis, args.delta, args.output,
                  capacity=args.buffer_size)
    print(Colors.success(f"Wrote {args.output} ({format_size(stats.bytes_out)})"))
    return 0


_COMMANDS: Dict[str, Callable[[argparse.Namespace], int]] = {
    'server': _cmd_server,
    'client': _cmd_client,
    'signature': _cmd_signature,
    'delta': _cmd_delta,
    'patch': _cmd_patch,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code (0 for success, the error's code otherwise)
    """
    try:
        args = parse_args(argv)
    except ArgumentError as e:
        print(create_parser().format_usage(), end="", file=sys.stderr)
        print(Colors.error(f"rsync-stream: {e}"), file=sys.stderr)
        return e.code

    if args.no_color:
        Config.USE_COLORS = False
    configure_logging(args.verbose)

    try:
        return _COMMANDS[args.command](args)
    except StreamError as e:
        step = e.step or args.command
        print(Colors.error(f"{step} failed: {e}"), file=sys.stderr)
        return e.code


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
