"""Lossless codec for archived raw page captures.

Layout: ``MAGIC | original length (u32 BE) | table size (u8) | table | nibbles``.
The most frequent byte values get a 4-bit code each. Nibble 14 starts a run
token (byte, count - 4) and nibble 15 an escaped literal byte.
"""

from __future__ import annotations

from collections import Counter
import struct

MAGIC = b"SFZ1"
TABLE_SIZE = 14
RUN_CODE = 14
ESCAPE_CODE = 15
MIN_RUN = 4
MAX_RUN = MIN_RUN + 255

_HEADER = struct.Struct(">4sIB")


class CompressionError(ValueError):
    pass


class _NibbleWriter:
    def __init__(self) -> None:
        self._nibbles: list[int] = []

    def nibble(self, value: int) -> None:
        self._nibbles.append(value & 0x0F)

    def byte(self, value: int) -> None:
        self._nibbles.append((value >> 4) & 0x0F)
        self._nibbles.append(value & 0x0F)

    def getvalue(self) -> bytes:
        nibbles = self._nibbles
        if len(nibbles) % 2:
            nibbles = nibbles + [0]
        return bytes((nibbles[i] << 4) | nibbles[i + 1] for i in range(0, len(nibbles), 2))


class _NibbleReader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._position = 0

    def nibble(self) -> int:
        index, low = divmod(self._position, 2)
        if index >= len(self._data):
            raise CompressionError("truncated stream")
        self._position += 1
        value = self._data[index]
        return value & 0x0F if low else value >> 4

    def byte(self) -> int:
        return (self.nibble() << 4) | self.nibble()


def _build_table(data: bytes) -> bytes:
    counts = Counter(data)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return bytes(value for value, _ in ranked[:TABLE_SIZE])


def _run_length(data: bytes, start: int) -> int:
    value = data[start]
    end = start
    limit = min(len(data), start + MAX_RUN)
    while end < limit and data[end] == value:
        end += 1
    return end - start


def compress(data: bytes) -> bytes:
    table = _build_table(data)
    codes = {value: code for code, value in enumerate(table)}
    writer = _NibbleWriter()

    position = 0
    while position < len(data):
        run = _run_length(data, position)
        value = data[position]
        if run >= MIN_RUN:
            writer.nibble(RUN_CODE)
            writer.byte(value)
            writer.byte(run - MIN_RUN)
            position += run
            continue

        code = codes.get(value)
        if code is None:
            writer.nibble(ESCAPE_CODE)
            writer.byte(value)
        else:
            writer.nibble(code)
        position += 1

    return _HEADER.pack(MAGIC, len(data), len(table)) + table + writer.getvalue()


def decompress(blob: bytes) -> bytes:
    if len(blob) < _HEADER.size:
        raise CompressionError("blob too short for header")
    magic, original_length, table_size = _HEADER.unpack_from(blob)
    if magic != MAGIC:
        raise CompressionError("unknown compression format")
    if table_size > TABLE_SIZE:
        raise CompressionError(f"invalid table size {table_size}")

    table_end = _HEADER.size + table_size
    table = blob[_HEADER.size:table_end]
    if len(table) != table_size:
        raise CompressionError("truncated table")

    reader = _NibbleReader(blob[table_end:])
    output = bytearray()
    while len(output) < original_length:
        code = reader.nibble()
        if code == RUN_CODE:
            value = reader.byte()
            output.extend(bytes([value]) * (reader.byte() + MIN_RUN))
        elif code == ESCAPE_CODE:
            output.append(reader.byte())
        elif code < table_size:
            output.append(table[code])
        else:
            raise CompressionError(f"code {code} outside table")

    if len(output) != original_length:
        raise CompressionError("decoded length does not match header")
    return bytes(output)


def compression_ratio(original_size: int, compressed_size: int) -> float:
    if original_size <= 0:
        return 0.0
    return round(compressed_size / original_size, 4)
