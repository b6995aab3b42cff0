# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""Incremental UTF-8 reassembly for engine byte output.

Engines write raw bytes per decode step, and a code point can straddle two
steps. Utf8StreamDecoder buffers the incomplete tail between ``feed`` calls
and yields one text unit per complete code point, as soon as it is
complete.

The end-of-turn sentinel is yielded as a single unit when its bytes appear
at the scan position. What the sentinel means is decided by the caller.

Malformed input never raises: an unrecognized lead byte, a lead byte whose
continuation bytes do not match ``10xxxxxx``, or a sequence the codec
rejects (overlong form, surrogate, beyond U+10FFFF) is dropped one byte at
a time and scanning resumes at the next byte.

Invariant: after any call, the buffer is empty or holds exactly the
longest suffix that cannot yet be proven complete or invalid.
"""

import logging
from collections.abc import Iterator

logger = logging.getLogger(__name__)


def sequence_length(lead: int) -> int:
    """Byte length announced by a UTF-8 lead byte, or 0 if it is not a lead byte."""
    if lead & 0x80 == 0x00:
        return 1
    if lead & 0xE0 == 0xC0:
        return 2
    if lead & 0xF0 == 0xE0:
        return 3
    if lead & 0xF8 == 0xF0:
        return 4
    return 0


def is_continuation(byte: int) -> bool:
    return byte & 0xC0 == 0x80


class Utf8StreamDecoder:
    """Turns arbitrarily split byte chunks into complete text units.

    One decoder serves one generation request; its buffer is never shared.

    Example:
        >>> decoder = Utf8StreamDecoder(sentinel="<eop>")
        >>> list(decoder.feed("hé".encode()[:2]))
        ['h']
        >>> list(decoder.feed("hé".encode()[2:] + b"<eop>"))
        ['é', '<eop>']
    """

    def __init__(self, sentinel: str | None = None) -> None:
        self._buffer = bytearray()
        self._sentinel = sentinel.encode("utf-8") if sentinel else b""
        self._sentinel_text = sentinel or ""
        self.skipped_bytes = 0

    @property
    def pending(self) -> bytes:
        """Buffered bytes not yet emitted."""
        return bytes(self._buffer)

    def feed(self, data: bytes) -> Iterator[str]:
        """Append a chunk and lazily yield every unit it completes.

        The chunk is buffered immediately; units are extracted as the
        returned iterator is consumed. Units left unconsumed stay buffered
        for the next call.
        """
        if data:
            self._buffer.extend(data)
        return self._drain(final=False)

    def flush(self) -> Iterator[str]:
        """Yield remaining units at end of stream and empty the buffer.

        A partial sentinel is emitted as ordinary characters; an incomplete
        trailing multi-byte sequence is discarded.
        """
        return self._drain(final=True)

    def _drain(self, final: bool) -> Iterator[str]:
        buffer = self._buffer
        sentinel = self._sentinel
        while buffer:
            if sentinel:
                if buffer.startswith(sentinel):
                    del buffer[: len(sentinel)]
                    yield self._sentinel_text
                    continue
                if not final and len(buffer) < len(sentinel) and sentinel.startswith(buffer):
                    return

            length = sequence_length(buffer[0])
            if length == 0:
                self._skip()
                continue

            available = min(length, len(buffer))
            if not all(is_continuation(b) for b in buffer[1:available]):
                self._skip()
                continue

            if len(buffer) < length:
                if final:
                    logger.debug("Discarding %d trailing bytes of an incomplete sequence", len(buffer))
                    self.skipped_bytes += len(buffer)
                    buffer.clear()
                return

            try:
                unit = bytes(buffer[:length]).decode("utf-8")
            except UnicodeDecodeError:
                self._skip()
                continue
            del buffer[:length]
            yield unit

    def _skip(self) -> None:
        logger.debug("Resynchronizing past invalid byte 0x%02x", self._buffer[0])
        del self._buffer[0]
        self.skipped_bytes += 1
