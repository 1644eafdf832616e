#!/usr/bin/env python3
"""
CloudBackup Prepare - codec stages
==================================
Streaming readers for the two compression envelopes the agent has used:

  - zlib container (RFC 1950): header validated when the stage is built
  - framed snappy: stream identifier validated on the first read

Both pull fixed-size reads from the wrapped stream and cap each inflate
step, so memory stays flat no matter how large the artifact is.
"""

import zlib
from typing import List

import snappy
from cramjam import DecompressionError

from prepare_contracts import STAGE_DEFLATE, STAGE_SNAPPY
from prepare_errors import CodecDataError, CodecHeaderError

CODEC_READ_SIZE = 1 << 16
SNAPPY_STREAM_IDENTIFIER = b"\xff\x06\x00\x00sNaPpY"
SNAPPY_CHUNK_HEADER_SIZE = 4


def _read_exact(inner, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        part = inner.read(n - len(buf))
        if not part:
            break
        buf.extend(part)
    return bytes(buf)


def _check_zlib_header(header: bytes) -> None:
    if len(header) < 2:
        raise CodecHeaderError(
            "stream too short for a zlib header; check the agent version passed with --agent-version",
            codec="deflate",
            got_bytes=len(header),
        )
    cmf, flg = header[0], header[1]
    if cmf & 0x0F != 8 or cmf >> 4 > 7 or ((cmf << 8) | flg) % 31 != 0:
        raise CodecHeaderError(
            f"invalid zlib header {header.hex()}; check the agent version passed with --agent-version",
            codec="deflate",
        )
    if flg & 0x20:
        raise CodecHeaderError("zlib preset dictionaries are not supported", codec="deflate")


class _BufferedStage:
    """Shared read(size) over a `_fill()` that refills `self._buf`."""

    def __init__(self, inner):
        self._inner = inner
        self._buf = b""
        self._done = False

    def _fill(self) -> None:
        raise NotImplementedError

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            parts: List[bytes] = []
            while True:
                part = self.read(CODEC_READ_SIZE)
                if not part:
                    return b"".join(parts)
                parts.append(part)
        while not self._buf and not self._done:
            self._fill()
        out, self._buf = self._buf[:size], self._buf[size:]
        return out


class DeflateStageReader(_BufferedStage):
    def __init__(self, inner):
        super().__init__(inner)
        header = _read_exact(inner, 2)
        _check_zlib_header(header)
        self._zobj = zlib.decompressobj()
        self._buf = self._zobj.decompress(header)

    def _fill(self) -> None:
        if self._zobj.eof:
            self._done = True
            return
        data = self._zobj.unconsumed_tail
        if not data:
            data = self._inner.read(CODEC_READ_SIZE)
            if not data:
                raise CodecDataError("deflate stream truncated before its checksum", codec="deflate")
        try:
            self._buf = self._zobj.decompress(data, CODEC_READ_SIZE)
        except zlib.error as exc:
            raise CodecDataError(f"corrupt deflate stream: {exc}", codec="deflate") from None


class SnappyFramedStageReader(_BufferedStage):
    """Framed snappy reader.

    The decoder holds back an incomplete trailing chunk without complaint, so
    chunk boundaries are tracked here too: input that ends inside a chunk
    header or body is a truncated stream.
    """

    def __init__(self, inner):
        super().__init__(inner)
        self._decoder = snappy.StreamDecompressor()
        self._started = False
        self._chunk_header = b""
        self._chunk_left = 0

    def _start(self) -> None:
        self._started = True
        header = _read_exact(self._inner, len(SNAPPY_STREAM_IDENTIFIER))
        if header != SNAPPY_STREAM_IDENTIFIER:
            raise CodecHeaderError(
                "missing snappy stream identifier; check the agent version and --decompress",
                codec="snappy",
                got=header[:16].hex(),
            )
        self._feed(header)

    def _track(self, data: bytes) -> None:
        pos = 0
        while pos < len(data):
            if self._chunk_left:
                step = min(self._chunk_left, len(data) - pos)
                self._chunk_left -= step
                pos += step
                continue
            need = SNAPPY_CHUNK_HEADER_SIZE - len(self._chunk_header)
            self._chunk_header += data[pos:pos + need]
            pos += need
            if len(self._chunk_header) == SNAPPY_CHUNK_HEADER_SIZE:
                self._chunk_left = int.from_bytes(self._chunk_header[1:], "little")
                self._chunk_header = b""

    def _feed(self, data: bytes) -> None:
        self._track(data)
        try:
            self._buf = self._decoder.decompress(data)
        except (snappy.UncompressError, DecompressionError) as exc:
            raise CodecDataError(f"corrupt snappy frame: {exc}", codec="snappy") from None

    def _fill(self) -> None:
        if not self._started:
            self._start()
            return
        data = self._inner.read(CODEC_READ_SIZE)
        if data:
            self._feed(data)
            return
        self._done = True
        if self._chunk_left or self._chunk_header:
            raise CodecDataError(
                "snappy stream truncated inside a chunk",
                codec="snappy",
                missing_bytes=self._chunk_left,
            )
        try:
            self._buf = self._decoder.flush()
        except (snappy.UncompressError, DecompressionError) as exc:
            raise CodecDataError(f"snappy stream truncated: {exc}", codec="snappy") from None


_CODEC_READERS = {
    STAGE_DEFLATE: DeflateStageReader,
    STAGE_SNAPPY: SnappyFramedStageReader,
}


def build_codec_stage(kind: str, inner):
    try:
        reader_cls = _CODEC_READERS[kind]
    except KeyError:
        raise ValueError(f"UNKNOWN_CODEC: {kind}") from None
    return reader_cls(inner)
