#!/usr/bin/env python3
"""
CloudBackup Prepare - stream pipeline
=====================================
Wraps the raw artifact stream with the stages of a PipelineLayout and copies
the outermost stream into the output sink.

Stages are built in layout order, each one wrapping the reader built before
it, so layout.stages[0] sits directly on the raw bytes and layout.stages[-1]
is the reader the copy loop pulls from. The executor borrows both streams
and never closes them. Nothing written before a failure is rolled back.
"""

from typing import Optional

from prepare_cipher import build_cipher_stage
from prepare_codec import build_codec_stage
from prepare_contracts import (
    DEFAULT_CHUNK_SIZE,
    STAGE_DECRYPT,
    STAGE_DEFLATE,
    STAGE_PASSTHROUGH,
    STAGE_SNAPPY,
    PipelineLayout,
    PrepareRequest,
    PrepareResult,
)
from prepare_errors import UnderlyingIOError
from prepare_policy import resolve_layout


class RawInputReader:
    """Innermost reader: counts raw bytes and maps OSError to UnderlyingIOError."""

    def __init__(self, inner, name: str = "input"):
        self._inner = inner
        self.name = name
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        try:
            data = self._inner.read(size)
        except OSError as exc:
            raise UnderlyingIOError("read failed", cause=exc, stream=self.name) from exc
        if data:
            self.bytes_read += len(data)
        return data or b""


def build_stage(stage: str, key: str, inner):
    if stage == STAGE_DECRYPT:
        return build_cipher_stage(key, inner)
    if stage in (STAGE_DEFLATE, STAGE_SNAPPY):
        return build_codec_stage(stage, inner)
    if stage == STAGE_PASSTHROUGH:
        return inner
    raise ValueError(f"UNKNOWN_STAGE: {stage}")


def compose(raw_input, layout: PipelineLayout, key: str):
    stream = raw_input
    for stage in layout.stages:
        stream = build_stage(stage, key, stream)
    return stream


def execute(raw_input, layout: PipelineLayout, key: str, output, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Decode `raw_input` through `layout` into `output`; returns bytes written."""
    if not isinstance(raw_input, RawInputReader):
        raw_input = RawInputReader(raw_input)
    stream = compose(raw_input, layout, key)

    step = max(1, int(chunk_size))
    written = 0
    while True:
        chunk = stream.read(step)
        if not chunk:
            break
        try:
            output.write(chunk)
        except OSError as exc:
            raise UnderlyingIOError("write failed", cause=exc, stream="output", written_bytes=written) from exc
        written += len(chunk)
    return written


def prepare_stream(
    raw_input,
    output,
    request: PrepareRequest,
    layout: Optional[PipelineLayout] = None,
    name: str = "input",
) -> PrepareResult:
    """Resolve the layout for `request` (unless given) and run it."""
    if layout is None:
        layout = resolve_layout(
            request.agent_version,
            request.decrypt,
            request.decompress,
            request.keyed,
        )
    counted = RawInputReader(raw_input, name=name)
    written = execute(counted, layout, request.encryption_key, output, chunk_size=request.chunk_size)
    return PrepareResult(layout=layout, bytes_read=counted.bytes_read, bytes_written=written)
