#!/usr/bin/env python3
"""End-to-end decode: layout resolution + stage composition + streaming copy."""
import io

import pytest

from conftest import b64url, deflate, ofb, snappy_chunk_offsets, snappy_framed
from prepare_contracts import (
    STAGE_DECRYPT,
    STAGE_DEFLATE,
    STAGE_PASSTHROUGH,
    STAGE_SNAPPY,
    PipelineLayout,
    PrepareRequest,
)
from prepare_errors import (
    CodecDataError,
    CodecHeaderError,
    KeyDecodeError,
    KeyLengthError,
    MissingKeyError,
    UnderlyingIOError,
    VersionParseError,
)
from prepare_pipeline import RawInputReader, compose, execute, prepare_stream


def _decode(artifact, **options):
    out = io.BytesIO()
    result = prepare_stream(io.BytesIO(artifact), out, PrepareRequest(**options))
    return out.getvalue(), result


class _BrokenReader:
    def __init__(self, data, fail_after):
        self._src = io.BytesIO(data)
        self._fail_after = fail_after

    def read(self, size=-1):
        if self._src.tell() >= self._fail_after:
            raise OSError(5, "Input/output error")
        return self._src.read(size)


class _FullDisk(io.BytesIO):
    def write(self, b):
        if self.tell() + len(b) > 1024:
            raise OSError(28, "No space left on device")
        return super().write(b)


class TestScenarios:
    def test_agent_1_0_0_deflate_then_ofb(self, plaintext, key, legacy_artifact):
        out, result = _decode(legacy_artifact, agent_version="1.0.0", encryption_key=key)
        assert out == plaintext
        assert result.bytes_written == len(plaintext)
        assert result.bytes_read == len(legacy_artifact)
        assert result.layout.stages == (STAGE_DECRYPT, STAGE_DEFLATE)

    def test_agent_1_10_0_snappy_then_ofb(self, plaintext, key, snappy_artifact):
        out, _result = _decode(snappy_artifact, agent_version="1.10.0", encryption_key=key)
        assert out == plaintext

    def test_agent_2_0_0_with_both_flags(self, plaintext, key, snappy_artifact):
        out, _result = _decode(
            snappy_artifact, agent_version="2.0.0", encryption_key=key, decrypt=True, decompress=True
        )
        assert out == plaintext

    def test_agent_2_0_0_without_decrypt_passes_ciphertext_through(self, plaintext, key):
        artifact = ofb(key, plaintext)
        out, result = _decode(artifact, agent_version="2.0.0", encryption_key=key, decrypt=False)
        assert out == artifact
        assert out != plaintext
        assert result.layout.stages == (STAGE_PASSTHROUGH, STAGE_PASSTHROUGH)

    @pytest.mark.parametrize("sentinel", ["", "0.0.0", "develop"])
    def test_unknown_version_sentinels_decode_legacy_artifacts(self, sentinel, plaintext, key, legacy_artifact):
        out, _result = _decode(legacy_artifact, agent_version=sentinel, encryption_key=key)
        assert out == plaintext


class TestRoundTripBranches:
    def test_legacy_unencrypted(self, plaintext):
        out, _result = _decode(deflate(plaintext), agent_version="1.2.0")
        assert out == plaintext

    def test_snappy_unencrypted(self, plaintext):
        out, _result = _decode(snappy_framed(plaintext), agent_version="1.4.3")
        assert out == plaintext

    def test_flags_decompress_only(self, plaintext):
        out, _result = _decode(snappy_framed(plaintext), agent_version="1.11.0", decompress=True)
        assert out == plaintext

    def test_flags_decrypt_only(self, plaintext, key):
        out, _result = _decode(ofb(key, plaintext), agent_version="3.1.4", encryption_key=key, decrypt=True)
        assert out == plaintext

    def test_rule_three_no_flags_is_byte_for_byte(self, plaintext):
        out, _result = _decode(plaintext, agent_version="2.0.0")
        assert out == plaintext

    def test_empty_input_passthrough(self):
        out, result = _decode(b"", agent_version="2.0.0")
        assert out == b""
        assert result.bytes_written == 0

    @pytest.mark.parametrize("chunk_size", [1, 7, 4096, 1 << 20])
    def test_chunk_size_does_not_change_output(self, chunk_size, plaintext, key, snappy_artifact):
        out, _result = _decode(
            snappy_artifact, agent_version="1.10.0", encryption_key=key, chunk_size=chunk_size
        )
        assert out == plaintext


class TestKeyHandling:
    def test_wrong_key_is_silent_corruption(self, plaintext, key, other_key):
        artifact = ofb(key, plaintext)
        out, _result = _decode(artifact, agent_version="2.0.0", encryption_key=other_key, decrypt=True)
        assert len(out) == len(plaintext)
        assert out != plaintext

    def test_non_base64url_key(self, legacy_artifact):
        with pytest.raises(KeyDecodeError):
            _decode(legacy_artifact, agent_version="1.0.0", encryption_key="%%%not-a-key%%%")

    def test_wrong_length_key(self, snappy_artifact):
        with pytest.raises(KeyLengthError):
            _decode(snappy_artifact, agent_version="1.10.0", encryption_key=b64url(b"x" * 10))

    def test_decrypt_flag_without_key(self, snappy_artifact):
        with pytest.raises(MissingKeyError):
            _decode(snappy_artifact, agent_version="2.0.0", decrypt=True)

    def test_plain_artifact_under_wrong_version_fails_header(self, plaintext):
        with pytest.raises(CodecHeaderError):
            _decode(snappy_framed(plaintext), agent_version="1.0.0")


class TestExecutor:
    def test_last_stage_is_outermost(self, plaintext, key):
        layout = PipelineLayout(stages=(STAGE_DECRYPT, STAGE_SNAPPY), rule="explicit_flags")
        raw = RawInputReader(io.BytesIO(ofb(key, snappy_framed(plaintext))))
        outer = compose(raw, layout, key)
        assert type(outer).__name__ == "SnappyFramedStageReader"
        assert outer.read() == plaintext

    def test_execute_returns_bytes_written(self, plaintext, key, legacy_artifact):
        layout = PipelineLayout(stages=(STAGE_DECRYPT, STAGE_DEFLATE), rule="legacy_deflate")
        out = io.BytesIO()
        assert execute(io.BytesIO(legacy_artifact), layout, key, out) == len(plaintext)
        assert out.getvalue() == plaintext

    def test_read_failure_aborts(self, plaintext):
        layout = PipelineLayout(stages=(STAGE_PASSTHROUGH,), rule="explicit_flags")
        out = io.BytesIO()
        with pytest.raises(UnderlyingIOError, match="UNDERLYING_IO_ERROR") as exc_info:
            execute(_BrokenReader(plaintext, fail_after=2048), layout, "", out, chunk_size=512)
        assert exc_info.value.context["stream"] == "input"
        # partial output is left for the caller to discard
        assert out.getvalue() == plaintext[:2048]

    def test_write_failure_aborts(self, plaintext):
        layout = PipelineLayout(stages=(STAGE_PASSTHROUGH,), rule="explicit_flags")
        with pytest.raises(UnderlyingIOError) as exc_info:
            execute(io.BytesIO(plaintext), layout, "", _FullDisk(), chunk_size=100)
        assert exc_info.value.context["stream"] == "output"
        assert exc_info.value.context["written_bytes"] == 1000

    def test_read_failure_beneath_cipher_stage(self, plaintext, key):
        layout = PipelineLayout(stages=(STAGE_DECRYPT,), rule="explicit_flags")
        with pytest.raises(UnderlyingIOError):
            execute(_BrokenReader(ofb(key, plaintext), fail_after=10), layout, key, io.BytesIO(), chunk_size=10)

    def test_read_failure_beneath_snappy_stage_is_not_a_codec_error(self, key, snappy_artifact):
        layout = PipelineLayout(stages=(STAGE_DECRYPT, STAGE_SNAPPY), rule="snappy_framed")
        with pytest.raises(UnderlyingIOError) as exc_info:
            execute(_BrokenReader(snappy_artifact, fail_after=1000), layout, key, io.BytesIO())
        assert exc_info.value.context["stream"] == "input"


class TestTruncatedArtifacts:
    def test_truncated_snappy_artifact_fails(self, key, snappy_artifact):
        with pytest.raises(CodecDataError, match="CODEC_DATA_ERROR"):
            _decode(snappy_artifact[:-5000], agent_version="1.10.0", encryption_key=key)

    def test_truncated_snappy_artifact_under_flags_fails(self, key, snappy_artifact):
        with pytest.raises(CodecDataError):
            _decode(
                snappy_artifact[:-7], agent_version="2.4.0", encryption_key=key, decrypt=True, decompress=True
            )

    def test_truncated_legacy_artifact_fails(self, key, legacy_artifact):
        with pytest.raises(CodecDataError, match="truncated"):
            _decode(legacy_artifact[:-64], agent_version="1.0.0", encryption_key=key)

    def test_execute_reports_truncation_after_partial_output(self, plaintext, key):
        layout = PipelineLayout(stages=(STAGE_DECRYPT, STAGE_SNAPPY), rule="snappy_framed")
        blob = snappy_framed(plaintext)
        artifact = ofb(key, blob[:snappy_chunk_offsets(blob)[2] + 2])
        out = io.BytesIO()
        with pytest.raises(CodecDataError):
            execute(io.BytesIO(artifact), layout, key, out, chunk_size=4096)
        assert out.getvalue() == plaintext[:len(out.getvalue())]


def test_bad_version_fails_before_reading(plaintext):
    src = io.BytesIO(plaintext)
    with pytest.raises(VersionParseError):
        prepare_stream(src, io.BytesIO(), PrepareRequest(agent_version="next"))
    assert src.tell() == 0


def test_request_validation():
    with pytest.raises(ValueError):
        PrepareRequest(chunk_size=0)
    req = PrepareRequest(agent_version=" 1.2.0 ", encryption_key=None)
    assert req.agent_version == "1.2.0"
    assert req.keyed is False
    assert "encryption_key" not in repr(PrepareRequest(encryption_key="abc"))
