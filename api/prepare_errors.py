#!/usr/bin/env python3
"""
CloudBackup Prepare - error taxonomy
====================================
Every failure raised while decoding an artifact is a PrepareError. The
message always starts with a stable CODE so wrappers can map it without
parsing prose, e.g. ``KEY_LENGTH_ERROR: decoded key is 20 bytes``.
"""

from typing import Any, Dict, Optional


class PrepareError(RuntimeError):
    code = "PREPARE_FAILED"

    def __init__(self, detail: str, **context: Any):
        self.detail = detail
        self.context: Dict[str, Any] = dict(context)
        super().__init__(f"{self.code}: {detail}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "error_type": self.__class__.__name__,
            "context": self.context,
        }


class VersionParseError(PrepareError):
    code = "VERSION_PARSE_ERROR"


class KeyDecodeError(PrepareError):
    code = "KEY_DECODE_ERROR"


class KeyLengthError(PrepareError):
    code = "KEY_LENGTH_ERROR"


class CodecHeaderError(PrepareError):
    code = "CODEC_HEADER_ERROR"


class CodecDataError(PrepareError):
    code = "CODEC_DATA_ERROR"


class MissingKeyError(PrepareError):
    code = "MISSING_KEY"


class UnderlyingIOError(PrepareError):
    code = "UNDERLYING_IO_ERROR"

    def __init__(self, detail: str, cause: Optional[BaseException] = None, **context: Any):
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail, **context)


class InputFileError(PrepareError):
    code = "INPUT_FILE_ERROR"


class OutputFileError(PrepareError):
    code = "OUTPUT_FILE_ERROR"


def error_code_from_exception(exc: BaseException) -> str:
    if isinstance(exc, PrepareError):
        return exc.code.lower()
    if isinstance(exc, OSError):
        return "underlying_io_error"
    return "prepare_failed"
