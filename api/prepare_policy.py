#!/usr/bin/env python3
"""
CloudBackup Prepare - agent version policy
==========================================
The backup agent changed how it wraps artifacts across releases:

  <= 1.2.0   compress (zlib container), then encrypt
  <= 1.10.0  encrypt, then compress (framed snappy)
  >  1.10.0  whatever the operator says via --decrypt / --decompress

resolve_layout() turns an agent version plus the explicit flags into one
immutable PipelineLayout. It has no side effects; diagnostics travel in
layout.notes and the caller decides where to print them.
"""

from typing import List, Tuple

import semver

from prepare_contracts import (
    RULE_EXPLICIT_FLAGS,
    RULE_LEGACY_DEFLATE,
    RULE_SNAPPY_FRAMED,
    STAGE_DECRYPT,
    STAGE_DEFLATE,
    STAGE_PASSTHROUGH,
    STAGE_SNAPPY,
    PipelineLayout,
)
from prepare_errors import MissingKeyError, VersionParseError

UNKNOWN_VERSION_SENTINELS = frozenset({"", "0.0.0", "develop"})
LEGACY_DEFLATE_MAX = (1, 2, 0)
SNAPPY_FRAMED_MAX = (1, 10, 0)

NOTE_NOT_DECRYPTING = (
    "Not decrypting backup stream, if your file was encrypted, the output file may be corrupt"
)
NOTE_NOT_DECOMPRESSING = (
    "Not decompressing backup stream, if your file was compressed, the output file may be corrupt"
)


def parse_agent_version(version: str) -> semver.Version:
    """Parse a semantic version; a leading "v" and a missing minor/patch are accepted."""
    text = version[1:] if version[:1] in ("v", "V") else version
    try:
        return semver.Version.parse(text, optional_minor_and_patch=True)
    except ValueError:
        raise VersionParseError(
            f"malformed agent version {version!r}", parameter="agent_version", value=version
        ) from None


def _at_most(parsed: semver.Version, ceiling: Tuple[int, int, int]) -> bool:
    # a prerelease never satisfies a release-only "<=" ceiling; build metadata is ignored
    if parsed.prerelease:
        return False
    return (parsed.major, parsed.minor, parsed.patch) <= ceiling


def _ignored_flag_notes(version: str, decrypt: bool, decompress: bool) -> List[str]:
    label = version or "unknown"
    notes = []
    if decrypt:
        notes.append(f"--decrypt is ignored for agent version {label}; the version decides the layout")
    if decompress:
        notes.append(f"--decompress is ignored for agent version {label}; the version decides the layout")
    return notes


def resolve_layout(version: str, decrypt: bool, decompress: bool, keyed: bool) -> PipelineLayout:
    version = (version or "").strip()

    parsed = None if version in UNKNOWN_VERSION_SENTINELS else parse_agent_version(version)

    if parsed is None or _at_most(parsed, LEGACY_DEFLATE_MAX):
        notes = ["Using old zlib reader"] + _ignored_flag_notes(version, decrypt, decompress)
        return PipelineLayout(
            stages=(STAGE_DECRYPT, STAGE_DEFLATE),
            rule=RULE_LEGACY_DEFLATE,
            notes=tuple(notes),
        )

    if _at_most(parsed, SNAPPY_FRAMED_MAX):
        notes = ["Using snappy reader"] + _ignored_flag_notes(version, decrypt, decompress)
        return PipelineLayout(
            stages=(STAGE_DECRYPT, STAGE_SNAPPY),
            rule=RULE_SNAPPY_FRAMED,
            notes=tuple(notes),
        )

    stages = []
    notes = []
    if decrypt:
        if not keyed:
            raise MissingKeyError(
                "Encryption key is mandatory when --decrypt is set",
                parameter="encryption_key",
            )
        stages.append(STAGE_DECRYPT)
        notes.append("Using cipher reader")
    else:
        stages.append(STAGE_PASSTHROUGH)
        notes.append(NOTE_NOT_DECRYPTING)

    if decompress:
        stages.append(STAGE_SNAPPY)
        notes.append("Using snappy reader")
    else:
        stages.append(STAGE_PASSTHROUGH)
        notes.append(NOTE_NOT_DECOMPRESSING)

    return PipelineLayout(stages=tuple(stages), rule=RULE_EXPLICIT_FLAGS, notes=tuple(notes))
