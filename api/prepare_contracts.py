from dataclasses import dataclass, field
from typing import Literal, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

STAGE_DECRYPT = "decrypt_if_keyed"
STAGE_DEFLATE = "decompress_deflate"
STAGE_SNAPPY = "decompress_snappy_framed"
STAGE_PASSTHROUGH = "passthrough"

Stage = Literal["decrypt_if_keyed", "decompress_deflate", "decompress_snappy_framed", "passthrough"]
STAGES_ALL = (STAGE_DECRYPT, STAGE_DEFLATE, STAGE_SNAPPY, STAGE_PASSTHROUGH)

RULE_LEGACY_DEFLATE = "legacy_deflate"
RULE_SNAPPY_FRAMED = "snappy_framed"
RULE_EXPLICIT_FLAGS = "explicit_flags"

DEFAULT_CHUNK_SIZE = 1 << 20


@dataclass(frozen=True)
class PipelineLayout:
    """Decode stages in nesting order: stages[0] wraps the raw input, stages[-1] is read first."""
    stages: Tuple[str, ...]
    rule: str
    notes: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        for stage in self.stages:
            if stage not in STAGES_ALL:
                raise ValueError(f"UNKNOWN_STAGE: {stage}")

    def to_dict(self) -> dict:
        return {"rule": self.rule, "stages": list(self.stages), "notes": list(self.notes)}


class PrepareRequest(BaseModel):
    """Options for one decode; only agent_version and encryption_key matter below rule 3."""
    model_config = ConfigDict(frozen=True)

    agent_version: str = ""
    encryption_key: str = Field(default="", repr=False)
    decrypt: bool = False
    decompress: bool = False
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1)

    @field_validator("agent_version", "encryption_key", mode="before")
    @classmethod
    def _strip(cls, value):
        if value is None:
            return ""
        return str(value).strip()

    @property
    def keyed(self) -> bool:
        return self.encryption_key != ""


@dataclass(frozen=True)
class PrepareResult:
    layout: PipelineLayout
    bytes_read: int
    bytes_written: int

    def to_dict(self) -> dict:
        return {
            "layout": self.layout.to_dict(),
            "bytes_read": self.bytes_read,
            "bytes_written": self.bytes_written,
        }
