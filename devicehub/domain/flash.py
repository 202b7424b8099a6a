"""Schemas and states for the compile-then-upload workflow."""

from __future__ import annotations

import enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class FlashState(str, enum.Enum):
    VALIDATING = "validating"
    PROBING_TOOL = "probing_tool"
    COMPILING = "compiling"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


class FlashFailureReason(str, enum.Enum):
    BAD_INPUT = "bad_input"
    TOOL_UNAVAILABLE = "tool_unavailable"
    COMPILE_ERROR = "compile_error"
    UPLOAD_ERROR = "upload_error"


class FlashRequest(BaseModel):
    """Body of ``POST /flash``; every field is validated before use."""

    model_config = ConfigDict(populate_by_name=True)

    sketch_path: str | None = Field(default=None, alias="sketchPath")
    port: str | None = None
    fqbn: str | None = None


class ValidatedFlashRequest(BaseModel):
    """A flash request after validation: the sketch path is absolute and inside the root."""

    sketch: Path
    port: str
    fqbn: str | None = None


class FlashResponse(BaseModel):
    ok: bool = True
    msg: str = "Upload complete"
