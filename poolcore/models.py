"""Pydantic models for records read from ckpool logs."""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

_CREATEDATE_RE = re.compile(r"^\d+(,\d{1,9})?$")

# difficulties are stored as signed 64-bit integers
MAX_DIFFICULTY = 2 ** 63


class ShareRecord(BaseModel):
    """One sharelog line. Unknown ckpool fields are ignored."""

    username: str
    workername: str
    diff: float = Field(ge=0, lt=MAX_DIFFICULTY, allow_inf_nan=False)
    sdiff: float = Field(ge=0, lt=MAX_DIFFICULTY, allow_inf_nan=False)
    result: bool
    createdate: str
    hash: Optional[str] = None

    @field_validator("createdate")
    @classmethod
    def _check_createdate(cls, value: str) -> str:
        value = value.strip()
        if not _CREATEDATE_RE.match(value):
            raise ValueError(f"createdate must be '<seconds>,<nanoseconds>', got {value!r}")
        return value

    @property
    def submitted_at(self) -> float:
        seconds, _, nanos = self.createdate.partition(",")
        return int(seconds) + int(nanos or 0) / 1_000_000_000

    @property
    def difficulty(self) -> int:
        # whole units only; fractional difficulty is dropped
        return int(self.diff)

    @property
    def share_difficulty(self) -> int:
        return int(self.sdiff)
