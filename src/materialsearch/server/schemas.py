from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EnsureThreadRequest(_CamelModel):
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    preamble: Optional[str] = Field(default=None, description="Text prepended to the agent instructions.")


class TurnRequest(_CamelModel):
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    text: str = Field(..., description="User message for this turn.")
    model: Optional[str] = Field(default=None, description="Model override; defaults to the configured model.")

    @field_validator("text")
    @classmethod
    def validate_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text must not be blank")
        return value


class InterruptRequest(_CamelModel):
    turn_id: str = Field(..., alias="turnId", min_length=1)


class InterruptResponse(_CamelModel):
    ok: bool = True
    interrupted: bool


class AdminSettingsUpdate(_CamelModel):
    default_model: Optional[str] = Field(default=None, alias="defaultModel")
    default_thread_preamble: Optional[str] = Field(default=None, alias="defaultThreadPreamble")
    corpus_root: Optional[str] = Field(default=None, alias="corpusRoot")
    reasoning_effort: Optional[str] = Field(default=None, alias="reasoningEffort")
    reasoning_summary: Optional[str] = Field(default=None, alias="reasoningSummary")
    max_turns: Optional[int] = Field(default=None, alias="maxTurns")
    turn_timeout_seconds: Optional[float] = Field(default=None, alias="turnTimeoutSeconds")
    compaction_enabled: Optional[bool] = Field(default=None, alias="compactionEnabled")
    compaction_threshold: Optional[int] = Field(default=None, alias="compactionThreshold")

    def to_updates(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
