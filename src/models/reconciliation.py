from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class MailReconciliationRunRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)


class MailReconciliationResultItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: Literal["fixed", "submitted_to_lob", "error"]
    message: str
    carrier_reference: str | None = Field(default=None, alias="carrierReference")


class MailReconciliationRunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fixed_count: int = Field(alias="fixedCount")
    submitted_to_lob_count: int = Field(alias="submittedToLobCount")
    error_count: int = Field(alias="errorCount")
    scanned_count: int = Field(alias="scannedCount")
    started_at: datetime = Field(alias="startedAt")
    finished_at: datetime = Field(alias="finishedAt")
    results: list[MailReconciliationResultItem]
