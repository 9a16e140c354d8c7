from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Month


class MonthlyAmountRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    month: Month
    amount_cents: int


class ParsedSheet(BaseModel):
    rows: list[MonthlyAmountRow]
    skipped: int = Field(default=0, ge=0)


class UploadResultOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = "File processed successfully"
    records_processed: int = Field(..., ge=0, alias="recordsProcessed")
    rows_skipped: int = Field(default=0, ge=0, alias="rowsSkipped")


class UserOut(BaseModel):
    name: str


class RecordOut(BaseModel):
    record_id: int
    month: Month
    amount: float
    name: str


class FinanceYearOut(BaseModel):
    user: UserOut
    year: int
    records: list[RecordOut]


class ErrorOut(BaseModel):
    error: str
    details: Optional[str] = None
