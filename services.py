from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import MONTH_ORDINALS, FinancialRecord, User
from schemas import (
    FinanceYearOut,
    MonthlyAmountRow,
    ParsedSheet,
    RecordOut,
    UploadResultOut,
    UserOut,
)
from spreadsheet_utils import parse_workbook, required_columns_message


logger = logging.getLogger(__name__)

MIN_YEAR = 1000
MAX_YEAR = 9999


class FinanceError(ValueError):
    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class UserNotFound(FinanceError):
    pass


class InvalidFormat(FinanceError):
    pass


class UploadRejected(FinanceError):
    pass


class StorageFailure(FinanceError):
    pass


def parse_year(value: object) -> int:
    try:
        year = int(str(value).strip())
    except ValueError as exc:
        raise UploadRejected(
            "Year must be a four-digit number", details=str(value)
        ) from exc
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise UploadRejected("Year must be a four-digit number", details=str(value))
    return year


def sort_by_calendar(records: Iterable[FinancialRecord]) -> list[FinancialRecord]:
    return sorted(records, key=lambda record: record.month.ordinal)


def validate_sheet(sheet: ParsedSheet) -> None:
    if not sheet.rows:
        raise InvalidFormat(
            required_columns_message(),
            details="No rows with a Month and a numeric Amount were found",
        )
    counts = Counter(row.month for row in sheet.rows)
    duplicates = [month for month in MONTH_ORDINALS if counts[month] > 1]
    if duplicates:
        raise InvalidFormat(
            "Invalid Excel format. Each month may appear only once",
            details="Duplicate months: " + ", ".join(m.value for m in duplicates),
        )


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: str) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise UserNotFound("User not found", details=user_id)
        return user


class FinanceUploadService:
    """Validate, parse and store one user's spreadsheet for one year."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def process_file(self, user_id: str, year: int, path: Path) -> UploadResultOut:
        year = parse_year(year)
        try:
            UserService(self.session).get(user_id)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageFailure("Failed to process file", details=str(exc)) from exc

        try:
            sheet = parse_workbook(path)
        except ValueError as exc:
            message = required_columns_message()
            details = str(exc) if str(exc) != message else None
            raise InvalidFormat(message, details=details) from exc
        validate_sheet(sheet)

        count = self.replace_year(user_id, year, sheet.rows)
        logger.info(
            f"finance_upload: user_id={user_id} year={year} "
            f"records={count} skipped={sheet.skipped}"
        )
        return UploadResultOut(records_processed=count, rows_skipped=sheet.skipped)

    def replace_year(
        self, user_id: str, year: int, rows: Sequence[MonthlyAmountRow]
    ) -> int:
        """
        Swap the stored records for (user, year) with ``rows`` in one transaction.

        The user row is locked first so concurrent uploads for the same user
        run one after the other where the database supports FOR UPDATE. Any
        database error rolls back, leaving the previous records in place.
        """
        try:
            locked = self.session.scalar(
                select(User).where(User.user_id == user_id).with_for_update()
            )
            if not locked:
                self.session.rollback()
                raise UserNotFound("User not found", details=user_id)
            self.session.execute(
                delete(FinancialRecord).where(
                    FinancialRecord.user_id == user_id,
                    FinancialRecord.year == year,
                )
            )
            self.session.add_all(
                [
                    FinancialRecord(
                        user_id=user_id,
                        year=year,
                        month=row.month,
                        amount_cents=row.amount_cents,
                    )
                    for row in rows
                ]
            )
            self.session.flush()
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"finance_upload_failed: user_id={user_id} year={year}")
            raise StorageFailure("Failed to process file", details=str(exc)) from exc
        return len(rows)


class FinanceQueryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def records_for_year(self, user_id: str, year: int) -> list[FinancialRecord]:
        records = self.session.scalars(
            select(FinancialRecord).where(
                FinancialRecord.user_id == user_id,
                FinancialRecord.year == year,
            )
        ).all()
        return sort_by_calendar(records)

    def year_overview(self, user_id: str, year: int) -> FinanceYearOut:
        try:
            user = UserService(self.session).get(user_id)
            records = self.records_for_year(user_id, year)
        except SQLAlchemyError as exc:
            logger.exception(f"finance_query_failed: user_id={user_id} year={year}")
            raise StorageFailure("Failed to retrieve data", details=str(exc)) from exc
        return FinanceYearOut(
            user=UserOut(name=user.name),
            year=year,
            records=[
                RecordOut(
                    record_id=record.record_id,
                    month=record.month,
                    amount=record.amount,
                    name=user.name,
                )
                for record in records
            ],
        )
