import pytest
from openpyxl import Workbook
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from database import Base
from models import FinancialRecord, Month, User
from services import (
    FinanceQueryService,
    FinanceUploadService,
    InvalidFormat,
    StorageFailure,
    UploadRejected,
    UserNotFound,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    session.add_all([User(user_id="u1", name="Ada"), User(user_id="u2", name="Grace")])
    session.commit()
    return session


def write_workbook(path, rows, header=("Month", "Amount")):
    wb = Workbook()
    ws = wb.active
    if header:
        ws.append(list(header))
    for row in rows:
        ws.append(list(row))
    wb.save(path)
    return path


def stored(session, user_id="u1", year=2024):
    return [
        (record.month, record.amount_cents)
        for record in FinanceQueryService(session).records_for_year(user_id, year)
    ]


def record_count(session) -> int:
    return session.scalar(select(func.count()).select_from(FinancialRecord))


def test_upload_then_query_returns_calendar_order(tmp_path) -> None:
    session = make_session()
    path = write_workbook(
        tmp_path / "year.xlsx",
        [("December", 12), ("March", -20), ("January", 100.5), ("August", 8)],
    )

    result = FinanceUploadService(session).process_file("u1", 2024, path)

    assert result.records_processed == 4
    assert result.rows_skipped == 0
    assert stored(session) == [
        (Month.january, 10050),
        (Month.march, -2000),
        (Month.august, 800),
        (Month.december, 1200),
    ]


def test_year_overview_matches_worked_example(tmp_path) -> None:
    session = make_session()
    path = write_workbook(
        tmp_path / "year.xlsx", [("January", 100.5), ("March", -20)]
    )

    result = FinanceUploadService(session).process_file("u1", 2024, path)
    overview = FinanceQueryService(session).year_overview("u1", 2024)

    assert result.records_processed == 2
    assert overview.user.name == "Ada"
    assert overview.year == 2024
    assert [(r.month, r.amount, r.name) for r in overview.records] == [
        (Month.january, 100.5, "Ada"),
        (Month.march, -20.0, "Ada"),
    ]


def test_second_upload_replaces_the_first(tmp_path) -> None:
    session = make_session()
    service = FinanceUploadService(session)
    service.process_file(
        "u1",
        2024,
        write_workbook(tmp_path / "a.xlsx", [("January", 1), ("February", 2)]),
    )

    service.process_file(
        "u1", 2024, write_workbook(tmp_path / "b.xlsx", [("May", 5)])
    )

    assert stored(session) == [(Month.may, 500)]


def test_replace_is_scoped_to_user_and_year(tmp_path) -> None:
    session = make_session()
    service = FinanceUploadService(session)
    service.process_file(
        "u1", 2023, write_workbook(tmp_path / "a.xlsx", [("January", 1)])
    )
    service.process_file(
        "u2", 2024, write_workbook(tmp_path / "b.xlsx", [("January", 2)])
    )

    service.process_file(
        "u1", 2024, write_workbook(tmp_path / "c.xlsx", [("June", 3)])
    )

    assert stored(session, "u1", 2023) == [(Month.january, 100)]
    assert stored(session, "u2", 2024) == [(Month.january, 200)]
    assert stored(session, "u1", 2024) == [(Month.june, 300)]


def test_unknown_user_is_rejected_without_writes(tmp_path) -> None:
    session = make_session()
    FinanceUploadService(session).process_file(
        "u1", 2024, write_workbook(tmp_path / "a.xlsx", [("January", 1)])
    )
    before = record_count(session)

    with pytest.raises(UserNotFound):
        FinanceUploadService(session).process_file(
            "ghost", 2024, write_workbook(tmp_path / "b.xlsx", [("March", 3)])
        )

    assert record_count(session) == before
    with pytest.raises(UserNotFound):
        FinanceQueryService(session).year_overview("ghost", 2024)


def test_sheet_without_usable_rows_keeps_previous_records(tmp_path) -> None:
    session = make_session()
    service = FinanceUploadService(session)
    service.process_file(
        "u1", 2024, write_workbook(tmp_path / "a.xlsx", [("April", 4)])
    )

    bad = write_workbook(
        tmp_path / "b.xlsx", [("", 10), ("Total", 14), ("May", "n/a")]
    )
    with pytest.raises(InvalidFormat) as excinfo:
        service.process_file("u1", 2024, bad)

    assert "Month, Amount" in excinfo.value.message
    assert stored(session) == [(Month.april, 400)]


def test_missing_columns_is_invalid_format(tmp_path) -> None:
    session = make_session()
    path = write_workbook(
        tmp_path / "a.xlsx", [("January", 1)], header=("Period", "Value")
    )

    with pytest.raises(InvalidFormat):
        FinanceUploadService(session).process_file("u1", 2024, path)
    assert record_count(session) == 0


def test_zero_amount_rows_are_accepted(tmp_path) -> None:
    session = make_session()
    path = write_workbook(tmp_path / "a.xlsx", [("January", 0)])

    result = FinanceUploadService(session).process_file("u1", 2024, path)

    assert result.records_processed == 1
    assert stored(session) == [(Month.january, 0)]


def test_malformed_trailing_rows_are_skipped(tmp_path) -> None:
    session = make_session()
    path = write_workbook(
        tmp_path / "a.xlsx",
        [("January", 10), ("February", 20), ("Total", 30), (None, "oops")],
    )

    result = FinanceUploadService(session).process_file("u1", 2024, path)

    assert result.records_processed == 2
    assert result.rows_skipped == 2


def test_amounts_beyond_the_cents_column_are_skipped(tmp_path) -> None:
    session = make_session()
    path = write_workbook(
        tmp_path / "a.xlsx", [("January", 1e20), ("February", -1e30), ("March", 7)]
    )

    result = FinanceUploadService(session).process_file("u1", 2024, path)

    assert result.records_processed == 1
    assert result.rows_skipped == 2
    assert stored(session) == [(Month.march, 700)]


def test_duplicate_months_are_invalid_format(tmp_path) -> None:
    session = make_session()
    path = write_workbook(
        tmp_path / "a.xlsx", [("March", 1), ("april", 2), ("Mar", 3)]
    )

    with pytest.raises(InvalidFormat) as excinfo:
        FinanceUploadService(session).process_file("u1", 2024, path)

    assert excinfo.value.details == "Duplicate months: March"
    assert record_count(session) == 0


def test_year_must_have_four_digits(tmp_path) -> None:
    session = make_session()
    path = write_workbook(tmp_path / "a.xlsx", [("March", 1)])

    with pytest.raises(UploadRejected):
        FinanceUploadService(session).process_file("u1", 24, path)


def test_insert_failure_leaves_previous_records_intact(tmp_path) -> None:
    session = make_session()
    service = FinanceUploadService(session)
    service.process_file(
        "u1",
        2024,
        write_workbook(tmp_path / "a.xlsx", [("January", 1), ("February", 2)]),
    )

    calls = {"count": 0}

    def fail_on_third_insert(mapper, connection, target):
        calls["count"] += 1
        if calls["count"] == 3:
            raise OperationalError(
                "INSERT INTO financial_records", {}, Exception("disk I/O error")
            )

    event.listen(FinancialRecord, "before_insert", fail_on_third_insert)
    try:
        rows = [("March", 3), ("April", 4), ("May", 5), ("June", 6), ("July", 7)]
        with pytest.raises(StorageFailure):
            service.process_file(
                "u1", 2024, write_workbook(tmp_path / "b.xlsx", rows)
            )
    finally:
        event.remove(FinancialRecord, "before_insert", fail_on_third_insert)

    assert calls["count"] == 3
    assert stored(session) == [(Month.january, 100), (Month.february, 200)]


def test_query_for_year_without_records_is_empty() -> None:
    session = make_session()

    overview = FinanceQueryService(session).year_overview("u2", 1999)

    assert overview.user.name == "Grace"
    assert overview.records == []
