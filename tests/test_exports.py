import csv
import io
from datetime import datetime, timezone

import exports
from reports import UserReport
from schemas import Deposit, Loan, User


def make_report(name, deposits=(), loans=(), user_id="u1"):
    user = User(_id=user_id, name=name, email=f"{user_id}@example.com", phone="0788")
    deposit_models = [
        Deposit.model_validate({"_id": f"d{i}", "user_id": user_id, "amount": amount,
                                "timestamp": datetime(2024, 1 + i % 12, 5, tzinfo=timezone.utc)})
        for i, amount in enumerate(deposits)
    ]
    loan_models = [
        Loan.model_validate({"_id": f"l{i}", "user_id": user_id, "amount": amount,
                             "timestamp": datetime(2024, 1 + i % 12, 15, tzinfo=timezone.utc),
                             "payment_status": payment_status})
        for i, (amount, payment_status) in enumerate(loans)
    ]
    return UserReport.build(user, deposit_models, loan_models)


def test_filenames():
    assert exports.csv_filename(2024) == "annual-reports-2024.csv"
    assert exports.pdf_filename(2023) == "annual-reports-2023.pdf"


def test_formatting():
    assert exports.format_currency(1234.5) == "$1,234.50"
    assert exports.format_date(None) == "N/A"
    assert exports.format_date(datetime(2024, 3, 7, tzinfo=timezone.utc)) == "Mar 07, 2024"


def test_csv_rows():
    report = make_report("Alice", deposits=[3000, 2000], loans=[(1000, "approved"), (1000, None)])

    rows = list(csv.reader(io.StringIO(exports.reports_to_csv([report]))))

    assert rows == [exports.CSV_HEADERS, ["Alice", "5000.00", "2000.00", "1", "1"]]


def test_csv_quotes_names_with_commas_and_quotes():
    report = make_report('Doe, "Johnny"')

    content = exports.reports_to_csv([report])

    assert '"Doe, ""Johnny"""' in content
    rows = list(csv.reader(io.StringIO(content)))
    assert rows[1][0] == 'Doe, "Johnny"'


def test_export_csv_result():
    result = exports.export_csv([make_report("Alice", deposits=[10])], 2024)

    assert result.success
    assert result.filename == "annual-reports-2024.csv"
    assert result.media_type == "text/csv"
    assert result.content.startswith(b"User,Total Deposits")
    assert "content" not in result.model_dump()


def test_render_pdf_produces_document():
    reports = [
        make_report("Alice", deposits=[100, 200], loans=[(50, "approved"), (25, "pending")], user_id="a"),
        make_report("<Bob & Co>", user_id="b"),
    ]

    content = exports.render_pdf(reports, 2024, generated_on=datetime(2025, 1, 2))

    assert content.startswith(b"%PDF")


def test_render_pdf_with_many_records_spans_pages():
    reports = [make_report(f"User {i}", deposits=[10.0] * 11, loans=[(5.0, None)] * 10, user_id=f"u{i}")
               for i in range(8)]

    content = exports.render_pdf(reports, 2024)

    assert content.startswith(b"%PDF")
    assert content.count(b"/Type /Page") > 3


def test_render_pdf_without_reports():
    assert exports.render_pdf([], 2024).startswith(b"%PDF")


def test_section_height_is_capped():
    big = make_report("Big", deposits=[1.0] * 11, loans=[(1.0, None)] * 200)

    assert exports.estimate_section_height(big) < exports.FRAME_HEIGHT


def test_export_pdf_failure_is_reported(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("layout error")

    monkeypatch.setattr(exports, "render_pdf", broken)

    result = exports.export_pdf([], 2024)

    assert not result.success
    assert result.error == "layout error"
    assert result.content == b""
