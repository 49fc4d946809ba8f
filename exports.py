"""
CSV and PDF exports of annual user reports
"""
import csv
import io
import logging
from datetime import datetime
from typing import List, Optional, Sequence
from xml.sax.saxutils import escape

from pydantic import BaseModel, Field
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (CondPageBreak, PageBreak, Paragraph, SimpleDocTemplate, Spacer,
                                Table, TableStyle)

from reports import REPORT_TIMEZONE, UserReport, loan_status_label

logger = logging.getLogger(__name__)

CSV_HEADERS = ["User", "Total Deposits", "Total Loans", "Paid Loans", "Unpaid Loans"]

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 20 * mm
HEADER_HEIGHT = 30 * mm
CONTENT_TOP = 40 * mm
FRAME_HEIGHT = PAGE_HEIGHT - CONTENT_TOP - MARGIN

BRAND_BLUE = colors.Color(41 / 255, 98 / 255, 1)
DEPOSIT_TEAL = colors.Color(75 / 255, 192 / 255, 192 / 255)
LOAN_RED = colors.Color(1, 99 / 255, 132 / 255)
ROW_ALT = colors.Color(245 / 255, 245 / 255, 245 / 255)
MUTED = colors.Color(100 / 255, 100 / 255, 100 / 255)
PAID_GREEN = colors.Color(0, 128 / 255, 0)
UNPAID_RED = colors.Color(1, 0, 0)

# Page-break heuristic, in mm: fixed section overhead plus one row height per record.
SECTION_BASE_HEIGHT = 60
ROW_HEIGHT = 10
TABLE_MIN_HEIGHT = 30


class ExportResult(BaseModel):
    success: bool
    filename: Optional[str] = None
    media_type: Optional[str] = None
    content: bytes = Field(b"", exclude=True)
    error: Optional[str] = None


def csv_filename(year: int) -> str:
    return f"annual-reports-{year}.csv"


def pdf_filename(year: int) -> str:
    return f"annual-reports-{year}.pdf"


def format_currency(amount: float) -> str:
    return f"${amount:,.2f}"


def format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "N/A"
    return value.astimezone(REPORT_TIMEZONE).strftime("%b %d, %Y")


def _display_name(report: UserReport) -> str:
    return report.user.name or "Unknown User"


# ----------------------
# CSV
# ----------------------

def reports_to_csv(reports: Sequence[UserReport]) -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for report in reports:
        writer.writerow([
            report.user.name or "",
            f"{report.total_deposits:.2f}",
            f"{report.total_loans:.2f}",
            report.paid_loans_count,
            report.unpaid_loans_count,
        ])
    return output.getvalue()


def export_csv(reports: Sequence[UserReport], year: int) -> ExportResult:
    filename = csv_filename(year)
    try:
        content = reports_to_csv(reports).encode("utf-8")
    except Exception as e:
        logger.exception("Error generating CSV %s", filename)
        return ExportResult(success=False, error=str(e))
    return ExportResult(success=True, filename=filename, media_type="text/csv", content=content)


# ----------------------
# PDF
# ----------------------

def estimate_section_height(report: UserReport) -> float:
    """Rough height of one user's detail section, capped below a full page."""
    estimated = (SECTION_BASE_HEIGHT + ROW_HEIGHT * (len(report.deposits) + len(report.loans))) * mm
    return min(estimated, FRAME_HEIGHT - 20 * mm)


def _styles() -> dict:
    base = getSampleStyleSheet()
    return {
        "cover_title": ParagraphStyle("CoverTitle", parent=base["Title"], fontSize=28, leading=34,
                                      textColor=BRAND_BLUE, alignment=TA_CENTER),
        "cover_year": ParagraphStyle("CoverYear", parent=base["Title"], fontSize=22, leading=28,
                                     textColor=BRAND_BLUE, alignment=TA_CENTER),
        "cover_note": ParagraphStyle("CoverNote", parent=base["Normal"], fontSize=12, leading=16,
                                     textColor=MUTED, alignment=TA_CENTER),
        "heading": ParagraphStyle("Heading", parent=base["Heading2"], fontName="Helvetica-Bold",
                                  fontSize=14, spaceAfter=6),
        "user": ParagraphStyle("UserName", parent=base["Heading2"], fontName="Helvetica-Bold",
                               fontSize=16, leading=20, textColor=BRAND_BLUE, spaceAfter=4),
        "body": ParagraphStyle("Body", parent=base["Normal"], fontName="Helvetica", fontSize=12, leading=16),
        "muted": ParagraphStyle("Muted", parent=base["Normal"], fontName="Helvetica", fontSize=10,
                                textColor=MUTED, spaceAfter=8),
    }


def _table(data: List[list], header_color, extra: Optional[list] = None) -> Table:
    table = Table(data, repeatRows=1, hAlign="LEFT",
                  colWidths=[(PAGE_WIDTH - 2 * MARGIN) / len(data[0])] * len(data[0]))
    style = [
        ("FONTNAME", (0, 0), (-1, -1), "Helvetica"),
        ("FONTSIZE", (0, 0), (-1, -1), 10),
        ("TOPPADDING", (0, 0), (-1, -1), 5),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 5),
        ("BACKGROUND", (0, 0), (-1, 0), header_color),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("GRID", (0, 0), (-1, -1), 0.4, colors.grey),
    ]
    table.setStyle(TableStyle(style + (extra or [])))
    return table


def _summary_table(reports: Sequence[UserReport]) -> Table:
    data = [["User Name", "Total Deposits ($)", "Paid Loans", "Unpaid Loans", "Total Loans ($)"]]
    for report in reports:
        data.append([
            _display_name(report),
            format_currency(report.total_deposits),
            str(report.paid_loans_count),
            str(report.unpaid_loans_count),
            format_currency(report.total_loans),
        ])
    alternate = [("BACKGROUND", (0, i), (-1, i), ROW_ALT) for i in range(2, len(data), 2)]
    return _table(data, BRAND_BLUE, alternate)


def _user_section(report: UserReport, styles: dict) -> list:
    story = [
        CondPageBreak(estimate_section_height(report)),
        Paragraph(escape(_display_name(report)), styles["user"]),
        Paragraph(escape(f"Email: {report.user.email or 'N/A'}"), styles["body"]),
        Paragraph(escape(f"Phone: {report.user.phone or 'N/A'}"), styles["body"]),
        Spacer(1, 5 * mm),
    ]

    if report.deposits:
        data = [["Amount", "Date"]]
        data += [[format_currency(d.amount), format_date(d.timestamp)] for d in report.deposits]
        story += [CondPageBreak(TABLE_MIN_HEIGHT * mm), _table(data, DEPOSIT_TEAL), Spacer(1, 10 * mm)]
    else:
        story.append(Paragraph("No deposits found", styles["muted"]))

    if report.loans:
        data = [["Amount", "Date", "Status"]]
        status_colors = []
        for row, loan in enumerate(report.loans, start=1):
            data.append([format_currency(loan.amount), format_date(loan.timestamp),
                         loan_status_label(loan.payment_status)])
            color = PAID_GREEN if loan.is_paid else UNPAID_RED
            status_colors.append(("TEXTCOLOR", (2, row), (2, row), color))
        story += [CondPageBreak(TABLE_MIN_HEIGHT * mm), _table(data, LOAN_RED, status_colors),
                  Spacer(1, 15 * mm)]
    else:
        story += [Paragraph("No loans found", styles["muted"]), Spacer(1, 5 * mm)]
    return story


def _draw_page_frame(year: int):
    def draw(canvas, doc):
        canvas.saveState()
        canvas.setFillColor(BRAND_BLUE)
        canvas.rect(0, PAGE_HEIGHT - HEADER_HEIGHT, PAGE_WIDTH, HEADER_HEIGHT, stroke=0, fill=1)
        canvas.setFillColor(colors.white)
        canvas.setFont("Helvetica-Bold", 20)
        canvas.drawCentredString(PAGE_WIDTH / 2, PAGE_HEIGHT - 20 * mm, "Annual User Reports")
        canvas.setFont("Helvetica", 14)
        canvas.drawCentredString(PAGE_WIDTH / 2, PAGE_HEIGHT - 26 * mm, str(year))
        canvas.setFillColor(MUTED)
        canvas.setFont("Helvetica", 8)
        canvas.drawCentredString(PAGE_WIDTH / 2, 10 * mm, f"Page {doc.page}")
        canvas.restoreState()
    return draw


def render_pdf(reports: Sequence[UserReport], year: int, generated_on: Optional[datetime] = None) -> bytes:
    """Title page with summary statistics, a summary table, then one section per user."""
    generated_on = generated_on or datetime.now(REPORT_TIMEZONE)
    styles = _styles()
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=CONTENT_TOP,
        bottomMargin=MARGIN,
        title=f"Annual User Reports {year}",
    )

    story = [
        Spacer(1, 45 * mm),
        Paragraph("Annual User Reports", styles["cover_title"]),
        Paragraph(str(year), styles["cover_year"]),
        Paragraph(f"Generated on {generated_on.strftime('%B %d, %Y')}", styles["cover_note"]),
        Spacer(1, 25 * mm),
        Paragraph("Summary Statistics", styles["heading"]),
    ]
    stats = [
        f"Total Users: {len(reports)}",
        f"Total Deposits: {format_currency(sum(r.total_deposits for r in reports))}",
        f"Total Loans: {format_currency(sum(r.total_loans for r in reports))}",
        f"Total Paid Loans: {sum(r.paid_loans_count for r in reports)}",
        f"Total Unpaid Loans: {sum(r.unpaid_loans_count for r in reports)}",
    ]
    story += [Paragraph(line, styles["body"]) for line in stats]
    story += [PageBreak(), _summary_table(reports)]

    if reports:
        story.append(PageBreak())
        for report in reports:
            story += _user_section(report, styles)

    frame = _draw_page_frame(year)
    doc.build(story, onFirstPage=frame, onLaterPages=frame)
    return buffer.getvalue()


def export_pdf(reports: Sequence[UserReport], year: int) -> ExportResult:
    filename = pdf_filename(year)
    try:
        content = render_pdf(reports, year)
    except Exception as e:
        logger.exception("Error generating PDF %s", filename)
        return ExportResult(success=False, error=str(e))
    logger.info("PDF %s generated (%d bytes)", filename, len(content))
    return ExportResult(success=True, filename=filename, media_type="application/pdf", content=content)
