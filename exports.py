"""Printable HTML and PDF exports of a dashboard snapshot."""

from datetime import datetime
import html
import io
from typing import List

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from schemas import DashboardSnapshot

EXPORT_TITLE = "Sachio Operations Dashboard"
PDF_FILENAME = "sachio-dashboard-export.pdf"

_HTML_STYLE = """
body { font-family: Arial, sans-serif; padding: 24px; color: #0f172a; }
h1 { margin-bottom: 8px; }
h2 { margin-top: 24px; margin-bottom: 8px; }
table { width: 100%; border-collapse: collapse; font-size: 12px; }
th, td { border: 1px solid #e2e8f0; padding: 8px; }
th { background: #f8fafc; text-align: left; }
"""


def _stat_rows(snapshot: DashboardSnapshot) -> List[List[str]]:
    return [[s.get("label", ""), str(s.get("value", "")), s.get("delta") or ""] for s in snapshot.stats]


def _order_rows(snapshot: DashboardSnapshot) -> List[List[str]]:
    return [
        [str(o.get(k, "")) for k in ("id", "customer", "type", "total", "status", "eta")]
        for o in snapshot.orders
    ]


def _product_rows(snapshot: DashboardSnapshot) -> List[List[str]]:
    return [
        [p.get("title", ""), p.get("category", ""), p.get("price", ""), "Yes" if p.get("inStock") else "No"]
        for p in snapshot.products
    ]


def _html_table(headers: List[str], rows: List[List[str]]) -> str:
    head = "".join(f"<th>{html.escape(h)}</th>" for h in headers)
    body = "".join(
        "<tr>" + "".join(f"<td>{html.escape(str(cell))}</td>" for cell in row) + "</tr>" for row in rows
    )
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def render_html(snapshot: DashboardSnapshot, generated_at: datetime) -> str:
    sections = [
        ("Stats", ["Metric", "Value", "Delta"], _stat_rows(snapshot)),
        ("Orders", ["ID", "Customer", "Type", "Total", "Status", "ETA"], _order_rows(snapshot)),
        ("Products", ["Title", "Category", "Price", "In stock"], _product_rows(snapshot)),
    ]
    body = "".join(f"<h2>{title}</h2>{_html_table(headers, rows)}" for title, headers, rows in sections)
    return (
        "<html><head>"
        f"<title>Sachio Dashboard Export</title><style>{_HTML_STYLE}</style>"
        "</head><body>"
        f"<h1>{EXPORT_TITLE}</h1>"
        f"<p>Generated on {generated_at:%Y-%m-%d %H:%M} UTC</p>"
        f"{body}"
        "</body></html>"
    )


def render_pdf(snapshot: DashboardSnapshot, generated_at: datetime) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
        title=EXPORT_TITLE,
    )
    styles = getSampleStyleSheet()
    table_style = TableStyle(
        [
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f8fafc")),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#e2e8f0")),
            ("FONTSIZE", (0, 0), (-1, -1), 8),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]
    )

    story: List[object] = [
        Paragraph(EXPORT_TITLE, styles["Title"]),
        Paragraph(f"Generated: {generated_at:%Y-%m-%d %H:%M} UTC", styles["Normal"]),
        Spacer(1, 6 * mm),
    ]
    sections = [
        ("Stats", ["Metric", "Value", "Delta"], _stat_rows(snapshot)),
        (f"Orders ({len(snapshot.orders)})", ["ID", "Customer", "Type", "Total", "Status", "ETA"], _order_rows(snapshot)),
        (f"Products ({len(snapshot.products)})", ["Title", "Category", "Price", "In stock"], _product_rows(snapshot)),
    ]
    for title, headers, rows in sections:
        story.append(Paragraph(title, styles["Heading2"]))
        table = Table([headers] + rows, repeatRows=1)
        table.setStyle(table_style)
        story.append(table)
        story.append(Spacer(1, 4 * mm))

    doc.build(story)
    return buffer.getvalue()
