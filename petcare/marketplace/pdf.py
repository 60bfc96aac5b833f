"""Invoice PDF rendering on a reportlab canvas."""

from __future__ import annotations

from io import BytesIO
from typing import Any, Dict

from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

MARGIN = 50
LINE_HEIGHT = 16


def _money(value: Any) -> str:
    return f"{value:.2f}" if value is not None else "-"


def render_invoice_pdf(invoice: Dict[str, Any], *, platform_name: str = "Petcare") -> bytes:
    """Render an invoice detail dict (as returned by ``get_invoice``) to PDF bytes."""

    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4
    pdf.setTitle(f"Invoice {invoice['invoice_number']}")

    y = height - MARGIN
    pdf.setFont("Helvetica-Bold", 18)
    pdf.drawString(MARGIN, y, f"{platform_name} invoice")
    y -= LINE_HEIGHT * 2

    pdf.setFont("Helvetica", 10)
    for label, value in (
        ("Invoice number", invoice["invoice_number"]),
        ("Status", invoice["status"]),
        ("Issue date", invoice["issue_date"]),
        ("Due date", invoice["due_date"]),
        ("Booking", f"#{invoice['booking_id']}"),
    ):
        pdf.drawString(MARGIN, y, f"{label}: {value}")
        y -= LINE_HEIGHT
    y -= LINE_HEIGHT

    pdf.setFont("Helvetica-Bold", 10)
    pdf.drawString(MARGIN, y, "Description")
    pdf.drawRightString(width - MARGIN - 160, y, "Qty")
    pdf.drawRightString(width - MARGIN - 80, y, "Unit")
    pdf.drawRightString(width - MARGIN, y, "Total")
    y -= LINE_HEIGHT
    pdf.setFont("Helvetica", 10)
    for item in invoice.get("items", []):
        lines = simpleSplit(item["description"], "Helvetica", 10, width - 2 * MARGIN - 200)
        pdf.drawRightString(width - MARGIN - 160, y, str(item["quantity"]))
        pdf.drawRightString(width - MARGIN - 80, y, _money(item["unit_price"]))
        pdf.drawRightString(width - MARGIN, y, _money(item["line_total"]))
        for line in lines:
            pdf.drawString(MARGIN, y, line)
            y -= LINE_HEIGHT
    y -= LINE_HEIGHT

    for label, key in (
        ("Subtotal", "subtotal"),
        ("Platform fee", "platform_fee"),
        ("Discount", "discount_amount"),
        ("Total", "total"),
    ):
        if key == "total":
            pdf.setFont("Helvetica-Bold", 11)
        pdf.drawString(width - MARGIN - 200, y, label)
        pdf.drawRightString(width - MARGIN, y, _money(invoice[key]))
        y -= LINE_HEIGHT

    if invoice.get("notes"):
        y -= LINE_HEIGHT
        pdf.setFont("Helvetica-Oblique", 9)
        for line in simpleSplit(invoice["notes"], "Helvetica-Oblique", 9, width - 2 * MARGIN):
            pdf.drawString(MARGIN, y, line)
            y -= LINE_HEIGHT

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
