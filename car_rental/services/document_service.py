from __future__ import annotations

import io
from typing import Any

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

_CUSTOMER_FIELDS = [
    ("Customer", "customerName"),
    ("Email", "customerEmail"),
    ("Phone", "customerPhone"),
    ("Address", "billingAddress"),
    ("Driving License", "drivingLicense"),
]

_VEHICLE_FIELDS = [
    ("Vehicle", "vehicleName"),
    ("Category", "vehicleCategory"),
    ("Color", "vehicleColor"),
    ("License Plate", "licensePlate"),
    ("VIN", "vin"),
]

_BOOKING_FIELDS = [
    ("Booking Number", "bookingNumber"),
    ("Start Date", "startDate"),
    ("End Date", "endDate"),
    ("Daily Rate", "dailyRate"),
    ("Deposit", "depositAmount"),
    ("Total Cost", "totalCost"),
    ("Booking Status", "bookingStatus"),
    ("Payment Status", "paymentStatus"),
]


def _styles():
    styles = getSampleStyleSheet()
    styles.add(
        ParagraphStyle(
            name="SummaryTitle",
            parent=styles["Heading1"],
            fontSize=20,
            textColor=colors.darkblue,
            spaceAfter=18,
        )
    )
    styles.add(
        ParagraphStyle(
            name="SummaryHeading",
            parent=styles["Heading2"],
            fontSize=13,
            textColor=colors.darkblue,
            spaceBefore=12,
            spaceAfter=6,
        )
    )
    return styles


def _section(rows: list[tuple[str, str]], data: dict[str, Any]) -> Table:
    cells = []
    for label, key in rows:
        value = data.get(key)
        cells.append([label, "" if value is None else str(value)])
    table = Table(cells, colWidths=[4.5 * cm, 11 * cm])
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 10),
                ("LINEBELOW", (0, 0), (-1, -1), 0.25, colors.lightgrey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )
    return table


def render_booking_summary(data: dict[str, Any]) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        topMargin=2 * cm,
        bottomMargin=2 * cm,
        leftMargin=2 * cm,
        rightMargin=2 * cm,
        title=f"Booking {data.get('bookingNumber') or ''}".strip(),
    )
    styles = _styles()
    story = [
        Paragraph("Booking Confirmation", styles["SummaryTitle"]),
        Paragraph("Customer", styles["SummaryHeading"]),
        _section(_CUSTOMER_FIELDS, data),
        Paragraph("Vehicle", styles["SummaryHeading"]),
        _section(_VEHICLE_FIELDS, data),
        Paragraph("Booking", styles["SummaryHeading"]),
        _section(_BOOKING_FIELDS, data),
        Spacer(1, 12),
    ]
    doc.build(story)
    return buffer.getvalue()
