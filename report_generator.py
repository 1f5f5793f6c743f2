from datetime import datetime
from io import BytesIO
from xml.sax.saxutils import escape

import matplotlib
matplotlib.use("Agg")

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import (
    HRFlowable,
    Image,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

import matplotlib.pyplot as plt
import numpy as np

from models import MOOD_SCORES, MOODS

MOVING_AVERAGE_WINDOW = 7
TIMELINE_LIMIT = 20
PAGE_MARGINS = {"leftMargin": 48, "rightMargin": 48, "topMargin": 42, "bottomMargin": 42}

STYLES = {
    "title": ParagraphStyle("ReportTitle", fontName="Helvetica-Bold", fontSize=22, leading=28,
                            alignment=1, spaceAfter=16, textColor=colors.HexColor("#2f6f6a")),
    "section": ParagraphStyle("ReportSection", fontName="Helvetica-Bold", fontSize=15, leading=20,
                              spaceBefore=18, spaceAfter=8, textColor=colors.HexColor("#7b4fa0")),
    "body": ParagraphStyle("ReportBody", fontSize=10.5, leading=15, textColor=colors.HexColor("#3d3d3d")),
    "small": ParagraphStyle("ReportSmall", fontSize=8.5, leading=12, textColor=colors.HexColor("#6f6f6f")),
}


def moving_average(scores, window=MOVING_AVERAGE_WINDOW):
    """Trailing mean over `window` entries; empty if there are fewer entries."""
    if len(scores) < window:
        return np.array([])
    return np.convolve(np.asarray(scores, dtype=float), np.ones(window) / window, mode="valid")


def _score_chart(entries):
    scores = [MOOD_SCORES.get(e.mood, 0) for e in entries]
    positions = np.arange(len(scores))

    fig, ax = plt.subplots(figsize=(6, 3))
    ax.plot(positions, scores, marker="o", color="#2f6f6a", label="Daily mood")

    averaged = moving_average(scores)
    if averaged.size:
        ax.plot(
            positions[MOVING_AVERAGE_WINDOW - 1:],
            averaged,
            color="#7b4fa0",
            linewidth=2,
            label=f"{MOVING_AVERAGE_WINDOW}-entry average",
        )

    ax.set_ylim(0.5, 5.5)
    ax.set_yticks(sorted(MOOD_SCORES.values()))
    ax.set_yticklabels([m.capitalize() for m in reversed(MOODS)])
    ax.set_xticks(positions)
    ax.set_xticklabels([e.entry_date.strftime("%m-%d") for e in entries], rotation=45, fontsize=7)
    ax.legend(loc="lower left", fontsize=7)
    ax.set_title("Mood Score Over Time")

    img_buf = BytesIO()
    plt.savefig(img_buf, format="png", dpi=120, bbox_inches="tight")
    plt.close(fig)
    img_buf.seek(0)
    return img_buf


def _grid(header_color, body_color, align_to=-1):
    return TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor(header_color)),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ALIGN", (0, 0), (align_to, -1), "CENTER"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("GRID", (0, 0), (-1, -1), 0.35, colors.HexColor("#cfe3df")),
        ("BACKGROUND", (0, 1), (-1, -1), colors.HexColor(body_color)),
    ])


def _distribution_table(stats):
    rows = [["Mood", "Entries", "Share"]]
    for mood in MOODS:
        count = stats["moodDistribution"].get(mood, 0)
        if count:
            rows.append([mood.capitalize(), str(count), f"{count / stats['total'] * 100:.1f}%"])
    table = Table(rows, colWidths=[2.2 * inch, 1 * inch, 1 * inch])
    table.setStyle(_grid("#2f6f6a", "#f0f7f6"))
    return table


def _timeline_table(entries):
    rows = [["Date", "Mood", "Notes"]]
    for entry in sorted(entries, key=lambda e: e.date, reverse=True)[:TIMELINE_LIMIT]:
        notes = entry.notes or ""
        if len(notes) > 60:
            notes = notes[:57] + "..."
        rows.append([entry.entry_date.isoformat(), entry.mood.capitalize(),
                     Paragraph(escape(notes), STYLES["small"])])
    table = Table(rows, colWidths=[1.2 * inch, 1.1 * inch, 3.8 * inch])
    table.setStyle(_grid("#7b4fa0", "#f7f3fa", align_to=1))
    return table


def generate_mood_report_pdf(user, entries, stats, days):
    """Render a student's mood report for the last `days` days as a PDF buffer."""
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, **PAGE_MARGINS)
    body, section = STYLES["body"], STYLES["section"]

    flow = [
        Paragraph("Mood Report", STYLES["title"]),
        HRFlowable(width="100%", thickness=0.8, color=colors.HexColor("#9fd3cb"),
                   spaceBefore=6, spaceAfter=16),
        Paragraph(
            f"<b>Student:</b> {escape(user.full_name or user.email)}<br/>"
            f"<b>Period:</b> last {days} days<br/>"
            f"<b>Generated:</b> {datetime.now():%Y-%m-%d %H:%M}",
            body,
        ),
        Paragraph("Summary", section),
        Paragraph(
            f"<b>Entries:</b> {stats['total']}<br/>"
            f"<b>Average score:</b> {stats['averageScore']:.2f} / 5<br/>"
            f"<b>Recent trend:</b> {stats['recentTrend']}<br/>"
            f"<b>Days that may need support:</b> {stats['needsSupportCount']}",
            body,
        ),
    ]

    if entries:
        flow += [
            Paragraph("Mood Distribution", section),
            _distribution_table(stats),
            Spacer(1, 16),
            Image(_score_chart(entries), width=420, height=210),
            Paragraph("Recent Entries", section),
            _timeline_table(entries),
        ]
    else:
        flow += [Spacer(1, 10), Paragraph("No mood entries in this period.", body)]

    flow += [
        Spacer(1, 16),
        Paragraph("This report summarizes self-reported moods. It is not a clinical assessment.",
                  STYLES["small"]),
    ]
    doc.build(flow)
    buffer.seek(0)
    return buffer
