import re
from datetime import datetime, timezone
from typing import Optional, Tuple

from fpdf import FPDF

from .schemas import CaseDraft


def _latin1(text: str) -> str:
    # Core PDF fonts only cover latin-1.
    return (text or "").encode("latin-1", "replace").decode("latin-1")


def _hex_to_rgb(value: str) -> Tuple[int, int, int]:
    cleaned = (value or "").lstrip("#")
    if not re.fullmatch(r"[0-9a-fA-F]{6}", cleaned):
        cleaned = "334e68"
    return int(cleaned[0:2], 16), int(cleaned[2:4], 16), int(cleaned[4:6], 16)


def case_summary_filename(draft: CaseDraft, client_name: Optional[str] = None) -> str:
    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    matter = re.sub(r"\s+", "-", draft.matter_type.strip().lower())
    client = f"-{re.sub(r'[^a-z0-9]+', '-', client_name.strip().lower()).strip('-')}" if client_name else ""
    return f"case-summary-{matter}{client}-{date}.pdf"


def _section(pdf: FPDF, title: str, lines) -> None:
    pdf.ln(3)
    pdf.set_font("Helvetica", "B", 11)
    pdf.cell(0, 7, _latin1(title), new_x="LMARGIN", new_y="NEXT")
    pdf.set_font("Helvetica", "", 10)
    for line in lines:
        pdf.multi_cell(0, 6, _latin1(line), new_x="LMARGIN", new_y="NEXT")


def render_case_summary(
    draft: CaseDraft,
    client_name: Optional[str] = None,
    organization_name: str = "Legal Services",
    brand_color: str = "#334e68",
) -> bytes:
    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()

    red, green, blue = _hex_to_rgb(brand_color)
    pdf.set_fill_color(red, green, blue)
    pdf.rect(0, 0, 210, 28, "F")
    pdf.set_text_color(255, 255, 255)
    pdf.set_font("Helvetica", "B", 18)
    pdf.set_xy(10, 8)
    pdf.cell(0, 12, _latin1(f"{organization_name} - Case Summary"), new_x="LMARGIN", new_y="NEXT")
    pdf.set_font("Helvetica", "", 10)
    pdf.set_xy(10, 20)
    pdf.cell(0, 6, "Prepared from your intake conversation. This is not legal advice.", new_x="LMARGIN", new_y="NEXT")

    pdf.set_text_color(30, 41, 59)
    pdf.set_xy(10, 34)
    overview = [
        f"Matter type: {draft.matter_type}",
        f"Jurisdiction: {draft.jurisdiction or 'Unknown'}",
        f"Urgency: {draft.urgency}",
    ]
    if client_name:
        overview.insert(0, f"Client: {client_name}")
    _section(pdf, "Overview", overview)
    if draft.key_facts:
        _section(pdf, "Key Facts", [f"{i}. {fact}" for i, fact in enumerate(draft.key_facts, 1)])
    if draft.timeline:
        _section(pdf, "Timeline", [draft.timeline])
    if draft.parties:
        parties = [
            " - ".join(str(value) for value in (party.get("role"), party.get("name")) if value) for party in draft.parties
        ]
        _section(pdf, "Parties", parties)
    if draft.documents:
        _section(pdf, "Documents", [f"- {doc}" for doc in draft.documents])
    if draft.evidence:
        _section(pdf, "Evidence", [f"- {item}" for item in draft.evidence])

    pdf.set_text_color(100, 116, 139)
    pdf.set_font("Helvetica", "I", 8)
    pdf.set_y(-20)
    pdf.cell(0, 5, _latin1(f"Generated by {organization_name}"), align="C")
    return bytes(pdf.output())
