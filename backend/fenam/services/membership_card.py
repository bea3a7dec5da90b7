"""
Membership card PDF, credit-card sized (85.6mm x 54mm).
"""
import asyncio
import html
from io import BytesIO
from typing import Union

from xhtml2pdf import pisa

from fenam.core.config import settings
from fenam.models.affiliation import Affiliation, AffiliationSnapshot
from fenam.services.email import format_date_it

# reportlab base fonts have no glyphs for these
REPLACEMENTS = {
    "\u2013": "-",  # en dash
    "\u2014": "-",  # em dash
    "\u00A0": " ",  # nbsp
    "\u2018": "'",
    "\u2019": "'",
    "\u201C": '"',
    "\u201D": '"',
}

CARD_TEMPLATE = """
<html>
<head>
<meta charset="utf-8">
<style>
    @page {{ size: 85.6mm 54mm; margin: 0; }}
    body {{ font-family: Helvetica; font-size: 7pt; color: #333333; margin: 0; }}
    .header {{ background-color: #12A969; color: #ffffff; padding: 2mm 3mm; }}
    .title {{ font-size: 10pt; font-weight: bold; }}
    .subtitle {{ font-size: 5pt; }}
    .body {{ padding: 2mm 3mm; }}
    .name {{ font-size: 9pt; font-weight: bold; margin-bottom: 1mm; }}
    .number {{ font-size: 8pt; font-weight: bold; color: #12A969; }}
    .label {{ color: #777777; }}
    .footer {{ font-size: 5pt; color: #777777; padding: 0 3mm; }}
</style>
</head>
<body>
    <div class="header">
        <div class="title">FENAM - TESSERA SOCIO</div>
        <div class="subtitle">Federazione Nazionale Associazioni Multiculturali</div>
    </div>
    <div class="body">
        <div class="name">{name}</div>
        <div class="number">{member_number}</div>
        <div><span class="label">Socio dal:</span> {member_since}</div>
        <div><span class="label">Valida fino al:</span> {member_until}</div>
    </div>
    <div class="footer">Verifica: {verify_url}</div>
</body>
</html>
"""


def _sanitize(text: str) -> str:
    for k, v in REPLACEMENTS.items():
        text = text.replace(k, v)
    return text


def verification_url(member_number: str) -> str:
    return f"{settings.BASE_URL.rstrip('/')}/verifica?n={member_number}"


def build_card_html(affiliation: Union[Affiliation, AffiliationSnapshot]) -> str:
    if not affiliation.member_number:
        raise ValueError(f"Affiliation {affiliation.id} has no member number")
    return _sanitize(CARD_TEMPLATE.format(
        name=html.escape(f"{affiliation.first_name} {affiliation.last_name}".strip()),
        member_number=html.escape(affiliation.member_number),
        member_since=format_date_it(affiliation.member_since),
        member_until=format_date_it(affiliation.member_until),
        verify_url=html.escape(verification_url(affiliation.member_number)),
    ))


def render_card_pdf(card_html: str) -> bytes:
    out = BytesIO()
    result = pisa.CreatePDF(src=card_html, dest=out, encoding="utf-8")
    if result.err:
        raise RuntimeError("xhtml2pdf failed to render the membership card")
    return out.getvalue()


async def render_membership_card(affiliation: Union[Affiliation, AffiliationSnapshot]) -> bytes:
    """Render the card PDF off the event loop."""
    card_html = build_card_html(affiliation)
    return await asyncio.to_thread(render_card_pdf, card_html)


def get_card_renderer():
    """FastAPI dependency returning the card renderer, overridden in tests."""
    return render_membership_card
