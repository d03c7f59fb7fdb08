"""
Laudo PDF rendering using ReportLab.

Header (every page):
- Left: logo (configurable via LOGO_PATH, "LOGO" text when the file is missing)
- Right: short report id + issue date

Body:
- Title "LAUDO MÉDICO | <exam type>"
- Patient column and exam column
- Conclusion as justified paragraphs, paginated against a fixed bottom limit

Signature area:
- Digitally signed seal, or a blank line for a handwritten signature
- QR code + public link next to it when a link is available

Footer (every page):
- Verification instructions + page number
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO
from typing import List, Optional, Tuple
from xml.sax.saxutils import escape
import os

import qrcode
from PIL import Image as PILImage
from reportlab.lib import colors
from reportlab.lib.enums import TA_JUSTIFY
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from reportlab.platypus import Paragraph

from app.core.error_handling import RenderException

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = A4

MARGIN_LEFT = 30
MARGIN_RIGHT = 30
HEADER_HEIGHT = 80
CONTENT_TOP = PAGE_HEIGHT - 100
# Conclusion text never goes below this line; the rest is signature + footer
BOTTOM_LIMIT = 180
FOOTER_Y = 30

SECTION_SPACING = 20
PARAGRAPH_SPACING = 10
LABEL_LINE_HEIGHT = 18
QR_SIZE = 60

PRIMARY = colors.HexColor('#007bff')
DARK = colors.HexColor('#343a40')
GRAY = colors.HexColor('#6c757d')
TEXT = colors.HexColor('#212529')

NOT_INFORMED = "Não informado"


@dataclass
class RenderAssets:
    logo_path: Optional[str] = None
    watermark_path: Optional[str] = None


@dataclass
class RenderContext:
    """Decrypted projection of report, exam, patient and physician. Never persisted."""
    report_id: str
    conclusion: str
    physician_name: str
    physician_crm: Optional[str] = None
    exam_type: Optional[str] = None
    exam_date: Optional[datetime] = None
    patient_name: Optional[str] = None
    patient_cpf: Optional[str] = None
    birth_date: Optional[date] = None
    height: Optional[str] = None
    weight: Optional[str] = None
    heart_rate: Optional[str] = None
    pr_interval: Optional[str] = None
    qrs_duration: Optional[str] = None
    public_link: Optional[str] = None
    digitally_signed: bool = False
    signed_at: Optional[datetime] = None
    issued_at: datetime = field(default_factory=datetime.now)


def calculate_age(birth_date: date, today: Optional[date] = None) -> int:
    """Calendar age: a birthday falling today already counts."""
    today = today or date.today()
    if isinstance(birth_date, datetime):
        birth_date = birth_date.date()
    if isinstance(today, datetime):
        today = today.date()
    age = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def parse_number(raw) -> Optional[float]:
    """Parse a typed measurement ("72", "1,75", " 80.5 "). None when unusable."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = str(raw).strip().replace(",", ".")
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def format_number(value: float) -> str:
    return f"{value:g}".replace(".", ",")


def _format_date(value) -> Optional[str]:
    if isinstance(value, (date, datetime)):
        return value.strftime("%d/%m/%Y")
    return None


def _conclusion_paragraphs(conclusion: Optional[str]) -> List[str]:
    if not conclusion:
        return [NOT_INFORMED]
    return [p.strip() for p in conclusion.split("\n") if p.strip()]


class ReportRenderer:
    """
    Builds the laudo PDF. Rendering is synchronous CPU work; callers running
    inside the event loop should push it to a worker thread.
    """

    def __init__(self, assets: Optional[RenderAssets] = None):
        self.assets = assets or RenderAssets()
        self.body_style = ParagraphStyle(
            name='LaudoBody',
            fontName='Helvetica',
            fontSize=12,
            leading=17,
            textColor=TEXT,
            alignment=TA_JUSTIFY,
        )
        self.usable_width = PAGE_WIDTH - MARGIN_LEFT - MARGIN_RIGHT

    def render(self, ctx: RenderContext) -> bytes:
        try:
            return self._render(ctx)
        except RenderException:
            raise
        except Exception as e:
            logger.error(f"Failed to render report {ctx.report_id}: {e}", exc_info=True)
            raise RenderException(details={"report_id": ctx.report_id}) from e

    def _render(self, ctx: RenderContext) -> bytes:
        buf = BytesIO()
        c = canvas.Canvas(buf, pagesize=A4)
        c.setTitle(f"Laudo {ctx.report_id}")
        c.setAuthor(ctx.physician_name or "")

        self._draw_page_frame(c, ctx)
        y = self._draw_title(c, ctx)
        y = self._draw_data_columns(c, ctx, y)
        y = self._draw_conclusion(c, ctx, y)
        self._draw_signature_area(c, ctx, y)

        self._draw_footer(c)
        c.showPage()
        c.save()
        return buf.getvalue()

    # ------------------------------------------------------------------ frame

    def _draw_page_frame(self, c: canvas.Canvas, ctx: RenderContext) -> None:
        self._draw_header(c, ctx)
        self._draw_watermark(c)

    def _draw_header(self, c: canvas.Canvas, ctx: RenderContext) -> None:
        c.setFillColor(PRIMARY)
        c.rect(0, PAGE_HEIGHT - HEADER_HEIGHT, PAGE_WIDTH, HEADER_HEIGHT, stroke=0, fill=1)

        logo_height = 38
        logo_y = PAGE_HEIGHT - 15 - logo_height
        drawn = False
        logo_path = self.assets.logo_path
        if logo_path and os.path.exists(logo_path):
            try:
                with PILImage.open(logo_path) as img:
                    img_width, img_height = img.size
                logo_width = logo_height * (img_width / img_height)
                c.drawImage(logo_path, MARGIN_LEFT, logo_y, width=logo_width, height=logo_height,
                            preserveAspectRatio=True, mask='auto')
                drawn = True
            except Exception as e:
                logger.warning(f"Could not draw logo {logo_path}: {e}")
        if not drawn:
            c.setFillColor(colors.white)
            c.setFont("Helvetica-Bold", 20)
            c.drawString(MARGIN_LEFT, PAGE_HEIGHT - 50, "LOGO")

        right_x = PAGE_WIDTH - MARGIN_RIGHT
        c.setFillColor(colors.white)
        c.setFont("Helvetica-Bold", 10)
        c.drawRightString(right_x, PAGE_HEIGHT - 30, f"LAUDO #{str(ctx.report_id)[:8]}")
        c.setFont("Helvetica", 10)
        c.drawRightString(right_x, PAGE_HEIGHT - 50, f"Emitido em: {ctx.issued_at.strftime('%d/%m/%Y')}")
        c.setFillColor(TEXT)

    def _draw_watermark(self, c: canvas.Canvas) -> None:
        path = self.assets.watermark_path
        if not path or not os.path.exists(path):
            return
        size = 400
        c.saveState()
        try:
            c.setFillAlpha(0.04)
            c.drawImage(path, PAGE_WIDTH / 2 - size / 2, PAGE_HEIGHT / 2 - size / 2,
                        width=size, height=size, preserveAspectRatio=True, mask='auto')
        except Exception as e:
            logger.warning(f"Could not draw watermark {path}: {e}")
        finally:
            c.restoreState()

    def _draw_footer(self, c: canvas.Canvas) -> None:
        c.setStrokeColor(colors.lightgrey)
        c.line(MARGIN_LEFT, FOOTER_Y + 14, PAGE_WIDTH - MARGIN_RIGHT, FOOTER_Y + 14)
        c.setFont("Helvetica-Oblique", 8)
        c.setFillColor(GRAY)
        c.drawString(
            MARGIN_LEFT, FOOTER_Y,
            "Para verificar a autenticidade, acesse o link público do laudo e informe o código de acesso.",
        )
        c.drawRightString(PAGE_WIDTH - MARGIN_RIGHT, FOOTER_Y, f"Página {c.getPageNumber()}")
        c.setFillColor(TEXT)

    def _new_page(self, c: canvas.Canvas, ctx: RenderContext) -> float:
        self._draw_footer(c)
        c.showPage()
        self._draw_page_frame(c, ctx)
        return CONTENT_TOP

    # ------------------------------------------------------------------- body

    def _draw_title(self, c: canvas.Canvas, ctx: RenderContext) -> float:
        y = CONTENT_TOP
        c.setFillColor(DARK)
        c.setFont("Helvetica-Bold", 16)
        c.drawString(MARGIN_LEFT, y, f"LAUDO MÉDICO | {ctx.exam_type or 'Exame'}")
        y -= 12
        self._divider(c, y)
        return y - SECTION_SPACING

    def _divider(self, c: canvas.Canvas, y: float) -> None:
        c.setStrokeColor(GRAY)
        c.setLineWidth(1)
        c.line(MARGIN_LEFT, y, PAGE_WIDTH - MARGIN_RIGHT, y)

    def _draw_label_value(self, c: canvas.Canvas, label: str, value: str, x: float, y: float) -> float:
        c.setFillColor(TEXT)
        c.setFont("Helvetica-Bold", 10)
        c.drawString(x, y, label)
        label_width = c.stringWidth(label, "Helvetica-Bold", 10)
        c.setFont("Helvetica", 12)
        c.drawString(x + label_width + 2, y, value)
        return y - LABEL_LINE_HEIGHT

    def _patient_rows(self, ctx: RenderContext) -> List[Tuple[str, str]]:
        rows = [
            ("Nome: ", ctx.patient_name or NOT_INFORMED),
            ("CPF: ", ctx.patient_cpf or NOT_INFORMED),
        ]
        birth = _format_date(ctx.birth_date)
        rows.append(("Nascimento: ", birth or NOT_INFORMED))
        age = None
        if birth:
            age = calculate_age(ctx.birth_date, ctx.issued_at.date())
        rows.append(("Idade: ", f"{age} anos" if age is not None and age >= 0 else NOT_INFORMED))

        height = parse_number(ctx.height)
        if height is not None:
            rows.append(("Altura: ", f"{format_number(height)} cm"))
        weight = parse_number(ctx.weight)
        if weight is not None:
            rows.append(("Peso: ", f"{format_number(weight)} kg"))
        return rows

    def _exam_rows(self, ctx: RenderContext) -> List[Tuple[str, str]]:
        rows = [
            ("Data do Exame: ", _format_date(ctx.exam_date) or NOT_INFORMED),
            ("Médico: ", ctx.physician_name or NOT_INFORMED),
        ]
        for label, raw, unit in (
            ("FC: ", ctx.heart_rate, "bpm"),
            ("PR: ", ctx.pr_interval, "ms"),
            ("QRS: ", ctx.qrs_duration, "ms"),
        ):
            value = parse_number(raw)
            if value is not None:
                rows.append((label, f"{format_number(value)} {unit}"))
        return rows

    def _draw_data_columns(self, c: canvas.Canvas, ctx: RenderContext, y: float) -> float:
        patient_y = y
        for label, value in self._patient_rows(ctx):
            patient_y = self._draw_label_value(c, label, value, MARGIN_LEFT, patient_y)

        exam_y = y
        column2_x = PAGE_WIDTH / 2
        for label, value in self._exam_rows(ctx):
            exam_y = self._draw_label_value(c, label, value, column2_x, exam_y)

        y = min(patient_y, exam_y) - SECTION_SPACING / 2
        self._divider(c, y)
        return y - SECTION_SPACING

    def _draw_conclusion(self, c: canvas.Canvas, ctx: RenderContext, y: float) -> float:
        c.setFillColor(DARK)
        c.setFont("Helvetica-Bold", 14)
        c.drawString(MARGIN_LEFT, y, "ANÁLISE E CONCLUSÃO")
        y -= SECTION_SPACING

        full_page = CONTENT_TOP - BOTTOM_LIMIT
        for text in _conclusion_paragraphs(ctx.conclusion):
            para = Paragraph(escape(text), self.body_style)
            fresh_page = False
            while para is not None:
                _, height = para.wrap(self.usable_width, full_page)
                available = y - BOTTOM_LIMIT
                if height <= available:
                    para.drawOn(c, MARGIN_LEFT, y - height)
                    y -= height + PARAGRAPH_SPACING
                    break

                if height <= full_page and not fresh_page:
                    y = self._new_page(c, ctx)
                    fresh_page = True
                    continue

                # Taller than what is left: draw what fits, carry the rest over
                parts = para.split(self.usable_width, available) if available > 0 else []
                if len(parts) < 2:
                    if fresh_page:
                        # Unsplittable block on an empty page, draw it as is
                        para.drawOn(c, MARGIN_LEFT, y - height)
                        y -= height + PARAGRAPH_SPACING
                        break
                    y = self._new_page(c, ctx)
                    fresh_page = True
                    continue

                head, para = parts[0], parts[1]
                _, head_height = head.wrap(self.usable_width, available)
                head.drawOn(c, MARGIN_LEFT, y - head_height)
                y = self._new_page(c, ctx)
                fresh_page = True
        return y

    # -------------------------------------------------------------- signature

    def _draw_signature_area(self, c: canvas.Canvas, ctx: RenderContext, y: float) -> None:
        top = y - SECTION_SPACING
        center_x = PAGE_WIDTH / 2
        if ctx.digitally_signed:
            self._draw_signed_seal(c, ctx, center_x, top)
        else:
            self._draw_signature_line(c, ctx, center_x, top - 40)

        if ctx.public_link:
            self._draw_public_link(c, ctx.public_link, top)

    def _physician_line(self, ctx: RenderContext) -> str:
        name = (ctx.physician_name or "").strip()
        crm = (ctx.physician_crm or "").strip()
        return f"Dr(a). {name} - CRM {crm}" if crm else f"Dr(a). {name}"

    def _draw_signed_seal(self, c: canvas.Canvas, ctx: RenderContext, center_x: float, top: float) -> None:
        box_width, box_height = 240, 70
        x = center_x - box_width / 2
        c.setStrokeColor(PRIMARY)
        c.setLineWidth(1.2)
        c.roundRect(x, top - box_height, box_width, box_height, 6, stroke=1, fill=0)

        signed_at = ctx.signed_at or ctx.issued_at
        c.setFillColor(PRIMARY)
        c.setFont("Helvetica-Bold", 9)
        c.drawCentredString(center_x, top - 14, "DOCUMENTO ASSINADO DIGITALMENTE")
        c.setFillColor(TEXT)
        c.setFont("Helvetica", 9)
        c.drawCentredString(center_x, top - 28, self._physician_line(ctx))
        c.drawCentredString(center_x, top - 41, f"Data: {signed_at.strftime('%d/%m/%Y %H:%M')}")
        c.setFont("Helvetica-Oblique", 8)
        c.setFillColor(GRAY)
        c.drawCentredString(center_x, top - 56, "Certificado Digital ICP-Brasil")
        c.setFillColor(TEXT)

    def _draw_signature_line(self, c: canvas.Canvas, ctx: RenderContext, center_x: float, y: float) -> None:
        line_width = 6.5 * 28.35
        c.setStrokeColor(TEXT)
        c.setLineWidth(0.8)
        c.line(center_x - line_width / 2, y, center_x + line_width / 2, y)
        c.setFont("Helvetica", 9)
        c.setFillColor(TEXT)
        c.drawCentredString(center_x, y - 12, self._physician_line(ctx))

    def _draw_public_link(self, c: canvas.Canvas, link: str, top: float) -> None:
        x = PAGE_WIDTH - MARGIN_RIGHT - QR_SIZE
        qr_drawn = False
        try:
            img = qrcode.make(link, box_size=4, border=1)
            qr_buf = BytesIO()
            img.save(qr_buf, format="PNG")
            qr_buf.seek(0)
            c.drawImage(ImageReader(qr_buf), x, top - QR_SIZE, width=QR_SIZE, height=QR_SIZE)
            qr_drawn = True
        except Exception as e:
            logger.warning(f"QR code generation failed, rendering link as text: {e}")

        c.setFont("Helvetica", 6)
        c.setFillColor(GRAY)
        text_y = top - QR_SIZE - 8 if qr_drawn else top - 8
        c.drawRightString(PAGE_WIDTH - MARGIN_RIGHT, text_y, link[:90])
        c.setFillColor(TEXT)


def render_report_pdf(context: RenderContext, assets: Optional[RenderAssets] = None) -> bytes:
    """Render a laudo to PDF bytes"""
    return ReportRenderer(assets).render(context)
