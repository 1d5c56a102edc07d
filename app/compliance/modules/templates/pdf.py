from __future__ import annotations

import logging

from app.compliance.errors import PdfUnavailable

logger = logging.getLogger(__name__)

A4_STYLESHEET = "@page { size: A4; margin: 10mm; }"


def html_to_pdf(html: str) -> bytes:
    try:
        from weasyprint import CSS, HTML  # type: ignore
    except ImportError as e:
        raise PdfUnavailable("PDF generation requires WeasyPrint. Install weasyprint.") from e

    try:
        pdf_bytes = HTML(string=html).write_pdf(stylesheets=[CSS(string=A4_STYLESHEET)])
    except Exception as e:
        logger.error("PDF generation failed: %s", e)
        raise PdfUnavailable(f"Failed to generate PDF: {e}") from e
    logger.debug("Generated PDF: %s bytes", len(pdf_bytes))
    return pdf_bytes
