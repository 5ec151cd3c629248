"""
PDF text loading: pdfplumber words with their page geometry.

Words are read with blanks kept, so a phrase like "Data di nascita:" stays one
fragment, and in content-stream order, so "the next fragment" means what the
document author typed next.
"""

import io
import logging

import pdfplumber

from formsynth.errors import ExtractionError
from formsynth.state import PageText, TextRun

logger = logging.getLogger(__name__)

_X_TOLERANCE = 3    # max horizontal gap (points) inside one fragment
_Y_TOLERANCE = 3


class TextExtractor:
    """Caller-owned handle around pdfplumber; share one per process or per job."""

    def __init__(self, x_tolerance: float = _X_TOLERANCE, y_tolerance: float = _Y_TOLERANCE):
        self.x_tolerance = x_tolerance
        self.y_tolerance = y_tolerance

    def extract(self, document: bytes) -> list[PageText]:
        """Positioned text per page.

        Only a document that cannot be opened raises ExtractionError. A page
        whose content cannot be parsed, like a page without a text layer,
        comes back with no runs.
        """
        try:
            pdf = pdfplumber.open(io.BytesIO(document))
        except Exception as exc:
            raise ExtractionError(f"Cannot read text layer: {exc}") from exc

        with pdf:
            try:
                pdf_pages = pdf.pages
            except Exception as exc:
                raise ExtractionError(f"Cannot read page tree: {exc}") from exc
            pages = [self._read_page_or_empty(page, page_num)
                     for page_num, page in enumerate(pdf_pages, start=1)]

        total = sum(len(p.runs) for p in pages)
        logger.info("Extracted %d text runs from %d pages", total, len(pages))
        return pages

    def _read_page_or_empty(self, page, page_num: int) -> PageText:
        try:
            return self._read_page(page, page_num)
        except Exception as exc:
            logger.warning("Page %d: text layer unreadable, skipped: %s", page_num, exc)
            return PageText(page=page_num, width=float(page.width), height=float(page.height))

    def _read_page(self, page, page_num: int) -> PageText:
        words = page.extract_words(
            keep_blank_chars=True,
            use_text_flow=True,
            x_tolerance=self.x_tolerance,
            y_tolerance=self.y_tolerance,
        )
        runs = tuple(
            TextRun(
                content=w["text"],
                x=float(w["x0"]),
                y=float(w["top"]),
                width=float(w["x1"] - w["x0"]),
                height=float(w["bottom"] - w["top"]),
                page=page_num,
            )
            for w in words
            if w["text"]
        )
        if not runs:
            logger.debug("Page %d has no extractable text", page_num)
        return PageText(page=page_num, width=float(page.width), height=float(page.height), runs=runs)
