"""CLI entry point: make a flat PDF form fillable and optionally map data onto it."""

import argparse
import dataclasses
import json
import logging
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from formsynth.config import EnvConfigStore
from formsynth.pipeline.form import has_interactive_fields
from formsynth.pipeline.labels import analyze_fields, backfill, extract_field_contexts
from formsynth.pipeline.layout import analyze_layout
from formsynth.pipeline.loader import TextExtractor
from formsynth.pipeline.mapper import map_data_to_fields
from formsynth.pipeline.synthesizer import create_interactive_fields

logger = logging.getLogger(__name__)


def run_pipeline(pdf_path: str, output_path: str, data: dict | None = None, analyze: bool = False) -> dict:
    """Synthesize fields (or backfill labels if the PDF has some), then map data."""
    extractor = TextExtractor()
    source = Path(pdf_path).read_bytes()
    state: dict = {"pdf_path": pdf_path, "output_path": None, "mappings": [], "analysis": []}

    if has_interactive_fields(source):
        logger.info("%s already has form fields, backfilling labels", pdf_path)
        state["mode"] = "backfill"
        state["fields"] = backfill(source, extractor)
        if analyze:
            contexts = extract_field_contexts(source, extractor)
            state["analysis"] = analyze_fields(contexts, EnvConfigStore())
    else:
        analysis = analyze_layout(source, extractor)
        state["mode"] = "synthesize"
        state["page_count"] = analysis.page_count
        state["detected"] = len(analysis.fields)
        state["fields"] = create_interactive_fields(pdf_path, output_path, analysis.fields)
        state["output_path"] = output_path

    if data:
        state["mappings"] = map_data_to_fields(data, state["fields"], EnvConfigStore())

    return state


_RECORD_LISTS = ("fields", "mappings", "analysis")


def _report(state: dict) -> dict:
    return {
        k: [dataclasses.asdict(item) for item in v] if k in _RECORD_LISTS else v
        for k, v in state.items()
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Add fillable fields to a flat PDF form.")
    parser.add_argument("pdf_path", help="Path to the source PDF")
    parser.add_argument("--output", "-o", default="output/form.pdf")
    parser.add_argument("--report", default="output/fields.json")
    parser.add_argument("--data", help="Path to a JSON object of values to map onto the fields")
    parser.add_argument("--analyze", action="store_true",
                        help="For PDFs that already have fields, infer label, type and mapping hint per field")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    pdf_path = Path(args.pdf_path)
    if not pdf_path.exists():
        logger.error("File not found: %s", pdf_path)
        return 1

    data = None
    if args.data:
        with open(args.data, encoding="utf-8") as fh:
            data = json.load(fh)

    output_path = Path(args.output)
    report_path = Path(args.report)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)

    start = time.time()
    logger.info("Processing %s", pdf_path)

    try:
        state = run_pipeline(str(pdf_path), str(output_path), data, analyze=args.analyze)
    except Exception:
        logger.exception("Pipeline failed")
        return 1

    with open(report_path, "w", encoding="utf-8") as fh:
        json.dump(_report(state), fh, indent=2, ensure_ascii=False, default=str)

    logger.info("Done: %d fields, %d mappings -> %s (%.1fs)",
                len(state["fields"]), len(state["mappings"]), report_path, time.time() - start)
    return 0


if __name__ == "__main__":
    sys.exit(main())
