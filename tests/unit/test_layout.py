"""Tests for layout analysis."""

import pytest

from formsynth.pipeline.layout import (
    CHECKBOX_CONFIDENCE,
    TEXT_MATCH_CONFIDENCE,
    analyze_layout,
    analyze_page,
    generate_field_name,
    infer_kind,
    is_required_label,
)
from formsynth.errors import ExtractionError
from formsynth.pipeline.loader import TextExtractor
from formsynth.state import FieldKind, Geometry


class TestLabelToBlankMatching:
    """Labels paired with the blank run next to them."""

    def test_label_with_blank_to_the_right(self, make_run):
        """ "Nome:" followed by underscores becomes one text field."""
        runs = [make_run("Nome:", 50, 100, width=28), make_run("______", 120, 102, width=60)]

        fields = analyze_page(runs, page=1)

        assert len(fields) == 1
        field = fields[0]
        assert field.kind is FieldKind.TEXT
        assert field.label == "Nome"
        assert field.generated_name == "nome"
        assert field.confidence == TEXT_MATCH_CONFIDENCE == 0.8
        assert field.geometry == Geometry(120, 102, 60, 12.0)
        assert field.page == 1

    def test_date_label(self, make_run):
        """A birth date label is typed as a date with a slug name."""
        runs = [make_run("Data di nascita:", 50, 200, width=80), make_run("_" * 14, 140, 200, width=80)]

        fields = analyze_page(runs, page=1)

        assert len(fields) == 1
        assert fields[0].kind is FieldKind.DATE
        assert fields[0].generated_name == "data_di_nascita"
        assert fields[0].geometry.width == 80

    def test_blank_below_label(self, make_run):
        """A blank under the label, horizontally aligned, is matched."""
        runs = [make_run("Indirizzo:", 50, 100, width=50), make_run("____", 55, 130, width=200)]

        fields = analyze_page(runs, page=1)

        assert len(fields) == 1
        assert fields[0].geometry.x == 55
        assert fields[0].geometry.y == 130

    def test_blank_above_label_is_ignored(self, make_run):
        runs = [make_run("Indirizzo:", 50, 130, width=50), make_run("____", 55, 100, width=200)]

        assert analyze_page(runs, page=1) == []

    def test_label_without_blank_is_dropped(self, make_run):
        """A label with no blank within range produces no field."""
        runs = [make_run("Cognome:", 50, 100, width=40), make_run("______", 400, 100)]

        assert analyze_page(runs, page=1) == []

    def test_right_blank_outside_vertical_tolerance(self, make_run):
        runs = [make_run("Nome:", 50, 100, width=28), make_run("______", 110, 125)]

        assert analyze_page(runs, page=1) == []

    @pytest.mark.parametrize("blank_x,matched", [(127.9, True), (128, False)])
    def test_distance_limit(self, make_run, blank_x, matched):
        """The blank must start less than 50pt after the label ends (78 here)."""
        runs = [make_run("Nome:", 50, 100, width=28), make_run("______", blank_x, 100)]

        assert len(analyze_page(runs, page=1)) == int(matched)

    @pytest.mark.parametrize("blank_y,matched", [(119.9, True), (120, False)])
    def test_right_vertical_tolerance(self, make_run, blank_y, matched):
        # x=100 is exactly 50pt from the label, so the blank can't qualify as "below".
        runs = [make_run("Nome:", 50, 100, width=28), make_run("______", 100, blank_y)]

        assert len(analyze_page(runs, page=1)) == int(matched)

    @pytest.mark.parametrize("blank_x,matched", [(51, True), (50, False)])
    def test_below_horizontal_tolerance(self, make_run, blank_x, matched):
        """A blank below must start less than 50pt to the side of the label."""
        runs = [make_run("Indirizzo:", 100, 100, width=50), make_run("____", blank_x, 115)]

        assert len(analyze_page(runs, page=1)) == int(matched)

    def test_nearest_blank_wins(self, make_run):
        runs = [
            make_run("Comune:", 50, 100, width=40),
            make_run("______", 125, 100, width=60),
            make_run("______", 100, 100, width=20),
        ]

        fields = analyze_page(runs, page=1)

        assert len(fields) == 1
        assert fields[0].geometry.x == 100

    def test_zero_size_blank_gets_default_geometry(self, make_run):
        runs = [make_run("Nome:", 50, 100, width=28), make_run("......", 100, 100, width=0, height=0)]

        fields = analyze_page(runs, page=1)

        assert fields[0].geometry == Geometry(100, 100, 100.0, 20.0)

    def test_duplicate_labels_keep_the_same_base_name(self, make_run):
        runs = [
            make_run("Data:", 50, 100, width=25), make_run("______", 90, 100),
            make_run("Data:", 50, 300, width=25), make_run("______", 90, 300),
        ]

        fields = analyze_page(runs, page=1)

        assert [f.generated_name for f in fields] == ["data", "data"]

    def test_nearby_context_is_capped(self, make_run):
        runs = [make_run("Nome:", 50, 100, width=28), make_run("______", 90, 100)]
        runs += [make_run(f"note {i}", 60 + i, 110) for i in range(8)]

        fields = analyze_page(runs, page=1)

        assert len(fields[0].nearby_context) == 5
        assert fields[0].nearby_context[0] == "Nome:"


class TestLabelDetection:
    """Which fragments count as labels."""

    @pytest.mark.parametrize("text", [
        "Provincia",
        "Codice cliente",
        "Luogo di nascita",
        "Firma ______",
        "Ragione sociale:",
    ])
    def test_label_forms(self, make_run, text):
        runs = [make_run(text, 50, 100, width=40), make_run("______", 100, 100)]

        assert len(analyze_page(runs, page=1)) == 1

    @pytest.mark.parametrize("text", ["ab", "Premessa", "x" * 100 + ":"])
    def test_not_labels(self, make_run, text):
        runs = [make_run(text, 50, 100, width=40), make_run("______", 100, 100)]

        assert analyze_page(runs, page=1) == []

    def test_blank_run_is_not_a_label(self, make_run):
        runs = [make_run("______", 50, 100, width=40), make_run("______", 100, 100)]

        assert analyze_page(runs, page=1) == []

    def test_required_marker(self, make_run):
        runs = [make_run("Cognome *:", 50, 100, width=40), make_run("______", 100, 100)]

        fields = analyze_page(runs, page=1)

        assert fields[0].required is True
        assert fields[0].label == "Cognome *"


class TestCheckboxDetection:
    """Box glyphs and bracket literals."""

    @pytest.mark.parametrize("glyph", ["☐", "■", "✔", "[ ]", "[X]"])
    def test_checkbox_takes_next_fragment_as_label(self, make_run, glyph):
        runs = [make_run(glyph, 50, 300, width=8), make_run("Accetto le condizioni", 62, 300)]

        fields = analyze_page(runs, page=2)

        assert len(fields) == 1
        box = fields[0]
        assert box.kind is FieldKind.CHECKBOX
        assert box.label == "Accetto le condizioni"
        assert box.confidence == CHECKBOX_CONFIDENCE == 0.9
        assert box.geometry == Geometry(50, 300, 15.0, 15.0)
        assert box.page == 2
        assert box.required is False

    def test_last_checkbox_gets_default_label(self, make_run):
        fields = analyze_page([make_run("☐", 50, 300)], page=1)

        assert fields[0].label == "Checkbox"
        assert fields[0].generated_name == "checkbox"

    def test_checkboxes_follow_text_fields(self, make_run):
        runs = [
            make_run("☐", 50, 50), make_run("Luce", 62, 50),
            make_run("Nome:", 50, 100, width=28), make_run("______", 90, 100),
        ]

        kinds = [f.kind for f in analyze_page(runs, page=1)]

        assert kinds == [FieldKind.TEXT, FieldKind.CHECKBOX]


class TestTypeInference:
    @pytest.mark.parametrize("label,kind", [
        ("Data attivazione", FieldKind.DATE),
        ("Indirizzo email", FieldKind.EMAIL),
        ("PEC", FieldKind.EMAIL),
        ("Cellulare", FieldKind.TEL),
        ("Consumo annuo kWh", FieldKind.NUMBER),
        ("Codice fiscale", FieldKind.NUMBER),
        ("Note", FieldKind.TEXTAREA),
        ("Comune", FieldKind.TEXT),
    ])
    def test_infer_kind(self, label, kind):
        assert infer_kind(label) is kind

    def test_date_takes_priority(self):
        assert infer_kind("Data telefono") is FieldKind.DATE


class TestNameGeneration:
    def test_slug(self):
        assert generate_field_name("Data di nascita") == "data_di_nascita"

    def test_strips_accents_and_punctuation(self):
        assert generate_field_name("Località (fornitura)") == "localit_fornitura"

    def test_truncates(self):
        assert len(generate_field_name("parola " * 20)) == 50

    def test_required(self):
        assert is_required_label("Nome (obbligatorio)")
        assert not is_required_label("Nome")


class TestAnalyzeLayout:
    """Whole-document analysis through pdfplumber."""

    def test_document_without_text(self, blank_pdf, extractor):
        result = analyze_layout(blank_pdf, extractor)

        assert result.page_count == 1
        assert result.fields == []
        assert result.text_blocks == []

    def test_detects_field_in_pdf(self, build_pdf, extractor):
        pdf = build_pdf(texts=[(1, 50, 100, "Nome:"), (1, 110, 100, "______")])

        result = analyze_layout(pdf, extractor)

        assert len(result.fields) == 1
        field = result.fields[0]
        assert field.generated_name == "nome"
        assert field.geometry.x == pytest.approx(110, abs=0.5)
        assert [b.content for b in result.text_blocks] == ["Nome:", "______"]

    def test_pages_are_numbered_from_one(self, build_pdf, extractor):
        pdf = build_pdf(texts=[(2, 50, 100, "Email:"), (2, 110, 100, "______")], pages=2)

        result = analyze_layout(pdf, extractor)

        assert result.page_count == 2
        assert result.fields[0].page == 2
        assert result.fields[0].kind is FieldKind.EMAIL

    def test_unreadable_page_does_not_stop_the_document(self, build_pdf, extractor, monkeypatch):
        pdf = build_pdf(
            texts=[(1, 50, 100, "Nome:"), (1, 110, 100, "______"), (2, 50, 100, "Email:"), (2, 110, 100, "______")],
            pages=2,
        )
        read_page = TextExtractor._read_page

        def flaky(self, page, page_num):
            if page_num == 2:
                raise ValueError("corrupt content stream")
            return read_page(self, page, page_num)

        monkeypatch.setattr(TextExtractor, "_read_page", flaky)

        result = analyze_layout(pdf, extractor)

        assert result.page_count == 2
        assert [(f.page, f.generated_name) for f in result.fields] == [(1, "nome")]

    def test_unreadable_document_raises(self, extractor):
        with pytest.raises(ExtractionError):
            analyze_layout(b"not a pdf", extractor)
