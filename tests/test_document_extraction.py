from __future__ import annotations

import asyncio
import json
from collections import Counter
from datetime import date
from decimal import Decimal

import pytest

from tfl_expenses.core.config import settings
from tfl_expenses.core.tracing import LoggingTracer
from tfl_expenses.modules.extraction.errors import ExtractionServiceError, FileProcessingError
from tfl_expenses.modules.extraction.models import PositionedToken, StatementFile, TravelEntry


def _e(iso: str, amount: str) -> TravelEntry:
    return TravelEntry(date=date.fromisoformat(iso), amount=Decimal(amount))


def _expenses(*items: tuple[str, float]) -> str:
    return json.dumps({"expenses": [{"date": d, "amount": a} for d, a in items]})


class _StubExtractor:
    def __init__(self, respond) -> None:
        self.respond = respond
        self.calls: list[dict] = []

    async def extract(self, *, prompt, text=None, image=None, mime_type=None) -> str:
        self.calls.append({"prompt": prompt, "text": text, "image": image, "mime_type": mime_type})
        await asyncio.sleep(0)
        return self.respond(prompt=prompt, text=text, image=image)


class _Page:
    def __init__(self, *lines: str) -> None:
        self.tokens = [
            PositionedToken(x=0, y=800 - 20 * i, text=line) for i, line in enumerate(lines)
        ]


def _patch_pdf(monkeypatch, pages: list[_Page]) -> None:
    from tfl_expenses.modules.extraction import service as extraction_service

    class _Reader:
        def __init__(self, _stream) -> None:
            self.pages = pages

    def _no_ocr(_page) -> str:
        raise AssertionError("OCR should not run")

    monkeypatch.setattr(extraction_service, "PdfReader", _Reader)
    monkeypatch.setattr(extraction_service, "page_tokens", lambda page: page.tokens)
    monkeypatch.setattr(extraction_service, "ocr_pdf_page", _no_ocr)
    monkeypatch.setattr(settings, "ocr_min_text_chars", 0)


def test_pdf_chunks_are_folded_and_merged_with_heuristic_pass(monkeypatch):
    from tfl_expenses.modules.extraction.service import extract_document

    _patch_pdf(
        monkeypatch,
        [
            _Page("Tuesday 14 October 2025", "Bank to Oxford Circus £2.80"),
            _Page("Notes page two"),
            _Page("2025-10-15", "Victoria to Brixton £1.70"),
            _Page("Notes page four"),
            _Page("Notes page five"),
            _Page("Notes page six"),
        ],
    )

    def _respond(*, prompt, text, image):
        if "Oxford Circus" in text:
            return _expenses(("2025-10-14", 2.8), ("2025-10-14", 2.8))
        if "page five" in text:
            return "I could not read this chunk"
        return _expenses()

    extractor = _StubExtractor(_respond)
    messages: list[str] = []

    entries = asyncio.run(
        extract_document(
            StatementFile(name="oct.pdf", body=b"%PDF-1.7 stub", content_type="application/pdf"),
            extractor=extractor,
            on_progress=messages.append,
            tracer=LoggingTracer(),
        )
    )

    assert Counter(entries) == Counter(
        [_e("2025-10-14", "2.80"), _e("2025-10-14", "2.80"), _e("2025-10-15", "1.70")]
    )
    assert len(extractor.calls) == 3
    assert "This is chunk 1 of 3 from the document." in extractor.calls[0]["prompt"]
    assert extractor.calls[0]["text"] == (
        "Tuesday 14 October 2025\nBank to Oxford Circus £2.80\n\nNotes page two"
    )
    assert "Processing 3 chunks in parallel..." in messages
    chunk_messages = [m for m in messages if m.startswith("Processing chunk")]
    assert chunk_messages == [
        "Processing chunk 1 of 3...",
        "Processing chunk 2 of 3...",
        "Processing chunk 3 of 3...",
    ]
    assert messages[-1] == "Found 3 journey entries."


def test_small_pdf_uses_single_chunk_with_document_prompt(monkeypatch):
    from tfl_expenses.modules.extraction.ai import DOCUMENT_PROMPT
    from tfl_expenses.modules.extraction.service import extract_document

    _patch_pdf(monkeypatch, [_Page("Nothing useful"), _Page("Still nothing")])
    extractor = _StubExtractor(lambda **_: _expenses())
    messages: list[str] = []

    entries = asyncio.run(
        extract_document(
            StatementFile(name="empty.pdf", body=b"%PDF-1.7 stub"),
            extractor=extractor,
            on_progress=messages.append,
        )
    )

    assert entries == []
    assert [c["prompt"] for c in extractor.calls] == [DOCUMENT_PROMPT]
    assert "Processing 1 chunk in parallel..." in messages
    assert messages[-1] == "No journey data found."


def test_chunk_service_failure_fails_the_file(monkeypatch):
    from tfl_expenses.modules.extraction.service import extract_document

    _patch_pdf(monkeypatch, [_Page(f"page {i}") for i in range(6)])

    def _respond(*, prompt, text, image):
        if "page 2" in text:
            raise ExtractionServiceError("Extraction service returned HTTP 503")
        return _expenses()

    with pytest.raises(FileProcessingError) as excinfo:
        asyncio.run(
            extract_document(
                StatementFile(name="big.pdf", body=b"%PDF-1.7 stub"),
                extractor=_StubExtractor(_respond),
            )
        )

    assert str(excinfo.value) == (
        "Failed to process big.pdf. Reason: Extraction service returned HTTP 503"
    )
    assert excinfo.value.file_name == "big.pdf"


def test_text_document_merges_ai_and_heuristic_passes():
    from tfl_expenses.modules.extraction.service import extract_document

    text = "2025-10-14\nBank £2.80\nBank £2.80\nDaily cap £8.10\n2025-10-15\nVictoria £1.70\n"
    extractor = _StubExtractor(lambda **_: _expenses(("2025-10-14", 2.8), ("2025-10-16", 3.1)))

    entries = asyncio.run(
        extract_document(
            StatementFile(name="oct.txt", body=text.encode(), content_type="text/plain"),
            extractor=extractor,
        )
    )

    assert Counter(entries) == Counter(
        [
            _e("2025-10-14", "2.80"),
            _e("2025-10-14", "2.80"),
            _e("2025-10-16", "3.10"),
            _e("2025-10-15", "1.70"),
        ]
    )
    assert extractor.calls[0]["text"] == text


@pytest.mark.parametrize(
    ("content", "reason"),
    [
        ("this is not json", "unexpected format"),
        ('{"journeys": []}', "unable to find any valid expense data"),
        (
            '{"expenses": [{"date": "14/10/2025", "amount": 2.8}]}',
            "none of it was in the correct format",
        ),
    ],
)
def test_whole_document_malformed_output_is_reported(content, reason):
    from tfl_expenses.modules.extraction.service import extract_document

    with pytest.raises(FileProcessingError, match=reason) as excinfo:
        asyncio.run(
            extract_document(
                StatementFile(name="notes.txt", body=b"nothing to see", content_type="text/plain"),
                extractor=_StubExtractor(lambda **_: content),
            )
        )
    assert str(excinfo.value).startswith("Failed to process notes.txt. Reason: ")


def test_image_is_sent_as_image_without_heuristic_pass():
    from tfl_expenses.modules.extraction.service import extract_document

    body = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
    extractor = _StubExtractor(lambda **_: _expenses(("2025-10-14", 2.8)))

    entries = asyncio.run(
        extract_document(
            StatementFile(name="scan.png", body=body, content_type=None),
            extractor=extractor,
        )
    )

    assert entries == [_e("2025-10-14", "2.80")]
    assert extractor.calls[0]["image"] == body
    assert extractor.calls[0]["mime_type"] == "image/png"
    assert extractor.calls[0]["text"] is None


def test_csv_is_parsed_locally_without_extractor():
    from tfl_expenses.modules.extraction.service import extract_document

    messages: list[str] = []
    entries = asyncio.run(
        extract_document(
            StatementFile(
                name="history.csv", body=b"Date,Amount\n14/10/2025,\xc2\xa32.80\n2025-10-15,1.70"
            ),
            on_progress=messages.append,
        )
    )

    assert entries == [_e("2025-10-14", "2.80"), _e("2025-10-15", "1.70")]
    assert messages == ["Processing CSV...", "Found 2 entries from CSV."]


def test_ai_paths_require_configured_api_key(monkeypatch):
    from tfl_expenses.modules.extraction.service import extract_document

    monkeypatch.setattr(settings, "openai_api_key", None)

    with pytest.raises(FileProcessingError, match="OPENAI_API_KEY is not configured"):
        asyncio.run(extract_document(StatementFile(name="a.txt", body=b"2025-10-14\n2.80")))


def test_bad_and_unsupported_uploads_fail():
    from tfl_expenses.modules.extraction.service import extract_document

    with pytest.raises(FileProcessingError, match="expected PDF header"):
        asyncio.run(
            extract_document(
                StatementFile(name="x.pdf", body=b"\x00\x01\x02", content_type="application/pdf")
            )
        )
    with pytest.raises(FileProcessingError, match="Unsupported file type"):
        asyncio.run(extract_document(StatementFile(name="x.bin", body=b"\x00\x01\x02")))


def test_detect_file_kind():
    from tfl_expenses.modules.extraction.service import detect_file_kind

    assert detect_file_kind(filename="a.csv", content_type=None, body=b"%PDF") == "csv"
    assert detect_file_kind(filename="a", content_type="text/csv", body=b"x") == "csv"
    assert detect_file_kind(filename="a.bin", content_type=None, body=b"%PDF-1.4") == "pdf"
    assert detect_file_kind(filename="a", content_type=None, body=b"\xff\xd8\xff\xe0") == "image"
    assert (
        detect_file_kind(filename="statement.pdf", content_type=None, body=b"Bank 2.80\n")
        == "text"
    )


def test_chunk_with_oversized_amount_keeps_valid_entries():
    from tfl_expenses.core.tracing import NoopTracer
    from tfl_expenses.modules.extraction.models import DocumentChunk, PageText
    from tfl_expenses.modules.extraction.service import extract_chunk

    content = (
        '{"expenses":[{"date":"2025-10-14","amount":' + "9" * 400 + "},"
        '{"date":"2025-10-15","amount":1.7}]}'
    )
    chunk = DocumentChunk(index=0, pages=(PageText.from_text(1, "2025-10-15 £1.70"),))

    out = asyncio.run(
        extract_chunk(
            chunk,
            2,
            extractor=_StubExtractor(lambda **_: content),
            on_progress=lambda _msg: None,
            tracer=NoopTracer(),
        )
    )

    assert out.entries == (_e("2025-10-15", "1.70"),)


def test_single_byte_encoded_text_statement_is_extracted():
    from tfl_expenses.modules.extraction.service import extract_document

    text = "2025-10-14\nBank to Oxford Circus £2.80\n"
    extractor = _StubExtractor(lambda **_: _expenses(("2025-10-14", 2.8)))

    entries = asyncio.run(
        extract_document(
            StatementFile(name="oct.txt", body=text.encode("cp1252"), content_type="text/plain"),
            extractor=extractor,
        )
    )

    assert entries == [_e("2025-10-14", "2.80")]
    assert extractor.calls[0]["text"] == text


def test_text_detection_tolerates_encodings_and_declared_types():
    from tfl_expenses.modules.extraction.service import detect_file_kind

    cp1252 = "2025-10-14\nBank £2.80".encode("cp1252")
    assert detect_file_kind(filename="oct.txt", content_type="text/plain", body=cp1252) == "text"

    # the two-byte pound sign straddles the sniffed prefix
    straddled = ("a" * 4095 + "£2.80\n").encode("utf-8")
    assert detect_file_kind(filename="oct", content_type=None, body=straddled) == "text"

    control_heavy = b"\x01\x02\x03\x04" * 10
    assert detect_file_kind(filename="x.bin", content_type=None, body=control_heavy) == "unknown"
    assert (
        detect_file_kind(filename="notes.txt", content_type=None, body=control_heavy) == "text"
    )
    assert detect_file_kind(filename="notes.txt", content_type="text/plain", body=b"") == "unknown"


def test_declared_image_type_is_routed_as_image():
    from tfl_expenses.modules.extraction.service import detect_file_kind, extract_document

    body = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 16
    assert detect_file_kind(filename="scan.heic", content_type="image/heic", body=body) == "image"

    extractor = _StubExtractor(lambda **_: _expenses(("2025-10-14", 2.8)))
    asyncio.run(
        extract_document(
            StatementFile(name="scan.heic", body=body, content_type="image/heic"),
            extractor=extractor,
        )
    )

    assert extractor.calls[0]["mime_type"] == "image/heic"
    assert extractor.calls[0]["image"] == body
