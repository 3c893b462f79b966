from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Sequence
from functools import partial
from io import BytesIO

from pypdf import PdfReader

from tfl_expenses.core.concurrency import run_in_batches
from tfl_expenses.core.config import settings
from tfl_expenses.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_file_context,
    reset_run_context,
    set_file_context,
    set_run_context,
)
from tfl_expenses.core.tracing import Tracer, get_tracer
from tfl_expenses.modules.extraction.ai import (
    DOCUMENT_PROMPT,
    JourneyExtractor,
    chunk_prompt,
    extractor_from_settings,
)
from tfl_expenses.modules.extraction.errors import ExtractionError, FileProcessingError
from tfl_expenses.modules.extraction.layout import page_tokens, reconstruct_lines
from tfl_expenses.modules.extraction.models import (
    DocumentChunk,
    ExtractionPass,
    PageText,
    StatementFile,
    TravelEntry,
)
from tfl_expenses.modules.extraction.ocr import ocr_pdf_page
from tfl_expenses.modules.extraction.parsers.csv_statement import parse_statement_csv
from tfl_expenses.modules.extraction.parsers.heuristic import parse_journeys_heuristically
from tfl_expenses.modules.extraction.reconcile import merge_entries_by_max_count, merge_passes
from tfl_expenses.modules.extraction.validation import (
    MalformedExtraction,
    ensure_usable,
    require_document_extraction,
    validate_extraction,
)

logger = get_logger(__name__)

ProgressCallback = Callable[[str], None]
FileProgressCallback = Callable[[str, float], None]


def _no_progress(_message: str) -> None:
    return None


def pages_per_chunk(page_count: int) -> int:
    if page_count <= 4:
        return page_count
    if page_count <= 8:
        return 2
    return 4


def chunk_pages(pages: Sequence[PageText]) -> list[DocumentChunk]:
    size = pages_per_chunk(len(pages))
    if size <= 0:
        return []
    return [
        DocumentChunk(index=idx, pages=tuple(pages[start : start + size]))
        for idx, start in enumerate(range(0, len(pages), size))
    ]


async def extract_files(
    files: Sequence[StatementFile],
    *,
    extractor: JourneyExtractor | None = None,
    on_progress: FileProgressCallback | None = None,
    tracer: Tracer | None = None,
) -> list[TravelEntry]:
    """
    Extract journeys from several statements, a bounded batch at a time.

    Fail-fast: the first failing file (in submission order) aborts the run once its
    batch has finished; results of files that did succeed are discarded.
    """
    tracer = tracer or get_tracer()
    total = len(files)
    progress = _RunProgress(total=total, sink=on_progress)
    token = set_run_context(uuid.uuid4().hex)
    start = time.monotonic()
    span = tracer.begin("process-journey-statements", {"file_count": total})
    log_event(logger, "extraction.run.start", file_count=total)
    try:
        progress.message("Preparing to analyze files...")

        async def _one(idx: int, file: StatementFile) -> list[TravelEntry]:
            progress.message(f"Analyzing file {idx + 1} of {total}: {file.name}")
            return await extract_document(
                file,
                extractor=extractor,
                on_progress=lambda msg: progress.message(f"File {idx + 1}/{total}: {msg}"),
                tracer=tracer,
            )

        results = await run_in_batches(
            [partial(_one, idx, f) for idx, f in enumerate(files)],
            limit=settings.max_concurrent_files,
            on_result=lambda _idx, _entries: progress.advance(),
        )
    except Exception as e:
        span.end(error=str(e))
        log_exception(logger, "extraction.run.error", duration_ms=monotonic_ms(start))
        raise
    finally:
        reset_run_context(token)

    entries = [entry for file_entries in results for entry in file_entries]
    span.end(entry_count=len(entries))
    log_event(
        logger,
        "extraction.run.finish",
        file_count=total,
        entry_count=len(entries),
        duration_ms=monotonic_ms(start),
    )
    return entries


async def extract_document(
    file: StatementFile,
    *,
    extractor: JourneyExtractor | None = None,
    on_progress: ProgressCallback | None = None,
    tracer: Tracer | None = None,
) -> list[TravelEntry]:
    on_progress = on_progress or _no_progress
    tracer = tracer or get_tracer()
    token = set_file_context(file.name)
    start = time.monotonic()
    span = tracer.begin(
        "extract-travel-data", {"file_name": file.name, "content_type": file.content_type}
    )
    log_event(
        logger,
        "extraction.file.start",
        content_type=file.content_type,
        byte_size=len(file.body),
    )
    try:
        kind = detect_file_kind(
            filename=file.name, content_type=file.content_type, body=file.body
        )
        log_event(logger, "extraction.file.kind", kind=kind)
        if kind == "csv":
            entries = _extract_csv(file, on_progress=on_progress, tracer=tracer)
        elif kind == "pdf":
            entries = await _extract_pdf(
                file,
                extractor=extractor or extractor_from_settings(),
                on_progress=on_progress,
                tracer=tracer,
            )
        elif kind == "image":
            entries = await _extract_whole_document(
                extractor=extractor or extractor_from_settings(),
                image=file.body,
                mime_type=_image_mime_type(file.body, file.content_type),
                on_progress=on_progress,
                tracer=tracer,
            )
        elif kind == "text":
            text = _decode_text_bytes(file.body)
            entries = await _extract_whole_document(
                extractor=extractor or extractor_from_settings(),
                text=text,
                on_progress=on_progress,
                tracer=tracer,
            )
        elif kind == "bad_pdf_upload":
            raise ExtractionError("Bad upload: expected PDF header (%PDF)")
        else:
            raise ExtractionError("Unsupported file type")
    except Exception as e:
        span.end(error=str(e))
        log_exception(logger, "extraction.file.error", duration_ms=monotonic_ms(start))
        raise FileProcessingError(file.name, str(e)) from e
    finally:
        reset_file_context(token)

    span.end(entry_count=len(entries))
    log_event(
        logger,
        "extraction.file.finish",
        file_name=file.name,
        kind=kind,
        entry_count=len(entries),
        duration_ms=monotonic_ms(start),
    )
    return entries


async def extract_chunk(
    chunk: DocumentChunk,
    total_chunks: int,
    *,
    extractor: JourneyExtractor,
    on_progress: ProgressCallback,
    tracer: Tracer,
) -> ExtractionPass:
    scope = f"chunk-{chunk.index + 1}"
    on_progress(f"Processing chunk {chunk.index + 1} of {total_chunks}...")
    start = time.monotonic()
    log_event(
        logger,
        "extraction.chunk.start",
        chunk=chunk.index + 1,
        total_chunks=total_chunks,
        pages=list(chunk.page_numbers),
    )
    span = tracer.begin(
        f"extract-{scope}", {"chunk_index": chunk.index + 1, "total_chunks": total_chunks}
    )
    try:
        content = await extractor.extract(
            prompt=chunk_prompt(chunk.index, total_chunks), text=chunk.text
        )
    finally:
        span.end()

    result = validate_extraction(content)
    if isinstance(result, MalformedExtraction):
        log_event(
            logger,
            "extraction.chunk.malformed",
            level=logging.WARNING,
            chunk=chunk.index + 1,
            reason=result.reason.value,
        )
        return ExtractionPass(method="ai", scope=scope)

    log_event(
        logger,
        "extraction.chunk.finish",
        chunk=chunk.index + 1,
        entry_count=len(result.entries),
        dropped=result.dropped,
        duration_ms=monotonic_ms(start),
    )
    return ExtractionPass(method="ai", scope=scope, entries=result.entries)


async def read_pdf_pages(body: bytes, *, on_progress: ProgressCallback) -> list[PageText]:
    reader = PdfReader(BytesIO(body))
    page_count = len(reader.pages)
    pages: list[PageText] = []
    for number, page in enumerate(reader.pages, start=1):
        on_progress(f"Reading PDF page {number} of {page_count}...")
        lines = reconstruct_lines(page_tokens(page), y_tolerance=settings.layout_y_tolerance)
        page_text = PageText(number=number, lines=tuple(lines))
        # Sparse text: most likely a scanned page.
        if len(page_text.text.strip()) < settings.ocr_min_text_chars:
            on_progress(f"Page {number} appears image-based. Starting OCR...")
            on_progress(f"OCR on page {number}: 0% complete")
            ocr_text = await asyncio.to_thread(ocr_pdf_page, page)
            on_progress(f"OCR on page {number}: 100% complete")
            if ocr_text.strip():
                page_text = PageText.from_text(number, ocr_text)
        pages.append(page_text)
    return pages


async def _extract_pdf(
    file: StatementFile,
    *,
    extractor: JourneyExtractor,
    on_progress: ProgressCallback,
    tracer: Tracer,
) -> list[TravelEntry]:
    on_progress("Processing PDF...")
    pages = await read_pdf_pages(file.body, on_progress=on_progress)
    chunks = chunk_pages(pages)
    log_event(
        logger,
        "extraction.pdf.pages",
        page_count=len(pages),
        chunk_count=len(chunks),
        pages_per_chunk=pages_per_chunk(len(pages)),
    )

    on_progress(f"Processing {len(chunks)} chunk{'s' if len(chunks) > 1 else ''} in parallel...")
    passes = await run_in_batches(
        [
            partial(
                extract_chunk,
                chunk,
                len(chunks),
                extractor=extractor,
                on_progress=on_progress,
                tracer=tracer,
            )
            for chunk in chunks
        ],
        limit=settings.max_concurrent_chunks,
    )

    merged = merge_passes(chunk_pass.entries for chunk_pass in passes)

    raw_text = "\n\n".join(page.text for page in pages)
    merged = _merge_heuristic_pass(merged, raw_text)

    on_progress(_found_message(len(merged)))
    return merged


async def _extract_whole_document(
    *,
    extractor: JourneyExtractor,
    on_progress: ProgressCallback,
    tracer: Tracer,
    text: str | None = None,
    image: bytes | None = None,
    mime_type: str | None = None,
) -> list[TravelEntry]:
    on_progress("Sending data to the extraction model for analysis...")
    span = tracer.begin("extract-document", {"has_image": image is not None})
    try:
        content = await extractor.extract(
            prompt=DOCUMENT_PROMPT, text=text, image=image, mime_type=mime_type
        )
    finally:
        span.end()

    on_progress("Validating extracted data...")
    result = require_document_extraction(validate_extraction(content))
    entries = list(result.entries)
    if text:
        entries = _merge_heuristic_pass(entries, text)
    ensure_usable(entries, raw_count=result.raw_count)

    on_progress(_found_message(len(entries)))
    return entries


def _extract_csv(
    file: StatementFile, *, on_progress: ProgressCallback, tracer: Tracer
) -> list[TravelEntry]:
    on_progress("Processing CSV...")
    span = tracer.begin("parse-csv", {"file_name": file.name})
    entries = parse_statement_csv(_decode_text_bytes(file.body))
    span.end(entry_count=len(entries))
    log_event(logger, "extraction.csv.parsed", entry_count=len(entries))
    on_progress(f"Found {len(entries)} entries from CSV.")
    return entries


def _merge_heuristic_pass(entries: list[TravelEntry], raw_text: str) -> list[TravelEntry]:
    if not raw_text.strip():
        return entries
    heuristic = parse_journeys_heuristically(raw_text)
    if not heuristic:
        return entries
    merged = merge_entries_by_max_count(entries, heuristic)
    log_event(
        logger,
        "extraction.heuristic.merged",
        ai_count=len(entries),
        heuristic_count=len(heuristic),
        merged_count=len(merged),
    )
    return merged


def _found_message(count: int) -> str:
    if count == 0:
        return "No journey data found."
    return f"Found {count} journey entries."


class _RunProgress:
    def __init__(self, *, total: int, sink: FileProgressCallback | None) -> None:
        self.total = total
        self.sink = sink
        self.completed = 0
        self.percent = 0.0

    def message(self, text: str) -> None:
        if self.sink is not None:
            self.sink(text, self.percent)

    def advance(self) -> None:
        self.completed += 1
        self.percent = (self.completed / max(1, self.total)) * 100
        self.message(f"Processed {self.completed} of {self.total} files")


def detect_file_kind(*, filename: str, content_type: str | None, body: bytes) -> str:
    ctype = (content_type or "").lower()
    name = filename.lower()
    if ctype.startswith("text/csv") or name.endswith(".csv"):
        return "csv"
    if _looks_like_pdf_bytes(body):
        return "pdf"
    if _looks_like_image_bytes(body, content_type):
        return "image"
    if _looks_like_text_bytes(body):
        return "text"

    # Never hand non-PDF bytes to PdfReader.
    if name.endswith(".pdf") or ctype.endswith("/pdf"):
        return "bad_pdf_upload"

    if body and (ctype.startswith("text/") or name.endswith(".txt")):
        return "text"

    return "unknown"


def _looks_like_pdf_bytes(body: bytes) -> bool:
    if not body:
        return False
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    return b.startswith(b"%PDF")


def _looks_like_image_bytes(body: bytes, content_type: str | None = None) -> bool:
    return _image_mime_type(body, content_type) is not None


def _image_mime_type(body: bytes, content_type: str | None) -> str | None:
    b = (body or b"").lstrip()
    if b.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if b.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if b.startswith((b"II*\x00", b"MM\x00*")):
        return "image/tiff"
    if b.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if len(b) >= 12 and b.startswith(b"RIFF") and b[8:12] == b"WEBP":
        return "image/webp"
    if b.startswith(b"BM"):
        return "image/bmp"
    ctype = (content_type or "").lower()
    if ctype.startswith("image/"):
        return ctype
    return None


def _looks_like_text_bytes(body: bytes) -> bool:
    """
    Sniff the first 4 KiB for plain text.

    High bytes are accepted whatever the encoding: UTF-8 sequences may be cut at the
    sample edge and single-byte exports (cp1252, latin-1) never decode as UTF-8.
    Only NULs and other control characters mark the body as binary.
    """
    if not body:
        return False
    sample = body[:4096]
    if b"\x00" in sample:
        return False
    stripped = sample.lstrip()
    if stripped.startswith(b"\xef\xbb\xbf"):
        stripped = stripped[3:]

    nontext = sum(1 for ch in stripped if (ch < 32 and ch not in {9, 10, 12, 13}) or ch == 127)
    return (nontext / max(1, len(stripped))) <= 0.02


def _decode_text_bytes(body: bytes) -> str:
    try:
        return body.decode("utf-8-sig")
    except UnicodeDecodeError:
        return body.decode("latin-1", errors="replace")
