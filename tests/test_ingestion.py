"""Tests for the document ingestion pipeline."""

from app.models.clinical import DocumentStrategy
from app.services.errors import FileReadError, UnsupportedFileTypeError
from app.services.ingestion import (
    DocumentIngestionPipeline,
    DocumentUpload,
    IngestionState,
    empty_extraction_placeholder,
    normalize_mime,
    to_data_uri,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def _pipeline(script, sleep_recorder, extract=None, condense=None) -> DocumentIngestionPipeline:
    return DocumentIngestionPipeline(
        extract=extract or script("unused"),
        condense=condense or script("unused"),
        delays=[2, 4, 8],
        sleep=sleep_recorder,
    )


class TestHelpers:
    def test_normalize_mime(self):
        assert normalize_mime("Text/Plain; charset=\"latin-1\"") == ("text/plain", {"charset": "latin-1"})
        assert normalize_mime(None) == ("", {})
        assert normalize_mime("application/pdf") == ("application/pdf", {})

    def test_data_uri(self):
        assert to_data_uri(b"hi", "image/png") == "data:image/png;base64,aGk="


class TestUnsupported:
    async def test_docx_rejected_without_any_call(self, script, sleep_recorder):
        extract = script("should not run")
        pipeline = _pipeline(script, sleep_recorder, extract=extract)
        result = await pipeline.ingest(DocumentUpload("notes.docx", DOCX_MIME, b"PK\x03\x04"))

        assert result.state == IngestionState.FAILED
        assert result.clinical_text == ""
        assert isinstance(result.error, UnsupportedFileTypeError)
        assert result.error.kind == "unsupported"
        assert DOCX_MIME in result.error.message
        assert extract.call_count == 0

    async def test_missing_mime_rejected(self, script, sleep_recorder):
        result = await _pipeline(script, sleep_recorder).ingest(DocumentUpload("blob", "", b"x"))
        assert isinstance(result.error, UnsupportedFileTypeError)


class TestPlainText:
    async def test_text_decoded_locally(self, script, sleep_recorder):
        extract = script("unused")
        pipeline = _pipeline(script, sleep_recorder, extract=extract)
        content = "Paciente con fiebre y tos desde hace tres días.".encode("utf-8")
        result = await pipeline.ingest(DocumentUpload("notes.txt", "text/plain", content))

        assert result.state == IngestionState.DONE
        assert result.clinical_text == "Paciente con fiebre y tos desde hace tres días."
        assert result.error is None
        assert extract.call_count == 0

    async def test_utf8_bom_stripped(self, script, sleep_recorder):
        content = "\ufeffFever".encode("utf-8")
        result = await _pipeline(script, sleep_recorder).ingest(
            DocumentUpload("notes.txt", "text/plain", content)
        )
        assert result.clinical_text == "Fever"

    async def test_declared_charset(self, script, sleep_recorder):
        content = "días".encode("latin-1")
        result = await _pipeline(script, sleep_recorder).ingest(
            DocumentUpload("notes.txt", "text/plain; charset=latin-1", content)
        )
        assert result.clinical_text == "días"

    async def test_undecodable_text(self, script, sleep_recorder):
        result = await _pipeline(script, sleep_recorder).ingest(
            DocumentUpload("notes.txt", "text/plain", b"\xff\xfe\xfa bad")
        )
        assert result.state == IngestionState.FAILED
        assert isinstance(result.error, FileReadError)
        assert result.error.kind == "read"
        assert result.clinical_text == ""


class TestDocuments:
    async def test_image_extraction(self, script, sleep_recorder):
        extract = script("Patient presents with fever.")
        pipeline = _pipeline(script, sleep_recorder, extract=extract)
        result = await pipeline.ingest(DocumentUpload("scan.png", "image/png", PNG_BYTES))

        assert result.state == IngestionState.DONE
        assert result.clinical_text == "Patient presents with fever."
        assert result.attempts == 1
        assert result.strategy == DocumentStrategy.STANDARD
        data_uri, mime = extract.calls[0]
        assert data_uri == to_data_uri(PNG_BYTES, "image/png")
        assert mime == "image/png"

    async def test_condense_strategy_uses_condense_operation(self, script, sleep_recorder):
        extract = script("verbatim")
        condense = script("condensed notes")
        pipeline = _pipeline(script, sleep_recorder, extract=extract, condense=condense)
        result = await pipeline.ingest(
            DocumentUpload("chart.pdf", "application/pdf", b"%PDF-1.4"),
            DocumentStrategy.CONDENSE,
        )

        assert result.clinical_text == "condensed notes"
        assert result.strategy == DocumentStrategy.CONDENSE
        assert condense.call_count == 1
        assert extract.call_count == 0

    async def test_empty_extraction_gives_placeholder(self, script, sleep_recorder):
        pipeline = _pipeline(script, sleep_recorder, extract=script("   "))
        result = await pipeline.ingest(DocumentUpload("scan.png", "image/png", PNG_BYTES))

        assert result.state == IngestionState.DONE
        assert result.error is None
        assert result.clinical_text == empty_extraction_placeholder("image/png")

    async def test_overloaded_after_all_attempts(self, script, sleep_recorder):
        extract = script(Exception("503 overloaded"))
        pipeline = _pipeline(script, sleep_recorder, extract=extract)
        notices = []
        result = await pipeline.ingest(
            DocumentUpload("scan.png", "image/png", PNG_BYTES), on_retry=notices.append
        )

        assert extract.call_count == 4
        assert result.attempts == 4
        assert sleep_recorder.delays == [2, 4, 8]
        assert [n.next_attempt for n in notices] == [2, 3, 4]
        assert result.state == IngestionState.FAILED
        assert result.error.kind == "overloaded"
        assert "4 attempts" in result.error.message
        assert result.clinical_text.startswith("[Text extraction failed:")

    async def test_recovers_after_transient_error(self, script, sleep_recorder):
        extract = script(Exception("rate limit"), "text after retry")
        result = await _pipeline(script, sleep_recorder, extract=extract).ingest(
            DocumentUpload("scan.jpg", "image/jpeg", b"jpeg")
        )
        assert result.clinical_text == "text after retry"
        assert result.attempts == 2
        assert sleep_recorder.delays == [2]

    async def test_permanent_error_is_communication_failure(self, script, sleep_recorder):
        extract = script(ValueError("invalid base64 payload"))
        result = await _pipeline(script, sleep_recorder, extract=extract).ingest(
            DocumentUpload("scan.png", "image/png", PNG_BYTES)
        )

        assert extract.call_count == 1
        assert result.attempts == 1
        assert result.state == IngestionState.FAILED
        assert result.error.kind == "communication"
        assert "invalid base64 payload" in result.clinical_text
