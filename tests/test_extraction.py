"""
Tests for execution/case_intel/extraction.py

Covers: PDF extraction with page markers (PyMuPDF), plain text, images,
unsupported types, MIME aliases, LocalBlobStore.
"""

import pytest


def _pdf_bytes(pages):
    import fitz
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


class TestTextExtractor:

    def test_pdf_pages_marked(self):
        from execution.case_intel.extraction import TextExtractor
        extracted = TextExtractor().extract(_pdf_bytes(["Hello world", "Second page here"]), "application/pdf")

        assert extracted.page_count == 2
        assert extracted.text.startswith("[Page 1]\nHello world")
        assert "[Page 2]\nSecond page here" in extracted.text
        assert extracted.word_count == 5
        assert extracted.is_scanned is True

    def test_pdf_with_enough_words_is_not_scanned(self):
        from execution.case_intel.extraction import TextExtractor
        # insert_text does not wrap, so put ten words on each line
        lines = "\n".join(
            " ".join(f"w{i}" for i in range(start, start + 10)) for start in range(0, 60, 10)
        )
        extracted = TextExtractor().extract(_pdf_bytes([lines]), "pdf")
        assert extracted.word_count == 60
        assert extracted.is_scanned is False

    def test_unreadable_pdf(self):
        from execution.case_intel.extraction import ExtractionError, TextExtractor
        with pytest.raises(ExtractionError) as exc_info:
            TextExtractor().extract(b"definitely not a pdf", "application/pdf")
        assert exc_info.value.mime_type == "application/pdf"

    def test_plain_text(self, sample_statement_text):
        from execution.case_intel.extraction import TextExtractor
        extracted = TextExtractor().extract(sample_statement_text.encode("utf-8"), "text/plain")
        assert extracted.text == sample_statement_text
        assert extracted.page_count == 1
        assert extracted.is_scanned is False
        assert extracted.word_count == len(sample_statement_text.split())

    def test_invalid_utf8(self):
        from execution.case_intel.extraction import ExtractionError, TextExtractor
        with pytest.raises(ExtractionError):
            TextExtractor().extract(b"\xff\xfe\xfa", "txt")

    def test_image_is_scanned_and_empty(self):
        from execution.case_intel.extraction import TextExtractor
        extracted = TextExtractor().extract(b"\x89PNG", "image/png")
        assert extracted.text == ""
        assert extracted.is_scanned is True

    def test_unsupported_type(self):
        from execution.case_intel.extraction import ExtractionError, TextExtractor
        with pytest.raises(ExtractionError, match="Unsupported file type"):
            TextExtractor().extract(b"PK", "docx")

    @pytest.mark.parametrize("raw,expected", [
        (None, "application/pdf"),
        ("PDF", "application/pdf"),
        ("jpg", "image/jpeg"),
        ("Text/Plain", "text/plain"),
        ("zip", "application/zip"),
    ])
    def test_mime_aliases(self, raw, expected):
        from execution.case_intel.extraction import _normalize_mime_type
        assert _normalize_mime_type(raw) == expected


class TestLocalBlobStore:

    def test_reads_relative_to_root(self, tmp_path, document_factory):
        from execution.case_intel.extraction import LocalBlobStore
        (tmp_path / "case").mkdir()
        (tmp_path / "case" / "a.txt").write_bytes(b"hello")
        doc = document_factory(storage_path="case/a.txt")
        assert LocalBlobStore(str(tmp_path)).fetch(doc) == b"hello"

    def test_root_from_env(self, tmp_path, monkeypatch):
        from execution.case_intel.extraction import LocalBlobStore
        monkeypatch.setenv("DOCUMENT_ROOT", str(tmp_path))
        assert LocalBlobStore().root == tmp_path

    def test_missing_storage_path(self, tmp_path, document_factory):
        from execution.case_intel.extraction import ExtractionError, LocalBlobStore
        with pytest.raises(ExtractionError, match="no storage path"):
            LocalBlobStore(str(tmp_path)).fetch(document_factory())

    def test_missing_file(self, tmp_path, document_factory):
        from execution.case_intel.extraction import ExtractionError, LocalBlobStore
        with pytest.raises(ExtractionError, match="Failed to read"):
            LocalBlobStore(str(tmp_path)).fetch(document_factory(storage_path="nope.pdf"))
