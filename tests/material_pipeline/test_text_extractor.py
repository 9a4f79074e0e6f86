import io

import pytest
import requests
from pypdf import PdfWriter

from pipeline_fakes import FakeGateway
from services.material_pipeline import text_extractor
from services.material_pipeline.errors import (
    ContentValidationError,
    MaterialNotFoundError,
    TransientProviderError,
)
from services.material_pipeline.text_extractor import TextExtractor


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


def test_plain_text_file_is_read_as_utf8(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("  Lift opposes weight.\nThrust opposes drag.  ", encoding="utf-8")

    text = TextExtractor().extract_text(str(path), "document")

    assert text == "Lift opposes weight.\nThrust opposes drag."


def test_file_uri_is_resolved(tmp_path):
    path = tmp_path / "notes.md"
    path.write_text("# Forces", encoding="utf-8")

    assert TextExtractor().extract_text(path.as_uri(), "document") == "# Forces"


def test_blank_document_is_a_validation_error(tmp_path):
    path = tmp_path / "blank.txt"
    path.write_text(" \n\t ", encoding="utf-8")

    with pytest.raises(ContentValidationError):
        TextExtractor().extract_text(str(path), "document")


def test_missing_blob_is_not_found(tmp_path):
    with pytest.raises(MaterialNotFoundError):
        TextExtractor().extract_text(str(tmp_path / "nope.txt"), "document")


def test_pdf_without_text_is_a_validation_error(tmp_path):
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    path = tmp_path / "scan.pdf"
    path.write_bytes(buffer.getvalue())

    with pytest.raises(ContentValidationError):
        TextExtractor().extract_text(str(path), "document")


def test_corrupt_pdf_is_a_validation_error(tmp_path):
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"%PDF-1.4\nthis is not really a pdf")

    with pytest.raises(ContentValidationError):
        TextExtractor().extract_text(str(path), "document")


def test_image_goes_through_the_vision_gateway(tmp_path):
    path = tmp_path / "diagram.png"
    path.write_bytes(b"\x89PNG\r\n")

    text = TextExtractor(gateway=FakeGateway()).extract_text(str(path), "image")

    assert text == "text read from an image"


def test_image_without_gateway_is_rejected(tmp_path):
    path = tmp_path / "diagram.png"
    path.write_bytes(b"\x89PNG\r\n")

    with pytest.raises(ContentValidationError):
        TextExtractor().extract_text(str(path), "image")


def test_http_blob_is_downloaded(monkeypatch):
    captured = {}

    def fake_get(url, timeout, headers):
        captured.update(url=url, timeout=timeout)
        return FakeResponse(content=b"Remote notes", headers={"Content-Type": "text/plain; charset=utf-8"})

    monkeypatch.setattr(text_extractor.requests, "get", fake_get)

    text = TextExtractor(timeout_seconds=7).extract_text("https://files.example.com/notes.txt", "document")

    assert text == "Remote notes"
    assert captured == {"url": "https://files.example.com/notes.txt", "timeout": 7}


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_server_side_download_failures_are_transient(monkeypatch, status_code):
    monkeypatch.setattr(text_extractor.requests, "get", lambda *a, **k: FakeResponse(status_code=status_code))

    with pytest.raises(TransientProviderError):
        TextExtractor().extract_text("https://files.example.com/notes.txt", "document")


def test_download_timeout_is_transient(monkeypatch):
    def fake_get(*args, **kwargs):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(text_extractor.requests, "get", fake_get)

    with pytest.raises(TransientProviderError):
        TextExtractor().extract_text("https://files.example.com/notes.txt", "document")


def test_missing_remote_blob_is_not_found(monkeypatch):
    monkeypatch.setattr(text_extractor.requests, "get", lambda *a, **k: FakeResponse(status_code=404))

    with pytest.raises(MaterialNotFoundError):
        TextExtractor().extract_text("https://files.example.com/gone.txt", "document")
