"""
Raw text extraction from uploaded material blobs.
"""

from __future__ import annotations

import io
import mimetypes
import os
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import requests
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from services.material_pipeline.errors import ContentValidationError, MaterialNotFoundError, TransientProviderError
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_FETCH_TIMEOUT_SECONDS = 30
MAX_BLOB_BYTES = 50 * 1024 * 1024

_IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


class TextExtractor:
    """
    Resolves a blob reference (local path, file:// URI or http(s) URL) and
    turns it into plain text. Images go through the gateway's vision model.
    """

    def __init__(self, gateway=None, timeout_seconds: int = DEFAULT_FETCH_TIMEOUT_SECONDS) -> None:
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds

    def extract_text(self, blob_ref: str, kind: str) -> str:
        data, content_type = self.load_blob(blob_ref)
        if kind == "image":
            text = self._extract_image(data, _image_mime_type(blob_ref, content_type))
        elif _is_pdf(blob_ref, content_type, data):
            text = _extract_pdf(data)
        else:
            text = data.decode("utf-8", errors="ignore")
        text = (text or "").strip()
        if not text:
            raise ContentValidationError("No text could be extracted from the material")
        logger.info("Extracted text from blob kind=%s chars=%s", kind, len(text))
        return text

    def load_blob(self, blob_ref: str) -> Tuple[bytes, Optional[str]]:
        ref = (blob_ref or "").strip()
        parsed = urlparse(ref)
        if parsed.scheme in ("http", "https"):
            return self._download(ref)
        path = unquote(parsed.path) if parsed.scheme == "file" else ref
        if not os.path.isfile(path):
            raise MaterialNotFoundError(f"Material blob not found: {blob_ref}")
        if os.path.getsize(path) > MAX_BLOB_BYTES:
            raise ContentValidationError("Material blob is too large to process")
        with open(path, "rb") as handle:
            return handle.read(), mimetypes.guess_type(path)[0]

    def _download(self, url: str) -> Tuple[bytes, Optional[str]]:
        try:
            response = requests.get(
                url,
                timeout=self.timeout_seconds,
                headers={"User-Agent": "StudyAidMaterialPipeline/1.0"},
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientProviderError(f"Blob download failed: {exc}") from exc
        if response.status_code == 404:
            raise MaterialNotFoundError(f"Material blob not found: {url}")
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientProviderError(f"Blob download failed with HTTP {response.status_code}")
        response.raise_for_status()
        if len(response.content) > MAX_BLOB_BYTES:
            raise ContentValidationError("Material blob is too large to process")
        content_type = (response.headers.get("Content-Type") or "").split(";")[0].strip() or None
        return response.content, content_type

    def _extract_image(self, data: bytes, mime_type: str) -> str:
        if self.gateway is None:
            raise ContentValidationError("Image materials need a vision-capable LLM gateway")
        return self.gateway.extract_image_text(data, mime_type)


def _is_pdf(blob_ref: str, content_type: Optional[str], data: bytes) -> bool:
    if content_type == "application/pdf":
        return True
    if urlparse(blob_ref).path.lower().endswith(".pdf"):
        return True
    return data[:5] == b"%PDF-"


def _extract_pdf(data: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        return "\n".join(page.extract_text() or "" for page in reader.pages)
    except PdfReadError as exc:
        raise ContentValidationError(f"Unreadable PDF: {exc}") from exc


def _image_mime_type(blob_ref: str, content_type: Optional[str]) -> str:
    if content_type and content_type.startswith("image/"):
        return content_type
    ext = os.path.splitext(urlparse(blob_ref).path)[1].lower()
    return _IMAGE_MIME_TYPES.get(ext, "image/jpeg")
