"""OCR engine client.

Sends a document URL (or a data: URI of the upload) to the OCR API and
returns markdown plus embedded images. Only timeouts are retried.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from pdf2md.exceptions import OcrError

logger = logging.getLogger(__name__)

# 1x1 transparent PNG used by the mock document
PLACEHOLDER_PNG = (
    "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="
)


@dataclass
class OcrResult:
    markdown: str
    images: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self):
        return {'markdown': self.markdown, 'images': self.images}


def pdf_data_url(data: bytes) -> str:
    return "data:application/pdf;base64," + base64.b64encode(data).decode("ascii")


def parse_ocr_response(payload: Dict[str, Any]) -> OcrResult:
    pages = sorted(payload.get("pages") or [], key=lambda p: p.get("index", 0))
    markdown = "\n\n".join((page.get("markdown") or "").strip() for page in pages).strip()
    images = []
    for page in pages:
        for image in page.get("images") or []:
            images.append({
                "index": len(images),
                "id": image.get("id"),
                "base64": image.get("image_base64"),
            })
    return OcrResult(markdown=markdown, images=images)


def mock_result(name: str, page_count: int = 1) -> OcrResult:
    markdown = (
        f"# {name}\n\n"
        "## Introduction\n\n"
        "This document was processed without an OCR key configured. "
        "The original PDF has been converted to Markdown format.\n\n"
        "![Image 1](img-0.png)\n\n"
        f"## Notes\n\nThe PDF contained {page_count} page(s).\n"
    )
    return OcrResult(markdown=markdown, images=[{"index": 0, "id": "img-0.png", "base64": PLACEHOLDER_PNG}])


class OcrClient:
    def __init__(self, api_url: str, api_key: str, model: str, timeout: int = 120,
                 max_retries: int = 2, session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.session = session or requests.Session()

    def process_document(self, document_url: str, name: str = "document", page_count: int = 1) -> OcrResult:
        if not self.api_key:
            logger.warning("OCR_API_KEY not set, using mock data")
            return mock_result(name, page_count)

        payload = {
            "model": self.model,
            "document": {"type": "document_url", "document_url": document_url},
            "include_image_base64": True,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            except requests.Timeout as e:
                if attempt >= self.max_retries:
                    raise OcrError("OCR request timed out") from e
                logger.warning("OCR request timed out (attempt %d/%d), retrying", attempt + 1, self.max_retries + 1)
                continue
            except requests.RequestException as e:
                raise OcrError(f"OCR request failed: {e}") from e

            if response.status_code >= 400:
                raise OcrError(f"OCR API error: HTTP {response.status_code}")
            try:
                return parse_ocr_response(response.json())
            except ValueError as e:
                raise OcrError("OCR API returned invalid JSON") from e

        raise OcrError("OCR request timed out")


def init_ocr(app):
    """Attach the OCR client to the app; tests may replace it"""
    app.extensions.setdefault('ocr_client', OcrClient(
        api_url=app.config.get('OCR_API_URL', ''),
        api_key=app.config.get('OCR_API_KEY', ''),
        model=app.config.get('OCR_MODEL', ''),
        timeout=app.config.get('OCR_TIMEOUT', 120),
        max_retries=app.config.get('OCR_MAX_RETRIES', 2),
    ))
