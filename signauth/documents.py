"""
Read-only access to the document being signed.

The engine never renders or stores documents; it only needs the bytes to
compute the integrity hash at send time and again at signing time.
"""
import logging
from typing import Optional, Tuple

import httpx

from signauth.config import Settings, get_settings
from signauth.exceptions import DocumentUnavailable
from signauth.utils.logging import fingerprint
from signauth.utils.security import compute_bytes_hash

logger = logging.getLogger(__name__)


class DocumentStore:
    """Fetch documents over HTTP(S) (object storage public or presigned URLs)."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def fetch_content_and_hash(self, document_url: str) -> Tuple[bytes, str]:
        """
        Download the document and return (bytes, sha256 hex).

        Raises:
            DocumentUnavailable: on transport errors or non-2xx responses
        """
        url_fp = fingerprint(document_url, "doc_")
        try:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                response = await client.get(
                    document_url,
                    timeout=self.settings.document_fetch_timeout_seconds,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Document fetch {url_fp} failed with HTTP {e.response.status_code}")
            raise DocumentUnavailable() from e
        except httpx.HTTPError as e:
            logger.error(f"Document fetch {url_fp} failed: {type(e).__name__}")
            raise DocumentUnavailable() from e

        content = response.content
        content_hash = compute_bytes_hash(content)
        logger.info(f"Fetched document {url_fp}: {len(content)} bytes, sha256={content_hash[:12]}")
        return content, content_hash


_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Get the document store singleton."""
    global _document_store
    if _document_store is None:
        _document_store = DocumentStore()
    return _document_store
