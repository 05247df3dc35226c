"""Document lifecycle: upload, status updates, listing and cascading delete."""

import logging
import re
from pathlib import Path
from typing import List, Optional

from .errors import DocumentNotFoundError, StorageError
from .models import Document, DocumentStatus
from .storage import ObjectStorage
from .store import Store

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
_FILENAME_SAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    """Return a storage-safe filename, keeping the extension."""
    sanitized = Path(filename or "upload.pdf").name
    sanitized = _FILENAME_SAFE_CHARS_RE.sub("_", sanitized)
    return sanitized.strip("._") or "upload.pdf"


def storage_path(owner_id: str, document_id: str, file_name: str) -> str:
    return f"{owner_id}/{document_id}/{sanitize_filename(file_name)}"


def upload_document(
    store: Store,
    storage: ObjectStorage,
    owner_id: str,
    file_name: str,
    data: bytes,
    content_type: str = PDF_CONTENT_TYPE
) -> Document:
    """
    Store an uploaded PDF and create its document record.

    The row is created as ``uploading``, the bytes are written to
    ``{owner}/{document}/{file}``, then the row gets its storage pointer and
    moves to ``processing``. If the upload fails the row is deleted.

    Args:
        store: Document store
        storage: Object storage
        owner_id: Identity of the uploader
        file_name: Original file name
        data: PDF bytes
        content_type: MIME type reported by the caller

    Returns:
        The document in ``processing`` state

    Raises:
        ValueError: if the payload is not a PDF
        StorageError: if the object could not be stored
    """
    if content_type != PDF_CONTENT_TYPE or not data:
        raise ValueError("Please provide a valid PDF file.")

    document = store.create_document(owner_id, file_name, len(data), status="uploading")
    path = storage_path(owner_id, document.id, file_name)

    try:
        storage.upload(path, data, content_type=content_type)
    except StorageError:
        logger.error(f"Storage upload failed for {document.id}; removing document row")
        store.delete_document(document.id)
        raise

    document = store.update_document(document.id, status="processing", file_url=path)
    logger.info(f"Upload complete, document: {document.id}")
    return document


def list_documents(store: Store, owner_id: str) -> List[Document]:
    """All documents of an owner, most recently created first."""
    return store.list_documents(owner_id)


def update_document_status(
    store: Store,
    document_id: str,
    status: DocumentStatus,
    total_pages: Optional[int] = None
) -> bool:
    """Update status (and optionally page count); False if the update failed."""
    try:
        store.update_document(document_id, status=status, total_pages=total_pages)
    except DocumentNotFoundError:
        logger.error(f"Cannot update status of missing document {document_id}")
        return False
    except Exception as e:
        logger.error(f"Failed to update status of {document_id} to {status}: {e}")
        return False
    return True


def delete_document(store: Store, storage: ObjectStorage, document_id: str) -> bool:
    """Remove the stored PDF, then the row; chunks and cached insights cascade."""
    document = store.get_document(document_id)
    if document is None:
        return False

    if document.file_url:
        try:
            storage.remove(document.file_url)
        except StorageError as e:
            logger.warning(f"Could not remove stored object {document.file_url}: {e}")

    return store.delete_document(document_id)
