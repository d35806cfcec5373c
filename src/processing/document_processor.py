"""
Document Processor for the Compliance Notice Tracking System.
Turns message attachments (PDF, DOCX, TXT) into plain text for extraction.
"""

import io
import logging
from pathlib import Path
from typing import Optional
from zipfile import BadZipFile

import yaml
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from src.core.models import Attachment
from src.utils.s3_utility import get_s3_file

logger = logging.getLogger(__name__)


class AttachmentError(ValueError):
    """Attachment is in an unsupported format or cannot be parsed."""


class DocumentProcessor:
    """Extracts text from notice attachments."""

    def __init__(self, config_path: str = "config/api_config.yaml"):
        """
        Initialize document processor with configuration.

        Args:
            config_path: Path to API configuration YAML file
        """
        config = {}
        if Path(config_path).exists():
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}

        doc_config = config.get('document_processing', {})
        self.supported_formats = doc_config.get('supported_formats', ['.pdf', '.docx', '.txt'])
        self.max_file_size_mb = doc_config.get('max_file_size_mb', 25)

        logger.info(f"Document processor initialized. Formats: {self.supported_formats}, Max: {self.max_file_size_mb}MB")

    def validate_file(self, filename: str, file_size: int) -> tuple[bool, str]:
        """
        Validate file format and size.

        Args:
            filename: Name of the file
            file_size: Size of file in bytes

        Returns:
            Tuple of (is_valid, error_message)
        """
        ext = Path(filename).suffix.lower()

        if ext not in self.supported_formats:
            return False, f"Unsupported file format: {ext}. Supported: {self.supported_formats}"

        max_size_bytes = self.max_file_size_mb * 1024 * 1024
        if file_size > max_size_bytes:
            return False, f"File too large: {file_size / (1024*1024):.2f}MB. Max: {self.max_file_size_mb}MB"

        return True, ""

    def extract_text(self, file_content: bytes, filename: str) -> str:
        """
        Extract text from document based on file type.

        Args:
            file_content: Raw file bytes
            filename: Name of the file

        Returns:
            Extracted text content
        """
        ext = Path(filename).suffix.lower()

        if ext == '.txt':
            return self._extract_from_txt(file_content)
        elif ext == '.pdf':
            return self._extract_from_pdf(file_content)
        elif ext == '.docx':
            return self._extract_from_docx(file_content)
        else:
            raise AttachmentError(f"Unsupported format: {ext}")

    def _extract_from_txt(self, content: bytes) -> str:
        """Extract text from TXT file."""
        return content.decode('utf-8', errors='ignore')

    def _extract_from_pdf(self, content: bytes) -> str:
        """Extract text from PDF file."""
        try:
            reader = PdfReader(io.BytesIO(content))
            return "\n".join((page.extract_text() or "") for page in reader.pages)
        except PyPdfError as e:
            raise AttachmentError(f"Unreadable PDF: {e}") from e

    def _extract_from_docx(self, content: bytes) -> str:
        """Extract text from DOCX file."""
        try:
            doc = Document(io.BytesIO(content))
        except (BadZipFile, PackageNotFoundError) as e:
            raise AttachmentError(f"Unreadable DOCX: {e}") from e
        return "\n".join(para.text for para in doc.paragraphs)

    def attachment_text(self, attachment: Attachment) -> Optional[str]:
        """
        Text of one attachment, fetched from S3 when only a reference is held.

        Unsupported or oversized attachments are skipped with a warning and
        yield None. Fetch errors and AttachmentError propagate to the caller.
        """
        content = attachment.content
        if content is None and attachment.s3_url:
            content = get_s3_file(attachment.s3_url)
        if content is None:
            return None

        is_valid, error = self.validate_file(attachment.filename, len(content))
        if not is_valid:
            logger.warning(f"Skipping attachment {attachment.filename}: {error}")
            return None

        text = self.extract_text(content, attachment.filename)
        logger.info(f"Extracted {len(text)} characters from {attachment.filename}")
        return text
