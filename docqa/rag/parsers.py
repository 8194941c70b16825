"""Document type detection and plain-text extraction.

Handles:
- Type detection from URL scheme, MIME type or file extension
- PDF text extraction (pypdf)
- DOCX text extraction (python-docx)
- Web page text extraction (httpx + BeautifulSoup)
"""
import io
from pathlib import PurePath
from typing import Optional, Union
import httpx
import structlog
from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from docqa import config
from docqa.errors import ExtractionError, ValidationError
from docqa.rag.vector_store import DocumentType

logger = structlog.get_logger()

SUPPORTED_TYPES_MESSAGE = "Unsupported file type. Please upload PDF, DOCX, or TXT files."

MIME_TYPES = {
    "application/pdf": DocumentType.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentType.DOCX,
    "application/msword": DocumentType.DOCX,
    "text/plain": DocumentType.TXT,
}

EXTENSIONS = {
    ".pdf": DocumentType.PDF,
    ".docx": DocumentType.DOCX,
    ".doc": DocumentType.DOCX,
    ".txt": DocumentType.TXT,
}

# Elements that carry navigation or code rather than page content
_NOISE_TAGS = ["script", "style", "nav", "footer", "header"]


def is_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def detect_document_type(
    filename: str, mime_type: Optional[str] = None
) -> Optional[DocumentType]:
    """Detect document type from filename or MIME type.

    Args:
        filename: File name or URL
        mime_type: Declared MIME type, if any

    Returns:
        DocumentType, or None when the type is not supported
    """
    if is_url(filename):
        return DocumentType.URL

    if mime_type:
        # Ignore parameters such as "; charset=utf-8"
        detected = MIME_TYPES.get(mime_type.split(";")[0].strip().lower())
        if detected:
            return detected

    return EXTENSIONS.get(PurePath(filename).suffix.lower())


def parse_pdf(data: bytes) -> str:
    """Extract text from a PDF file buffer."""
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PyPdfError, ValueError, OSError) as e:
        logger.error("pdf_parse_failed", error=str(e), error_type=type(e).__name__)
        raise ExtractionError("Failed to parse PDF file", cause=str(e)) from e

    return "\n".join(pages)


def parse_docx(data: bytes) -> str:
    """Extract text from a DOCX file buffer."""
    try:
        document = DocxDocument(io.BytesIO(data))
    except Exception as e:
        # python-docx surfaces zip, XML and package errors with no common base
        logger.error("docx_parse_failed", error=str(e), error_type=type(e).__name__)
        raise ExtractionError("Failed to parse DOCX file", cause=str(e)) from e

    return "\n".join(paragraph.text for paragraph in document.paragraphs)


def parse_text(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        return data
    return data.decode("utf-8", errors="replace")


def html_to_text(html: str) -> str:
    """Visible page text, one trimmed non-empty line per line."""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(_NOISE_TAGS):
        tag.decompose()

    body = soup.body or soup
    lines = (line.strip() for line in body.get_text().split("\n"))
    return "\n".join(line for line in lines if line)


async def parse_website(
    url: str, transport: Optional[httpx.AsyncBaseTransport] = None
) -> str:
    """Extract text from a website URL.

    Raises:
        ExtractionError: If the page cannot be fetched
    """
    try:
        async with httpx.AsyncClient(
            timeout=config.REQUEST_TIMEOUT,
            follow_redirects=True,
            transport=transport,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            html = response.text
    except httpx.HTTPError as e:
        logger.error("website_fetch_failed", url=url, error=str(e))
        raise ExtractionError(f"Failed to parse website: {e}", cause=str(e)) from e

    text = html_to_text(html)

    logger.info("website_parsed", url=url, html_length=len(html), text_length=len(text))
    return text


async def parse_document(
    source: Union[bytes, str],
    doc_type: DocumentType,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Parse any supported document type into plain text.

    Args:
        source: File contents, or the URL for DocumentType.URL
        doc_type: Detected document type
        transport: Optional httpx transport for URL fetching

    Returns:
        Extracted text (may be empty)
    """
    doc_type = DocumentType(doc_type)

    if doc_type is DocumentType.PDF:
        return parse_pdf(source)
    if doc_type is DocumentType.DOCX:
        return parse_docx(source)
    if doc_type is DocumentType.TXT:
        return parse_text(source)
    if doc_type is DocumentType.URL:
        return await parse_website(source, transport=transport)

    raise ValidationError(f"Unsupported document type: {doc_type}")
