"""Text extraction from uploaded tour documents and archives."""

import posixpath
import zipfile
from io import BytesIO

from tourpro.core.logging import get_logger
from tourpro.core.schemas import NamedDocument

logger = get_logger(__name__)

# Plain-text formats decoded directly
TEXT_EXTENSIONS = {".txt", ".md", ".json", ".csv"}

# Word documents parsed with python-docx
DOCX_EXTENSIONS = {".docx"}

# Members of an archive that are ingested
ARCHIVE_MEMBER_EXTENSIONS = TEXT_EXTENSIONS | DOCX_EXTENSIONS


class ExtractionError(Exception):
    """Raised when a document cannot be converted to text."""

    def __init__(self, message: str, extractor: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.extractor = extractor
        self.recoverable = recoverable


def get_extension(filename: str) -> str:
    """Extract lowercase file extension from filename."""
    if "." in filename:
        return "." + filename.rsplit(".", 1)[-1].lower()
    return ""


def base_name(path: str) -> str:
    """Base filename of an archive member or upload path."""
    return posixpath.basename(path.replace("\\", "/"))


def _decode_bytes(raw_bytes: bytes) -> str:
    """
    Decode bytes using a fallback chain: UTF-8 BOM, UTF-8, Latin-1.

    Raises:
        ExtractionError: If no encoding works
    """
    if raw_bytes.startswith(b"\xef\xbb\xbf"):
        try:
            return raw_bytes.decode("utf-8-sig")
        except UnicodeDecodeError:
            pass

    for encoding in ("utf-8", "latin-1"):
        try:
            return raw_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue

    raise ExtractionError("Unable to decode file content", extractor="text", recoverable=False)


def _extract_docx(raw_bytes: bytes, filename: str) -> str:
    """Concatenate paragraphs and pipe-delimited table rows of a DOCX file."""
    from docx import Document

    try:
        doc = Document(BytesIO(raw_bytes))
    except Exception as e:
        raise ExtractionError(f"Failed to open DOCX {filename}: {e}", extractor="docx") from e

    parts = [para.text.strip() for para in doc.paragraphs if para.text.strip()]

    for table in doc.tables:
        rows = [" | ".join(cell.text.strip() for cell in row.cells) for row in table.rows]
        table_text = "\n".join(rows)
        if table_text.strip():
            parts.append(table_text)

    return "\n".join(parts)


def extract_text(filename: str, raw: bytes | str) -> str:
    """
    Convert a document to plain text.

    Args:
        filename: Original filename (extension selects the extractor)
        raw: Raw bytes, or already-extracted text

    Returns:
        Plain text content

    Raises:
        ExtractionError: If the type is unsupported or the content is malformed
    """
    if isinstance(raw, str):
        return raw

    extension = get_extension(filename)
    if extension in DOCX_EXTENSIONS:
        return _extract_docx(raw, filename)
    if extension in TEXT_EXTENSIONS or not extension:
        return _decode_bytes(raw)

    raise ExtractionError(
        f"Unsupported file type {extension or '(none)'} for {filename}",
        extractor="dispatch",
        recoverable=False,
    )


def expand_upload(filename: str, raw_bytes: bytes) -> list[NamedDocument]:
    """
    Turn an upload into named documents.

    ZIP archives are expanded into their supported members (directories and
    other types are ignored); any other upload becomes a single document.
    Documents are named by base filename.

    Raises:
        ExtractionError: If a ZIP archive cannot be opened
    """
    if get_extension(filename) != ".zip":
        return [NamedDocument(name=base_name(filename), content=raw_bytes)]

    try:
        archive = zipfile.ZipFile(BytesIO(raw_bytes))
    except zipfile.BadZipFile as e:
        raise ExtractionError(f"Invalid ZIP archive {filename}: {e}", extractor="zip") from e

    documents = []
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            name = base_name(info.filename)
            if not name or name.startswith(".") or get_extension(name) not in ARCHIVE_MEMBER_EXTENSIONS:
                continue
            documents.append(NamedDocument(name=name, content=archive.read(info)))

    logger.info(f"Expanded {len(documents)} documents from {filename}")
    return documents
