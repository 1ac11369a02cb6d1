"""File collection utilities for directory publishing."""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .. import __version__
from ..models import Document

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".md", ".pdf", ".docx", ".txt")
TEXT_EXTENSIONS = {".md", ".txt"}
DEFAULT_TAG = "docpublisher-generated"
DOCUMENT_VERSION = "1.0"

_HEADING = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_PMBOK = re.compile(r"PMBOK[:\s]+([^\n]+)", re.IGNORECASE)

# First keyword found in the file name wins
CATEGORY_KEYWORDS = (
    ("charter", "Project Charter"),
    ("scope", "Scope Management"),
    ("risk", "Risk Management"),
    ("quality", "Quality Management"),
    ("stakeholder", "Stakeholder Management"),
    ("communication", "Communication Management"),
    ("procurement", "Procurement Management"),
    ("schedule", "Schedule Management"),
    ("cost", "Cost Management"),
    ("resource", "Resource Management"),
    ("integration", "Integration Management"),
    ("technical", "Technical Analysis"),
    ("architecture", "Technical Design"),
)
DEFAULT_CATEGORY = "General Documentation"


def infer_category(file_name: str) -> str:
    lower = file_name.lower()
    for keyword, category in CATEGORY_KEYWORDS:
        if keyword in lower:
            return category
    return DEFAULT_CATEGORY


def extract_title(text: Optional[str]) -> Optional[str]:
    """First markdown level-one heading, if any."""
    if not text:
        return None
    match = _HEADING.search(text)
    return match.group(1).strip() if match else None


class DocumentCollector:
    """Collects publishable documents from folders."""

    def __init__(
        self,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        tag_prefix: Optional[str] = None,
    ):
        self._extensions = {ext.lower() for ext in extensions}
        self._tag_prefix = tag_prefix

    @property
    def extensions(self) -> List[str]:
        return sorted(self._extensions)

    def collect_files(self, folder: Path) -> List[Path]:
        """
        Collect all publishable files recursively.

        Args:
            folder: Root folder to scan

        Returns:
            Sorted list of file paths
        """
        files = []
        for item in Path(folder).rglob("*"):
            if item.is_file() and item.suffix.lower() in self._extensions:
                files.append(item)
        return sorted(files)

    def build_document(self, path: Path, root: Optional[Path] = None) -> Document:
        """Read one file and derive its title, folder, metadata and tags."""
        path = Path(path)
        content = path.read_bytes()
        text = None
        if path.suffix.lower() in TEXT_EXTENSIONS:
            text = content.decode("utf-8", errors="replace")

        folder_path = ""
        if root is not None:
            parent = path.parent.relative_to(root)
            folder_path = "" if parent == Path(".") else parent.as_posix()

        title = extract_title(text) or path.stem
        return Document(
            title=title,
            content=content,
            file_name=path.name,
            folder_path=folder_path,
            metadata=self.build_metadata(path.name, title, text),
            tags=(f"{self._tag_prefix}-generated" if self._tag_prefix else DEFAULT_TAG,),
        )

    def build_metadata(self, file_name: str, title: str, text: Optional[str] = None) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "Title": title,
            "ContentType": "Document",
            "DocumentCategory": infer_category(file_name),
            "DocumentVersion": DOCUMENT_VERSION,
            "GeneratedBy": f"docpublisher {__version__}",
        }
        if text:
            match = _PMBOK.search(text)
            if match:
                metadata["PMBOKReference"] = match.group(1).strip()
        return metadata

    def collect(self, source: Path) -> List[Document]:
        """Documents for a single file or every publishable file under a folder."""
        source = Path(source)
        if source.is_file():
            return [self.build_document(source)]
        if not source.is_dir():
            raise FileNotFoundError(f"Documents path does not exist: {source}")

        files = self.collect_files(source)
        logger.info(f"Found {len(files)} document(s) in {source}")
        return [self.build_document(path, source) for path in files]
