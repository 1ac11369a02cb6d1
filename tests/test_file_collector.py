"""Tests for DocumentCollector."""
import pytest

from docpublisher import __version__
from docpublisher.orchestrator.file_collector import (
    DEFAULT_CATEGORY,
    DocumentCollector,
    extract_title,
    infer_category,
)


@pytest.fixture
def docs_dir(tmp_path):
    (tmp_path / "pm").mkdir()
    (tmp_path / "pm" / "project-charter.md").write_text(
        "# Alpha Project Charter\n\nPMBOK: Section 4.1 Develop Project Charter\n"
    )
    (tmp_path / "risk-register.txt").write_text("no heading here")
    (tmp_path / "diagram.PDF").write_bytes(b"%PDF-1.7")
    (tmp_path / "ignore.png").write_bytes(b"\x89PNG")
    return tmp_path


class TestHelpers:
    @pytest.mark.parametrize(
        "name, category",
        [
            ("project-charter.md", "Project Charter"),
            ("RISK_plan.md", "Risk Management"),
            ("system-architecture.md", "Technical Design"),
            ("readme.md", DEFAULT_CATEGORY),
        ],
    )
    def test_infer_category(self, name, category):
        assert infer_category(name) == category

    def test_extract_title(self):
        assert extract_title("intro\n# Main Title \n# Second") == "Main Title"
        assert extract_title("## Only level two") is None
        assert extract_title(None) is None


class TestDocumentCollector:
    def test_collect_files_filters_and_sorts(self, docs_dir):
        files = DocumentCollector().collect_files(docs_dir)
        assert [f.relative_to(docs_dir).as_posix() for f in files] == [
            "diagram.PDF",
            "pm/project-charter.md",
            "risk-register.txt",
        ]

    def test_collect_builds_documents(self, docs_dir):
        documents = {d.file_name: d for d in DocumentCollector().collect(docs_dir)}

        charter = documents["project-charter.md"]
        assert charter.title == "Alpha Project Charter"
        assert charter.folder_path == "pm"
        assert charter.tags == ("docpublisher-generated",)
        assert charter.metadata == {
            "Title": "Alpha Project Charter",
            "ContentType": "Document",
            "DocumentCategory": "Project Charter",
            "DocumentVersion": "1.0",
            "GeneratedBy": f"docpublisher {__version__}",
            "PMBOKReference": "Section 4.1 Develop Project Charter",
        }

        risk = documents["risk-register.txt"]
        assert risk.title == "risk-register"
        assert risk.folder_path == ""
        assert "PMBOKReference" not in risk.metadata

        assert documents["diagram.PDF"].content == b"%PDF-1.7"

    def test_single_file(self, docs_dir):
        documents = DocumentCollector().collect(docs_dir / "pm" / "project-charter.md")
        assert len(documents) == 1
        assert documents[0].folder_path == ""

    def test_tag_prefix(self, docs_dir):
        collector = DocumentCollector(tag_prefix="alpha")
        document = collector.collect(docs_dir / "risk-register.txt")[0]
        assert document.tags == ("alpha-generated",)

    def test_custom_extensions(self, docs_dir):
        collector = DocumentCollector(extensions=(".PNG",))
        assert collector.extensions == [".png"]
        assert [f.name for f in collector.collect_files(docs_dir)] == ["ignore.png"]

    def test_missing_source(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            DocumentCollector().collect(tmp_path / "absent")
