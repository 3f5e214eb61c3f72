from pathlib import Path
import csv
import os
import shutil
import tempfile
import uuid

import pytest
from docx import Document
from openpyxl import Workbook
from pypdf import PdfWriter

from document_model import ElementType, build_paragraph, build_table, new_body_tree
from document_store import InMemoryDocumentStore
from spreadsheet_data import DataSpreadsheet, InMemoryDataStore


@pytest.fixture
def tmp_path():
    """
    Local override for pytest's tmp_path fixture.
    Some Windows environments create tmp roots with restrictive ACLs that
    break test setup/teardown. This keeps temp dirs under LOCALAPPDATA/Temp.
    """
    base_root = Path(os.environ.get("LOCALAPPDATA", tempfile.gettempdir()))
    base = base_root / "Temp" / "mail_merge_pytest_cases"
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"case_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def make_template(store):
    """
    Build a template document in the in-memory store.

    Blocks are strings (one paragraph each), lists of lists (a table), or
    ready-made elements.
    """
    def _make(*blocks, name: str = "Template", folder_id: str = "folder-root"):
        tree = new_body_tree()
        body = tree.root_element()
        placeholder = body.get_child(0)
        for block in blocks:
            if isinstance(block, str):
                body.append_paragraph(build_paragraph(block))
            elif isinstance(block, list):
                body.append_table(build_table(block))
            elif block.type == ElementType.TABLE:
                body.append_table(block)
            elif block.type == ElementType.LIST_ITEM:
                body.append_list_item(block)
            else:
                body.append_paragraph(block)
        if blocks:
            placeholder.remove_from_parent()
        tree.operations.clear()
        return store.add_document(name, tree, folder_id)

    return _make


@pytest.fixture
def make_data():
    def _make(rows, workbook: str = "Contacts", sheet: str = "Sheet1"):
        data_store = InMemoryDataStore({workbook: {sheet: rows}})
        return DataSpreadsheet(data_store, workbook, sheet)

    return _make


@pytest.fixture
def make_docx(tmp_path: Path):
    def _make(filename: str, paragraphs=(), table=None) -> Path:
        path = tmp_path / filename
        document = Document()
        for text in paragraphs:
            document.add_paragraph(text)
        if table is not None:
            docx_table = document.add_table(rows=len(table), cols=len(table[0]))
            for row_index, values in enumerate(table):
                for col_index, value in enumerate(values):
                    docx_table.cell(row_index, col_index).text = value
            document.add_paragraph("")
        document.save(path)
        return path

    return _make


@pytest.fixture
def make_xlsx(tmp_path: Path):
    def _make(filename: str, sheets) -> Path:
        path = tmp_path / filename
        workbook = Workbook()
        workbook.remove(workbook.active)
        for sheet_name, rows in sheets.items():
            worksheet = workbook.create_sheet(sheet_name)
            for row in rows:
                worksheet.append(list(row))
        workbook.save(path)
        return path

    return _make


@pytest.fixture
def make_csv(tmp_path: Path):
    def _make(filename: str, rows) -> Path:
        path = tmp_path / filename
        with path.open("w", encoding="utf-8", newline="") as handle:
            csv.writer(handle).writerows(rows)
        return path

    return _make


@pytest.fixture
def patch_word_converter(monkeypatch):
    def _patch(available: bool = True, pages: int = 1):
        class FakeWordConverter:
            def __init__(self, timeout_seconds: int = 120):
                self.timeout_seconds = timeout_seconds

            @staticmethod
            def is_available():
                return (True, "") if available else (False, "Word is not installed.")

            def __enter__(self):
                return self

            def __exit__(self, exc_type, exc, tb):
                return False

            def convert_file(self, source_path: str, output_pdf_path: str) -> None:
                writer = PdfWriter()
                for _ in range(pages):
                    writer.add_blank_page(width=72, height=72)
                with open(output_pdf_path, "wb") as handle:
                    writer.write(handle)

        monkeypatch.setattr("document_store.WordToPdfConverter", FakeWordConverter)

    return _patch


def page_texts(body):
    """Split a merged body into per-page texts on paragraphs holding a page break."""
    pages = [[]]
    for child in body.get_children():
        text = child.get_text()
        if text:
            pages[-1].append(text)
        if child.find_elements(ElementType.PAGE_BREAK):
            pages.append([])
    return ["\n".join(lines) for lines in pages]
