"""
Document stores - hosts for templates, merge outputs and folders
Includes an in-memory store and a .docx folder store built on python-docx,
with PDF export through Microsoft Word (Windows) or ReportLab.
"""

import io
import os
import shutil
import tempfile
import threading
import uuid
from collections import Counter
from copy import deepcopy
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import escape

from document_model import (
    DEFAULT_PAGE_ATTRIBUTES,
    ContentTree,
    Document,
    Element,
    ElementType,
)

# DOCX handling
try:
    from docx import Document as DocxDocument
    from docx.oxml import OxmlElement
    from docx.oxml.ns import qn
    from docx.shared import Pt
    from docx.text.run import Run
    HAS_DOCX = True
except ImportError:
    HAS_DOCX = False

# PDF rendering
try:
    from reportlab.lib import colors
    from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
    from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
    HAS_REPORTLAB = True
except ImportError:
    HAS_REPORTLAB = False

# PDF inspection
try:
    from pypdf import PdfReader
    HAS_PYPDF = True
except ImportError:
    HAS_PYPDF = False

# Microsoft Word automation (Windows)
try:
    import pythoncom
    import win32com.client as win32_client
    HAS_WIN32COM = True
except ImportError:
    HAS_WIN32COM = False


MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MIME_PDF = "application/pdf"
MIME_TEXT = "text/plain"

MIME_EXTENSIONS = {
    MIME_DOCX: ".docx",
    MIME_PDF: ".pdf",
    MIME_TEXT: ".txt",
}

TWIPS_PER_POINT = 20


class DocumentNotFoundError(LookupError):
    """Raised when a document, file or folder id is unknown to the store."""


class ConversionError(RuntimeError):
    """Raised when a document cannot be exported to the requested format."""


def count_pdf_pages(data: bytes) -> int:
    """Return the number of pages in PDF bytes; raises ConversionError if unreadable."""
    if not HAS_PYPDF:
        raise ImportError("pypdf library is required to inspect PDF output")
    try:
        return len(PdfReader(io.BytesIO(data)).pages)
    except Exception as exc:
        raise ConversionError(f"Exported PDF could not be read: {exc}") from exc


class DocumentStore:
    """
    Operations the merge engine needs from a document host.

    Each call stands for one round trip to the host; `calls` counts them.
    """

    def __init__(self):
        self.calls: Counter = Counter()
        self.operation_counts: Counter = Counter()

    def open_document(self, document_id: str) -> Document:
        raise NotImplementedError

    def save_and_close(self, document: Document) -> None:
        raise NotImplementedError

    def copy_document(self, document_id: str, name: str, folder_id: Optional[str] = None) -> str:
        raise NotImplementedError

    def export_document(self, document_id: str, mime_type: str) -> bytes:
        raise NotImplementedError

    def create_file(self, name: str, data: bytes, mime_type: str, folder_id: Optional[str] = None) -> str:
        raise NotImplementedError

    def trash(self, file_id: str) -> None:
        raise NotImplementedError

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        raise NotImplementedError

    def get_parent_folder(self, file_id: str) -> Optional[str]:
        raise NotImplementedError

    def get_url(self, file_id: str) -> str:
        raise NotImplementedError

    def get_folder_url(self, folder_id: str) -> str:
        raise NotImplementedError

    def _record_save(self, document: Document) -> None:
        self.operation_counts.update(document.tree.operations)
        document.tree.operations.clear()


class InMemoryDocumentStore(DocumentStore):
    """
    Store keeping every document as a content tree in memory.

    Opening a document hands out a private working copy; only save_and_close
    makes edits durable, matching the host's close/reopen semantics.
    """

    def __init__(self):
        super().__init__()
        self._documents: Dict[str, Dict] = {}
        self._files: Dict[str, Dict] = {}
        self._folders: Dict[str, Dict] = {}
        self.trashed: List[str] = []

    # Test and fixture helpers -------------------------------------------

    def add_document(self, name: str, tree: Optional[ContentTree] = None,
                     folder_id: Optional[str] = None) -> Document:
        document_id = uuid.uuid4().hex
        document = Document(document_id, name, tree, folder_id)
        self._documents[document_id] = {"name": name, "tree": document.tree, "folder": folder_id}
        return document

    def document_ids(self) -> List[str]:
        return list(self._documents)

    def get_name(self, file_id: str) -> str:
        entry = self._documents.get(file_id) or self._files.get(file_id) or self._folders.get(file_id)
        if entry is None:
            raise DocumentNotFoundError(file_id)
        return entry["name"]

    def read_file(self, file_id: str) -> bytes:
        return self._files[file_id]["data"]

    def files_in_folder(self, folder_id: str) -> List[str]:
        ids = [key for key, entry in self._documents.items() if entry["folder"] == folder_id]
        ids.extend(key for key, entry in self._files.items() if entry["folder"] == folder_id)
        return ids

    # DocumentStore ------------------------------------------------------

    def open_document(self, document_id: str) -> Document:
        self.calls["open"] += 1
        entry = self._entry(document_id)
        tree = entry["tree"].copy_subtree(entry["tree"].root)
        return Document(document_id, entry["name"], tree, entry["folder"])

    def save_and_close(self, document: Document) -> None:
        self.calls["save"] += 1
        entry = self._entry(document.id)
        entry["tree"] = document.tree.copy_subtree(document.tree.root)
        entry["name"] = document.name
        self._record_save(document)
        document.closed = True

    def copy_document(self, document_id: str, name: str, folder_id: Optional[str] = None) -> str:
        self.calls["copy"] += 1
        entry = self._entry(document_id)
        new_id = uuid.uuid4().hex
        self._documents[new_id] = {
            "name": name,
            "tree": entry["tree"].copy_subtree(entry["tree"].root),
            "folder": folder_id if folder_id is not None else entry["folder"],
        }
        return new_id

    def export_document(self, document_id: str, mime_type: str) -> bytes:
        self.calls["export"] += 1
        entry = self._entry(document_id)
        root = entry["tree"].root_element()
        if mime_type == MIME_PDF:
            return render_pdf(root)
        if mime_type == MIME_DOCX:
            return render_docx(root)
        if mime_type == MIME_TEXT:
            return root.get_text().encode("utf-8")
        raise ConversionError(f"Unsupported export format: {mime_type}")

    def create_file(self, name: str, data: bytes, mime_type: str, folder_id: Optional[str] = None) -> str:
        self.calls["create_file"] += 1
        file_id = uuid.uuid4().hex
        self._files[file_id] = {"name": name, "data": data, "mime_type": mime_type, "folder": folder_id}
        return file_id

    def trash(self, file_id: str) -> None:
        self.calls["trash"] += 1
        if self._documents.pop(file_id, None) is None and self._files.pop(file_id, None) is None:
            raise DocumentNotFoundError(file_id)
        self.trashed.append(file_id)

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        self.calls["create_folder"] += 1
        folder_id = uuid.uuid4().hex
        self._folders[folder_id] = {"name": name, "parent": parent_id}
        return folder_id

    def get_parent_folder(self, file_id: str) -> Optional[str]:
        entry = self._documents.get(file_id) or self._files.get(file_id)
        if entry is None:
            raise DocumentNotFoundError(file_id)
        return entry["folder"]

    def get_url(self, file_id: str) -> str:
        if file_id not in self._documents and file_id not in self._files:
            raise DocumentNotFoundError(file_id)
        return f"memory://documents/{file_id}"

    def get_folder_url(self, folder_id: str) -> str:
        if folder_id not in self._folders:
            raise DocumentNotFoundError(folder_id)
        return f"memory://folders/{folder_id}"

    def _entry(self, document_id: str) -> Dict:
        try:
            return self._documents[document_id]
        except KeyError:
            raise DocumentNotFoundError(document_id) from None


class WordToPdfConverter:
    """Converts .docx files to PDF using Microsoft Word COM automation."""

    def __init__(self, timeout_seconds: int = 120):
        self.word_app = None
        self.com_initialized = False
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def is_available() -> Tuple[bool, str]:
        if os.name != 'nt':
            return False, "Word conversion is supported on Windows only."
        if not HAS_WIN32COM:
            return False, "pywin32 is required for Word-to-PDF conversion."
        return True, ""

    def __enter__(self):
        pythoncom.CoInitialize()
        self.com_initialized = True
        try:
            self.word_app = win32_client.DispatchEx("Word.Application")
            self.word_app.Visible = False
            self.word_app.DisplayAlerts = 0
            return self
        except Exception:
            if self.com_initialized:
                pythoncom.CoUninitialize()
                self.com_initialized = False
            raise

    def __exit__(self, exc_type, exc, tb):
        if self.word_app is not None:
            try:
                self.word_app.Quit()
            except Exception:
                pass
            self.word_app = None
        if self.com_initialized:
            pythoncom.CoUninitialize()
            self.com_initialized = False
        return False

    def convert_file(self, source_path: str, output_pdf_path: str) -> None:
        """Convert a single Word document to PDF; raises ConversionError on failure."""
        if self.word_app is None:
            raise RuntimeError("Word automation session is not initialized.")

        document = None
        timed_out = threading.Event()

        def _timeout_killer():
            """Force-close the document if conversion exceeds timeout."""
            timed_out.set()
            try:
                if document is not None:
                    document.Close(SaveChanges=False)
            except Exception:
                pass

        timer = threading.Timer(self.timeout_seconds, _timeout_killer)
        try:
            timer.start()
            document = self.word_app.Documents.Open(
                os.path.abspath(source_path),
                ReadOnly=True,
                AddToRecentFiles=False,
                Visible=False,
                ConfirmConversions=False,
            )
            # wdExportFormatPDF = 17
            document.ExportAsFixedFormat(os.path.abspath(output_pdf_path), 17)
            if timed_out.is_set():
                raise ConversionError(f"Word conversion timed out after {self.timeout_seconds}s")
        except ConversionError:
            raise
        except Exception as exc:
            raise ConversionError(f"Word-to-PDF conversion failed: {exc}") from exc
        finally:
            timer.cancel()
            if document is not None:
                try:
                    document.Close(SaveChanges=False)
                except Exception:
                    pass


class DocxDocumentStore(DocumentStore):
    """
    Store backed by a folder of .docx files.

    Ids are POSIX paths relative to the root folder. Copies are physical file
    copies, so headers, footers, styles and section settings of the template
    carry over to every output.
    """

    def __init__(self, root_dir: str, trash_subdir: str = ".trash", use_word_for_pdf: bool = True):
        super().__init__()
        self.root_dir = os.path.abspath(root_dir)
        self.trash_dir = os.path.join(self.root_dir, trash_subdir)
        self.use_word_for_pdf = use_word_for_pdf
        os.makedirs(self.root_dir, exist_ok=True)

    def path_for(self, file_id: str) -> str:
        return os.path.join(self.root_dir, *file_id.split("/")) if file_id else self.root_dir

    def id_for(self, path: str) -> str:
        return Path(os.path.relpath(path, self.root_dir)).as_posix()

    def open_document(self, document_id: str) -> Document:
        if not HAS_DOCX:
            raise ImportError("python-docx library is required for .docx documents")
        self.calls["open"] += 1
        path = self._existing_path(document_id)
        tree = read_docx_tree(DocxDocument(path))
        return Document(document_id, Path(path).stem, tree, self.get_parent_folder(document_id))

    def save_and_close(self, document: Document) -> None:
        self.calls["save"] += 1
        path = self._existing_path(document.id)
        docx_document = DocxDocument(path)
        write_docx_tree(docx_document, document.get_body())
        docx_document.save(path)
        self._record_save(document)
        document.closed = True

    def copy_document(self, document_id: str, name: str, folder_id: Optional[str] = None) -> str:
        self.calls["copy"] += 1
        source = self._existing_path(document_id)
        folder = self.path_for(folder_id) if folder_id is not None else os.path.dirname(source)
        destination = self._unique_path(folder, name, Path(source).suffix or ".docx")
        shutil.copy2(source, destination)
        return self.id_for(destination)

    def export_document(self, document_id: str, mime_type: str) -> bytes:
        self.calls["export"] += 1
        path = self._existing_path(document_id)
        if mime_type == MIME_DOCX:
            with open(path, "rb") as handle:
                return handle.read()
        if mime_type == MIME_TEXT:
            return read_docx_tree(DocxDocument(path)).root_element().get_text().encode("utf-8")
        if mime_type != MIME_PDF:
            raise ConversionError(f"Unsupported export format: {mime_type}")

        available, _reason = WordToPdfConverter.is_available()
        if self.use_word_for_pdf and available:
            temp_dir = tempfile.mkdtemp(prefix="mail_merge_pdf_")
            try:
                output_pdf = os.path.join(temp_dir, Path(path).stem + ".pdf")
                with WordToPdfConverter() as converter:
                    converter.convert_file(path, output_pdf)
                with open(output_pdf, "rb") as handle:
                    return handle.read()
            finally:
                shutil.rmtree(temp_dir, ignore_errors=True)
        return render_pdf(read_docx_tree(DocxDocument(path)).root_element())

    def create_file(self, name: str, data: bytes, mime_type: str, folder_id: Optional[str] = None) -> str:
        self.calls["create_file"] += 1
        folder = self.path_for(folder_id) if folder_id is not None else self.root_dir
        extension = MIME_EXTENSIONS.get(mime_type, "")
        stem = name[:-len(extension)] if extension and name.lower().endswith(extension) else name
        destination = self._unique_path(folder, stem, extension)
        with open(destination, "wb") as handle:
            handle.write(data)
        return self.id_for(destination)

    def trash(self, file_id: str) -> None:
        self.calls["trash"] += 1
        source = self._existing_path(file_id)
        os.makedirs(self.trash_dir, exist_ok=True)
        shutil.move(source, self._unique_path(self.trash_dir, Path(source).stem, Path(source).suffix))

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        self.calls["create_folder"] += 1
        parent = self.path_for(parent_id) if parent_id is not None else self.root_dir
        folder = self._unique_path(parent, _sanitize_filename(name), "")
        os.makedirs(folder)
        return self.id_for(folder)

    def get_parent_folder(self, file_id: str) -> Optional[str]:
        parent = os.path.dirname(self.path_for(file_id))
        folder_id = self.id_for(parent)
        return "" if folder_id == "." else folder_id

    def get_url(self, file_id: str) -> str:
        return Path(self._existing_path(file_id)).as_uri()

    def get_folder_url(self, folder_id: str) -> str:
        path = self.path_for(folder_id)
        if not os.path.isdir(path):
            raise DocumentNotFoundError(folder_id)
        return Path(path).as_uri()

    def _existing_path(self, file_id: str) -> str:
        path = self.path_for(file_id)
        if not os.path.isfile(path):
            raise DocumentNotFoundError(file_id)
        return path

    @staticmethod
    def _unique_path(folder: str, name: str, extension: str) -> str:
        os.makedirs(folder, exist_ok=True)
        stem = _sanitize_filename(name) or "document"
        candidate = os.path.join(folder, stem + extension)
        counter = 1
        while os.path.exists(candidate):
            candidate = os.path.join(folder, f"{stem}_{counter}{extension}")
            counter += 1
        return candidate


def _sanitize_filename(name: str) -> str:
    cleaned = "".join("_" if char in '<>:"/\\|?*' or ord(char) < 32 else char for char in name)
    return cleaned.strip().rstrip(".")


# ----------------------------------------------------------------------
# .docx <-> content tree
# ----------------------------------------------------------------------

def read_docx_tree(docx_document) -> ContentTree:
    """Build a content tree from the body of a python-docx Document."""
    tree = ContentTree()
    attributes = dict(DEFAULT_PAGE_ATTRIBUTES)
    if docx_document.sections:
        section = docx_document.sections[0]
        for key, length in (
            ("page_width", section.page_width),
            ("page_height", section.page_height),
            ("margin_top", section.top_margin),
            ("margin_bottom", section.bottom_margin),
            ("margin_left", section.left_margin),
            ("margin_right", section.right_margin),
        ):
            if length is not None:
                attributes[key] = float(length.pt)
    body_id = tree.new_node(ElementType.BODY_SECTION, attributes=attributes)

    for child in docx_document.element.body.iterchildren():
        if child.tag == qn("w:p"):
            _read_paragraph(tree, body_id, child)
        elif child.tag == qn("w:tbl"):
            _read_table(tree, body_id, child)

    if not tree.node(body_id).children:
        tree.link(body_id, tree.new_node(ElementType.PARAGRAPH))
    return tree


def _read_paragraph(tree: ContentTree, parent_id: int, p_element) -> None:
    p_pr = p_element.pPr
    is_list = p_pr is not None and p_pr.numPr is not None
    attributes = {"ppr": deepcopy(p_pr)} if p_pr is not None else {}
    paragraph_id = tree.new_node(ElementType.LIST_ITEM if is_list else ElementType.PARAGRAPH, attributes=attributes)
    tree.link(parent_id, paragraph_id)

    # Direct runs plus runs wrapped in hyperlinks or tracked insertions; runs
    # inside drawings belong to the drawing and are kept with it.
    for r_element in p_element.xpath("./w:r | ./w:hyperlink/w:r | ./w:ins/w:r"):
        run_attributes = _run_attributes(r_element)
        buffer: List[str] = []

        def flush():
            if buffer:
                tree.link(paragraph_id, tree.new_node(ElementType.TEXT, "".join(buffer), dict(run_attributes)))
                buffer.clear()

        for item in r_element.iterchildren():
            if item.tag == qn("w:t"):
                buffer.append(item.text or "")
            elif item.tag == qn("w:tab"):
                buffer.append("\t")
            elif item.tag in (qn("w:br"), qn("w:cr")):
                if item.get(qn("w:type")) == "page":
                    flush()
                    tree.link(paragraph_id, tree.new_node(ElementType.PAGE_BREAK))
                else:
                    buffer.append("\n")
            elif item.tag in (qn("w:drawing"), qn("w:pict"), qn("w:object")):
                flush()
                raw_run = OxmlElement("w:r")
                if r_element.rPr is not None:
                    raw_run.append(deepcopy(r_element.rPr))
                raw_run.append(deepcopy(item))
                tree.link(paragraph_id, tree.new_node(ElementType.INLINE_IMAGE, attributes={"raw": raw_run}))
        flush()


def _run_attributes(r_element) -> Dict:
    run = Run(r_element, None)
    attributes = {}
    if r_element.rPr is not None:
        attributes["rpr"] = deepcopy(r_element.rPr)
    if run.bold:
        attributes["bold"] = True
    if run.italic:
        attributes["italic"] = True
    if run.underline:
        attributes["underline"] = True
    if run.font.size is not None:
        attributes["font_size"] = float(run.font.size.pt)
    return attributes


def _read_table(tree: ContentTree, parent_id: int, tbl_element) -> None:
    attributes = {}
    if tbl_element.tblPr is not None:
        attributes["tblpr"] = deepcopy(tbl_element.tblPr)
    grid = tbl_element.find(qn("w:tblGrid"))
    if grid is not None:
        attributes["grid"] = deepcopy(grid)
    table_id = tree.new_node(ElementType.TABLE, attributes=attributes)
    tree.link(parent_id, table_id)

    for tr in tbl_element.tr_lst:
        row_attributes = {"trpr": deepcopy(tr.trPr)} if tr.trPr is not None else {}
        row_id = tree.new_node(ElementType.TABLE_ROW, attributes=row_attributes)
        tree.link(table_id, row_id)
        for tc in tr.tc_lst:
            cell_attributes = {"tcpr": deepcopy(tc.tcPr)} if tc.tcPr is not None else {}
            cell_id = tree.new_node(ElementType.TABLE_CELL, attributes=cell_attributes)
            tree.link(row_id, cell_id)
            for child in tc.iterchildren():
                if child.tag == qn("w:p"):
                    _read_paragraph(tree, cell_id, child)
                elif child.tag == qn("w:tbl"):
                    _read_table(tree, cell_id, child)
            if not tree.node(cell_id).children:
                tree.link(cell_id, tree.new_node(ElementType.PARAGRAPH))


def write_docx_tree(docx_document, body: Element) -> None:
    """Replace the body content of a python-docx Document with the given body element."""
    body_element = docx_document.element.body
    for child in list(body_element.iterchildren()):
        if child.tag != qn("w:sectPr"):
            body_element.remove(child)
    section_properties = body_element.find(qn("w:sectPr"))

    for element in body.get_children():
        xml = _element_to_xml(element, body)
        if section_properties is not None:
            section_properties.addprevious(xml)
        else:
            body_element.append(xml)

    for section in docx_document.sections:
        section.top_margin = Pt(body.get_attribute("margin_top", DEFAULT_PAGE_ATTRIBUTES["margin_top"]))
        section.bottom_margin = Pt(body.get_attribute("margin_bottom", DEFAULT_PAGE_ATTRIBUTES["margin_bottom"]))
        section.left_margin = Pt(body.get_attribute("margin_left", DEFAULT_PAGE_ATTRIBUTES["margin_left"]))
        section.right_margin = Pt(body.get_attribute("margin_right", DEFAULT_PAGE_ATTRIBUTES["margin_right"]))


def render_docx(body: Element) -> bytes:
    if not HAS_DOCX:
        raise ImportError("python-docx library is required for DOCX export")
    docx_document = DocxDocument()
    write_docx_tree(docx_document, body)
    buffer = io.BytesIO()
    docx_document.save(buffer)
    return buffer.getvalue()


def _element_to_xml(element: Element, body: Element):
    if element.type in ElementType.TEXT_CONTAINERS:
        return _paragraph_to_xml(element)
    if element.type == ElementType.TABLE:
        return _table_to_xml(element, body)
    raise ConversionError(f"Cannot write a {element.type} element as a block")


def _paragraph_to_xml(paragraph: Element):
    p = OxmlElement("w:p")
    p_pr = paragraph.get_attribute("ppr")
    if p_pr is not None:
        p_pr = deepcopy(p_pr)
    elif paragraph.type == ElementType.LIST_ITEM:
        p_pr = OxmlElement("w:pPr")
        style = OxmlElement("w:pStyle")
        style.set(qn("w:val"), "ListParagraph")
        p_pr.append(style)

    font_size = paragraph.get_attribute("font_size")
    if font_size is not None:
        if p_pr is None:
            p_pr = OxmlElement("w:pPr")
        mark_properties = p_pr.find(qn("w:rPr"))
        if mark_properties is None:
            mark_properties = OxmlElement("w:rPr")
            p_pr.append(mark_properties)
        _set_font_size(mark_properties, font_size)
        spacing = p_pr.find(qn("w:spacing"))
        if spacing is None:
            spacing = OxmlElement("w:spacing")
            p_pr.insert(0, spacing)
        spacing.set(qn("w:before"), "0")
        spacing.set(qn("w:after"), "0")
        spacing.set(qn("w:line"), str(int(font_size * TWIPS_PER_POINT)))
        spacing.set(qn("w:lineRule"), "exact")
    if p_pr is not None:
        p.append(p_pr)

    for child in paragraph.get_children():
        if child.type == ElementType.TEXT:
            p.append(_text_run_to_xml(child))
        elif child.type == ElementType.PAGE_BREAK:
            run = OxmlElement("w:r")
            br = OxmlElement("w:br")
            br.set(qn("w:type"), "page")
            run.append(br)
            p.append(run)
        elif child.get_attribute("raw") is not None:
            p.append(deepcopy(child.get_attribute("raw")))
    return p


def _text_run_to_xml(text_element: Element):
    run = OxmlElement("w:r")
    r_pr = text_element.get_attribute("rpr")
    if r_pr is not None:
        run.append(deepcopy(r_pr))
    else:
        r_pr = OxmlElement("w:rPr")
        for key, tag in (("bold", "w:b"), ("italic", "w:i")):
            if text_element.get_attribute(key):
                r_pr.append(OxmlElement(tag))
        if text_element.get_attribute("font_size") is not None:
            _set_font_size(r_pr, text_element.get_attribute("font_size"))
        if text_element.get_attribute("underline"):
            underline = OxmlElement("w:u")
            underline.set(qn("w:val"), "single")
            r_pr.append(underline)
        if len(r_pr):
            run.append(r_pr)

    pieces = (text_element.get_text() or "").split("\n")
    for line_index, line in enumerate(pieces):
        if line_index:
            run.append(OxmlElement("w:br"))
        for tab_index, chunk in enumerate(line.split("\t")):
            if tab_index:
                run.append(OxmlElement("w:tab"))
            if chunk:
                t = OxmlElement("w:t")
                t.text = chunk
                t.set(qn("xml:space"), "preserve")
                run.append(t)
    return run


def _set_font_size(r_pr, points: float) -> None:
    half_points = str(max(2, int(round(points * 2))))
    for tag in ("w:sz", "w:szCs"):
        existing = r_pr.find(qn(tag))
        if existing is None:
            existing = OxmlElement(tag)
            r_pr.append(existing)
        existing.set(qn("w:val"), half_points)


def _table_to_xml(table: Element, body: Element):
    tbl = OxmlElement("w:tbl")
    tbl_pr = table.get_attribute("tblpr")
    tbl_pr = deepcopy(tbl_pr) if tbl_pr is not None else OxmlElement("w:tblPr")
    if tbl_pr.find(qn("w:tblW")) is None:
        width = OxmlElement("w:tblW")
        width.set(qn("w:w"), "0")
        width.set(qn("w:type"), "auto")
        tbl_pr.append(width)

    if table.get_attribute("border_width") == 0:
        existing = tbl_pr.find(qn("w:tblBorders"))
        if existing is not None:
            tbl_pr.remove(existing)
        borders = OxmlElement("w:tblBorders")
        for side in ("top", "left", "bottom", "right", "insideH", "insideV"):
            border = OxmlElement(f"w:{side}")
            border.set(qn("w:val"), "nil")
            borders.append(border)
        tbl_pr.append(borders)
    elif table.get_attribute("tblpr") is None:
        style = OxmlElement("w:tblStyle")
        style.set(qn("w:val"), "TableGrid")
        tbl_pr.insert(0, style)

    if table.get_attribute("cell_padding") == 0:
        existing = tbl_pr.find(qn("w:tblCellMar"))
        if existing is not None:
            tbl_pr.remove(existing)
        margins = OxmlElement("w:tblCellMar")
        for side in ("top", "left", "bottom", "right"):
            margin = OxmlElement(f"w:{side}")
            margin.set(qn("w:w"), "0")
            margin.set(qn("w:type"), "dxa")
            margins.append(margin)
        tbl_pr.append(margins)
    tbl.append(tbl_pr)

    rows = table.get_children()
    column_count = max((row.get_num_children() for row in rows), default=1) or 1
    grid = table.get_attribute("grid")
    if grid is not None and table.get_attribute("cell_width") is None:
        tbl.append(deepcopy(grid))
    else:
        usable = (
            body.get_attribute("page_width", DEFAULT_PAGE_ATTRIBUTES["page_width"])
            - body.get_attribute("margin_left", DEFAULT_PAGE_ATTRIBUTES["margin_left"])
            - body.get_attribute("margin_right", DEFAULT_PAGE_ATTRIBUTES["margin_right"])
        )
        cell_width = table.get_attribute("cell_width") or usable / column_count
        grid = OxmlElement("w:tblGrid")
        for _ in range(column_count):
            column = OxmlElement("w:gridCol")
            column.set(qn("w:w"), str(int(cell_width * TWIPS_PER_POINT)))
            grid.append(column)
        tbl.append(grid)

    for row in rows:
        tr = OxmlElement("w:tr")
        tr_pr = row.get_attribute("trpr")
        if tr_pr is not None:
            tr.append(deepcopy(tr_pr))
        for cell in row.get_children():
            tc = OxmlElement("w:tc")
            tc_pr = cell.get_attribute("tcpr")
            if tc_pr is not None:
                tc.append(deepcopy(tc_pr))
            last_tag = None
            for child in cell.get_children():
                xml = _element_to_xml(child, body)
                tc.append(xml)
                last_tag = xml.tag
            if last_tag != qn("w:p"):
                tc.append(OxmlElement("w:p"))
            tr.append(tc)
        tbl.append(tr)
    return tbl


# ----------------------------------------------------------------------
# PDF rendering
# ----------------------------------------------------------------------

def render_pdf(body: Element) -> bytes:
    """Render a body element to PDF bytes with ReportLab."""
    if not HAS_REPORTLAB:
        raise ImportError("reportlab library is required for PDF export")

    buffer = io.BytesIO()
    template = SimpleDocTemplate(
        buffer,
        pagesize=(
            body.get_attribute("page_width", DEFAULT_PAGE_ATTRIBUTES["page_width"]),
            body.get_attribute("page_height", DEFAULT_PAGE_ATTRIBUTES["page_height"]),
        ),
        topMargin=body.get_attribute("margin_top", DEFAULT_PAGE_ATTRIBUTES["margin_top"]),
        bottomMargin=body.get_attribute("margin_bottom", DEFAULT_PAGE_ATTRIBUTES["margin_bottom"]),
        leftMargin=body.get_attribute("margin_left", DEFAULT_PAGE_ATTRIBUTES["margin_left"]),
        rightMargin=body.get_attribute("margin_right", DEFAULT_PAGE_ATTRIBUTES["margin_right"]),
    )
    styles = getSampleStyleSheet()
    story = []
    for element in body.get_children():
        story.extend(_flowables(element, styles, template.width))
    while story and isinstance(story[-1], PageBreak):
        story.pop()
    if not story:
        story.append(Spacer(1, 1))
    template.build(story)
    return buffer.getvalue()


def _flowables(element: Element, styles, available_width: float) -> list:
    if element.type == ElementType.TABLE:
        rows = element.get_children()
        column_count = max((row.get_num_children() for row in rows), default=0)
        if not column_count:
            return []
        column_width = min(element.get_attribute("cell_width") or available_width / column_count,
                           available_width / column_count)
        data = []
        for row in rows:
            cells = [
                [
                    flowable
                    for child in cell.get_children()
                    for flowable in _flowables(child, styles, column_width)
                    if not isinstance(flowable, PageBreak)
                ]
                for cell in row.get_children()
            ]
            data.append(cells + [""] * (column_count - len(cells)))
        table = Table(data, colWidths=[column_width] * column_count)
        commands = [("VALIGN", (0, 0), (-1, -1), "TOP")]
        if element.get_attribute("border_width") != 0:
            commands.append(("GRID", (0, 0), (-1, -1), 0.5, colors.black))
        if element.get_attribute("cell_padding") == 0:
            for side in ("LEFTPADDING", "RIGHTPADDING", "TOPPADDING", "BOTTOMPADDING"):
                commands.append((side, (0, 0), (-1, -1), 0))
        table.setStyle(TableStyle(commands))
        return [table]

    if element.type not in ElementType.TEXT_CONTAINERS:
        return []

    base = styles["Normal"]
    font_size = element.get_attribute("font_size") or base.fontSize
    style = ParagraphStyle(
        f"p{font_size}",
        parent=base,
        fontSize=font_size,
        leading=font_size * 1.2,
    )
    flowables = []
    markup: List[str] = []
    for child in element.get_children():
        if child.type == ElementType.TEXT:
            text = escape(child.get_text()).replace("\n", "<br/>").replace("\t", "&nbsp;" * 4)
            if child.get_attribute("bold"):
                text = f"<b>{text}</b>"
            if child.get_attribute("italic"):
                text = f"<i>{text}</i>"
            if child.get_attribute("underline"):
                text = f"<u>{text}</u>"
            markup.append(text)
        elif child.type == ElementType.PAGE_BREAK:
            flowables.append(_paragraph_flowable(markup, style, element))
            markup = []
            flowables.append(PageBreak())
    if markup or not flowables:
        flowables.append(_paragraph_flowable(markup, style, element))
    return flowables


def _paragraph_flowable(markup: List[str], style, element: Element):
    text = "".join(markup)
    if not text:
        return Spacer(1, style.leading)
    if element.type == ElementType.LIST_ITEM:
        return Paragraph(text, style, bulletText="•")
    return Paragraph(text, style)
