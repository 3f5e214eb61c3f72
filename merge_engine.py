"""
Mail Merge Engine - Core merging logic
Merges spreadsheet records into copies of a template document as letters
(one page or file per record) or labels (records packed into table cells).
"""

import json
import os
import traceback
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from document_model import (
    SYNTHETIC_ATTRIBUTE,
    Element,
    ElementType,
    UnsupportedElementError,
    DocumentStructureError,
    build_paragraph,
    new_fragment,
)
from document_store import MIME_EXTENSIONS, MIME_PDF, DocumentStore, count_pdf_pages
from spreadsheet_data import DataSpreadsheet


# Top and bottom margin compensation for the table-wrap formatting trick.
MARGIN_SHIFT_PT = 3.6

# Font size of the paragraphs bracketing a wrapped table.
BRACKET_FONT_SIZE = 1

# Answers accepted from a formatting-risk confirmation callback.
CONFIRM_PROCEED = "proceed"
CONFIRM_CANCEL = "cancel"
CONFIRM_STANDARD = "standard"

MERGE_TYPES = ("letters", "labels")
TABLE_WRAP_MODES = ("enable", "disable")
OUTPUT_FILE_COUNTS = ("single", "multi")
OUTPUT_FILE_TYPES = ("native", "pdf")


def _record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def _safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions to avoid crashing the merge."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


class RunLogger:
    """Persist merge run events to text and JSONL logs."""

    def __init__(
        self,
        logs_dir: Optional[str],
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled and bool(logs_dir)
        self.privacy_mode = privacy_mode
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log") if logs_dir else None
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl") if logs_dir else None
        self._text_handle = None
        self._jsonl_handle = None

        if self.enabled:
            os.makedirs(self.logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    def close(self) -> None:
        for handle in (self._text_handle, self._jsonl_handle):
            if handle is not None:
                try:
                    handle.close()
                except Exception:
                    pass
        self._text_handle = None
        self._jsonl_handle = None

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if key in {"record", "values"} and isinstance(value, (list, tuple)):
            return f"<{len(value)} values>"
        # Output names and links can be built from record values.
        if isinstance(value, str) and key in {"name", "url", "path"}:
            return "<redacted>"
        return value

    def _sanitize_context(self, context: Dict) -> Dict:
        return {key: self._redact_value(key, value) for key, value in context.items()}

    def log(self, level: str, event: str, message: str, **context) -> None:
        timestamp = datetime.now().isoformat()
        safe_context = self._sanitize_context(context)
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }
        if self.enabled and self._jsonl_handle is not None:
            self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._jsonl_handle.flush()

            text_context = ""
            if safe_context:
                context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
                text_context = " | " + ", ".join(context_parts)
            self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
            self._text_handle.flush()
        if self.event_callback:
            try:
                self.event_callback(payload)
            except Exception:
                pass


class MergeResult:
    """Terminal outcome of a merge: success (with a link), error, or warning (cancellation)."""

    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"

    def __init__(self, kind: str, message: str, url: Optional[str] = None,
                 warnings: Optional[List[Dict]] = None):
        self.kind = kind
        self.message = message
        self.url = url
        self.warnings = list(warnings or [])

    @classmethod
    def success(cls, message: str, url: Optional[str] = None, warnings=None) -> "MergeResult":
        return cls(cls.SUCCESS, message, url, warnings)

    @classmethod
    def error(cls, message: str, warnings=None) -> "MergeResult":
        return cls(cls.ERROR, message, None, warnings)

    @classmethod
    def warning(cls, message: str, warnings=None) -> "MergeResult":
        return cls(cls.WARNING, message, None, warnings)

    @property
    def is_success(self) -> bool:
        return self.kind == self.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.kind == self.ERROR

    def to_dict(self) -> Dict:
        result = {"kind": self.kind, "message": self.message}
        if self.url is not None:
            result["url"] = self.url
        if self.warnings:
            result["warnings"] = self.warnings
        return result

    def to_display(self) -> Dict:
        """UI-ready alert: type is alert-success, alert-error or alert-warning."""
        content = self.message
        if self.url:
            content += f' <a href="{self.url}">Click here</a> to open the output.'
        return {"type": f"alert-{self.kind}", "content": content}

    def __repr__(self):
        return f"MergeResult({self.kind!r}, {self.message!r}, url={self.url!r})"


class MergeOptions:
    """
    Merge configuration, loaded once and handed to the orchestrator.

    Accepts the host's camelCase option names in from_dict/to_dict.
    """

    OPTION_KEYS = {
        "mergeType": "merge_type",
        "tableWrapMerge": "table_wrap_merge",
        "numOutputFiles": "num_output_files",
        "outputFileType": "output_file_type",
        "outputFileName": "output_file_name",
        "outputFileNamePrefix": "output_file_name_prefix",
    }

    def __init__(
        self,
        merge_type: str = "letters",
        table_wrap_merge: str = "enable",
        num_output_files: str = "single",
        output_file_type: str = "native",
        output_file_name: Optional[str] = None,
        output_file_name_prefix: str = "[Merge Output]",
    ):
        self.merge_type = merge_type
        self.table_wrap_merge = table_wrap_merge
        self.num_output_files = num_output_files
        self.output_file_type = output_file_type
        self.output_file_name = output_file_name or None
        self.output_file_name_prefix = output_file_name_prefix

    @classmethod
    def from_dict(cls, values: Dict) -> "MergeOptions":
        kwargs = {}
        for key, value in values.items():
            attribute = cls.OPTION_KEYS.get(key, key)
            if attribute in cls.OPTION_KEYS.values():
                kwargs[attribute] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict:
        return {key: getattr(self, attribute) for key, attribute in self.OPTION_KEYS.items()}

    def validate(self) -> None:
        """Raise ValueError for unsupported option values."""
        for attribute, allowed in (
            ("merge_type", MERGE_TYPES),
            ("table_wrap_merge", TABLE_WRAP_MODES),
            ("num_output_files", OUTPUT_FILE_COUNTS),
            ("output_file_type", OUTPUT_FILE_TYPES),
        ):
            value = getattr(self, attribute)
            if value not in allowed:
                raise ValueError(f"Unsupported {attribute.replace('_', ' ')}: {value!r}")

    @property
    def is_labels(self) -> bool:
        return self.merge_type == "labels"

    @property
    def table_wrap_enabled(self) -> bool:
        return self.table_wrap_merge == "enable"

    @property
    def multi_file(self) -> bool:
        return self.num_output_files == "multi"

    @property
    def wants_pdf(self) -> bool:
        return self.output_file_type == "pdf"


class OptionsStore:
    """Persists merge options as a JSON document."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> MergeOptions:
        if not os.path.exists(self.path):
            return MergeOptions()
        with open(self.path, "r", encoding="utf-8") as handle:
            return MergeOptions.from_dict(json.load(handle))

    def save(self, options: Union[MergeOptions, Dict]) -> None:
        if isinstance(options, dict):
            stored = self._read_raw()
            stored.update(options)
            options = MergeOptions.from_dict(stored)
        options.validate()
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as handle:
            json.dump(options.to_dict(), handle, indent=2)

    def set_default_options(self) -> MergeOptions:
        """Fill in defaults for every option that has no stored value."""
        stored = self._read_raw()
        defaults = MergeOptions().to_dict()
        for key, value in defaults.items():
            if stored.get(key) is None:
                stored[key] = value
        options = MergeOptions.from_dict(stored)
        self.save(options)
        return options

    def _read_raw(self) -> Dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as handle:
            return json.load(handle)


# ----------------------------------------------------------------------
# Field substitution
# ----------------------------------------------------------------------

def get_merge_field(field: str) -> str:
    """Return the placeholder token for a field name."""
    return f"<<{field}>>"


def stringify_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if (value.hour, value.minute, value.second, value.microsecond) == (0, 0, 0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def substitute(fragment: Element, fields: Sequence[str], record: Sequence) -> Element:
    """
    Replace every <<field>> token in a detached fragment with the record's values.

    Fields are replaced in their declared order. The fragment is mutated and
    returned.
    """
    for field, value in zip(fields, record):
        if not field:
            continue
        fragment.replace_text(get_merge_field(field), stringify_value(value))
    return fragment


def substitute_name(name: str, fields: Sequence[str], record: Sequence) -> str:
    for field, value in zip(fields, record):
        if field:
            name = name.replace(get_merge_field(field), stringify_value(value))
    return name


def extract_elements(container: Element) -> List[Element]:
    """Return detached copies of the container's child elements, in order."""
    return [child.copy() for child in container.get_children()]


def append_element(container: Element, element: Element) -> Element:
    element_type = element.type
    if element_type == ElementType.PARAGRAPH:
        return container.append_paragraph(element)
    if element_type == ElementType.LIST_ITEM:
        return container.append_list_item(element)
    if element_type == ElementType.TABLE:
        return container.append_table(element)
    raise UnsupportedElementError(f"Cannot append a {element_type} element to a document body")


# ----------------------------------------------------------------------
# Template
# ----------------------------------------------------------------------

class TableLayout:
    """
    Grid dimensions of a label table and the mapping from a 1-based record
    position to a 1-based (row, col) cell. Positions keep counting across
    table instances; the mapping wraps around every rows * cols cells.
    """

    def __init__(self, rows: int, cols: int):
        if rows < 1 or cols < 1:
            raise ValueError(f"Label table must have at least one cell, got {rows}x{cols}")
        self.rows = rows
        self.cols = cols

    @property
    def cells_per_table(self) -> int:
        return self.rows * self.cols

    def current_row(self, index: int) -> int:
        return ((index - 1) // self.cols) % self.rows + 1

    def current_col(self, index: int) -> int:
        return (index - 1) % self.cols + 1

    def position(self, index: int):
        return self.current_row(index), self.current_col(index)

    def is_last_cell(self, row: int, col: int) -> bool:
        return row == self.rows and col == self.cols

    def remaining_cells(self, row: int, col: int) -> int:
        """Number of cells after (row, col) in the same table."""
        return self.cells_per_table - ((row - 1) * self.cols + col)

    def __repr__(self):
        return f"TableLayout(rows={self.rows}, cols={self.cols})"


class TemplateDocument:
    """The template document: the layout and merge fields the records merge into."""

    # Selections touching these elements cannot be replaced by a merge field.
    UNSUPPORTED_SELECTION_TYPES = frozenset({
        ElementType.EQUATION,
        ElementType.HORIZONTAL_RULE,
        ElementType.INLINE_IMAGE,
        ElementType.PAGE_BREAK,
        ElementType.TABLE,
        ElementType.TABLE_ROW,
        ElementType.TABLE_CELL,
    })

    def __init__(self, store: DocumentStore, document_id: str):
        self.store = store
        self.id = document_id
        self.document = store.open_document(document_id)

    def get_document(self):
        return self.document

    def apply_changes(self) -> None:
        """Commit pending edits and reopen, keeping the cursor on the same element."""
        cursor = self.document.get_cursor()
        path = self._child_path(cursor.get_element()) if cursor is not None else None
        self.store.save_and_close(self.document)
        self.document = self.store.open_document(self.id)
        if path is None:
            return
        element = self.document.get_body()
        for index in path:
            if index >= element.get_num_children():
                return
            element = element.get_child(index)
        self.document.set_cursor(self.document.new_position(element, cursor.get_offset()))

    @staticmethod
    def _child_path(element: Element) -> List[int]:
        path = []
        parent = element.get_parent()
        while parent is not None:
            path.append(parent.get_child_index(element))
            element, parent = parent, parent.get_parent()
        return path[::-1]

    def get_id(self) -> str:
        return self.id

    def get_name(self) -> str:
        return self.document.get_name()

    def get_parent_folder(self) -> Optional[str]:
        return self.store.get_parent_folder(self.id)

    def get_body_copy(self) -> Element:
        """Return a detached deep copy of the template body."""
        return self.document.get_body().copy()

    def get_tables(self) -> List[Element]:
        return self.document.get_body().get_tables()

    def get_num_tables(self) -> int:
        return len(self.get_tables())

    def get_table_copy(self) -> Element:
        """Return a detached copy of the first table, ignoring any others."""
        tables = self.get_tables()
        if not tables:
            raise DocumentStructureError("The template document does not contain a table")
        return tables[0].copy()

    def get_cell_copy(self) -> Element:
        return self.get_table_copy().get_cell(0, 0).copy()

    def get_table_dimensions(self) -> TableLayout:
        table = self.get_table_copy()
        return TableLayout(table.get_num_rows(), table.get_row(0).get_num_cells())

    def make_copy(self, output_name: str, folder_id: Optional[str] = None) -> str:
        """Physically copy the template as a new document and return its id."""
        return self.store.copy_document(self.id, output_name, folder_id)

    def starts_with_blank_line(self) -> bool:
        body = self.document.get_body()
        return body.get_num_children() > 0 and body.get_child(0).get_num_children() == 0

    def has_page_break(self) -> bool:
        return bool(self.document.get_body().find_elements(ElementType.PAGE_BREAK))

    def insert_merge_field(self, field: str) -> Optional[MergeResult]:
        """
        Insert <<field>> at the cursor, or replace the current text selection.

        Returns:
            None on success, otherwise an error MergeResult; a failed insert
            leaves the document unchanged.
        """
        token = get_merge_field(field)
        cursor = self.document.get_cursor()
        selection = self.document.get_selection()

        if cursor is not None:
            inserted = self._insert_at_cursor(cursor, token)
            if inserted is None:
                return MergeResult.error("There was an error inserting the merge field. Please try again.")
            element, offset = inserted
            self.document.set_cursor(self.document.new_position(element, offset))
            self.apply_changes()
            return None

        if selection:
            for range_element in selection:
                if range_element.get_element().type in self.UNSUPPORTED_SELECTION_TYPES:
                    return MergeResult.error(
                        "Cannot replace selection with a merge field. Only text selections can be replaced."
                    )
            inserted = self._replace_selection(selection, token)
            if inserted is None:
                return MergeResult.error("Only text selections can be replaced.")
            element, offset = inserted
            self.document.set_selection(None)
            self.document.set_cursor(self.document.new_position(element, offset))
            self.apply_changes()
            return None

        return MergeResult.error("Only text selections can be replaced.")

    @staticmethod
    def _insert_at_cursor(cursor, token: str):
        element = cursor.get_element()
        offset = cursor.get_offset()
        try:
            if element.type == ElementType.TEXT:
                element.insert_text(offset, token)
                return element, offset + len(token)
            if element.type in ElementType.TEXT_CONTAINERS:
                # Inside a paragraph the offset counts child elements.
                run = element.insert_child(offset, new_fragment(ElementType.TEXT, token))
                return run, len(token)
        except (IndexError, DocumentStructureError):
            return None
        return None

    @staticmethod
    def _replace_selection(selection, token: str):
        target = None
        for range_element in selection:
            element = range_element.get_element()
            if element.type == ElementType.TEXT:
                if range_element.is_partial():
                    start = range_element.get_start_offset()
                    element.delete_text(start, range_element.get_end_offset_inclusive())
                    if target is None:
                        element.insert_text(start, token)
                        target = (element, start + len(token))
                elif target is None:
                    element.set_text(token)
                    target = (element, len(token))
                else:
                    element.remove_from_parent()
            elif element.type in ElementType.TEXT_CONTAINERS:
                for child in element.get_children():
                    if child.type == ElementType.TEXT:
                        child.remove_from_parent()
                if target is None:
                    run = element.insert_child(0, new_fragment(ElementType.TEXT, token))
                    target = (run, len(token))
        return target


# ----------------------------------------------------------------------
# Output
# ----------------------------------------------------------------------

class OutputDocument:
    """A generated document, created as a physical copy of the template."""

    def __init__(self, store: DocumentStore, document_id: str):
        self.store = store
        self.id = document_id
        self.document = store.open_document(document_id)
        self.original_body: Optional[Element] = None
        self.converted_id: Optional[str] = None

    def get_id(self) -> str:
        return self.id

    def get_name(self) -> str:
        return self.document.get_name()

    def get_document(self):
        return self.document

    def get_body(self) -> Element:
        return self.document.get_body()

    def clear_body(self) -> None:
        """Remove all body content, keeping a private copy of the original body."""
        body = self.get_body()
        self.original_body = body.copy()
        body.clear()

    def get_table_copy(self) -> Element:
        """Detached copy of the first table of the body as it was before clear_body()."""
        source = self.original_body if self.original_body is not None else self.get_body()
        tables = source.get_tables()
        if not tables:
            raise DocumentStructureError("The output document does not contain a table")
        return tables[0].copy()

    def insert_new_page(self, elements: Sequence[Element], is_first_page: bool = False,
                        is_last_page: bool = False) -> None:
        """
        Append one record's elements as a new page.

        The empty paragraph left by clear_body() is dropped on the first page,
        and every page except the last ends with a page break.
        """
        body = self.get_body()
        for element in elements:
            append_element(body, element)
        if is_first_page:
            body.get_child(0).remove_from_parent()
        if not is_last_page:
            body.append_page_break()

    def remove_table_paragraphs(self) -> int:
        """Remove the empty paragraphs the host inserted after appended tables."""
        removed = 0
        body = self.get_body()
        for table in [child for child in body.get_children() if child.type == ElementType.TABLE]:
            following = table.get_next_sibling()
            if following is None or following.get_next_sibling() is None:
                continue
            if (following.type == ElementType.PARAGRAPH
                    and following.get_attribute(SYNTHETIC_ATTRIBUTE)
                    and following.get_num_children() == 0):
                following.remove_from_parent()
                removed += 1
        return removed

    def shift_margins(self, points: float = MARGIN_SHIFT_PT) -> None:
        for side in ("top", "bottom"):
            self.document.set_margin(side, max(0.0, self.document.get_margin(side) - points))

    def apply_changes(self) -> None:
        """Commit pending edits and reopen, so later reads see the saved document."""
        self.store.save_and_close(self.document)
        self.document = self.store.open_document(self.id)

    def convert_and_replace(self, mime_type: str = MIME_PDF, delete_original: bool = True) -> str:
        """
        Export the saved document to another format next to the original.

        Returns:
            Id of the converted file
        """
        data = self.store.export_document(self.id, mime_type)
        if mime_type == MIME_PDF:
            count_pdf_pages(data)
        name = self.get_name() + MIME_EXTENSIONS.get(mime_type, "")
        converted_id = self.store.create_file(name, data, mime_type, self.store.get_parent_folder(self.id))
        if delete_original:
            self.store.trash(self.id)
        self.converted_id = converted_id
        return converted_id

    def get_url(self) -> str:
        return self.store.get_url(self.converted_id or self.id)


class BodyWrapper:
    """
    Wraps the template content into one borderless single-cell table.

    Each record then costs one table copy and a constant number of appends,
    whatever the template's size. Explicit page breaks cannot live inside a
    table cell and are dropped.
    """

    def __init__(self):
        self.table: Optional[Element] = None
        self.bracket: Optional[Element] = None

    def construct(self, output_body: Element, template_elements: Sequence[Element]) -> Element:
        width = (
            output_body.get_attribute("page_width", 612.0)
            - output_body.get_attribute("margin_left", 72.0)
            - output_body.get_attribute("margin_right", 72.0)
        )
        table = new_fragment(ElementType.TABLE, attributes={
            "border_width": 0,
            "cell_padding": 0,
            "cell_width": width,
        })
        cell = table.append_row().append_cell()
        placeholder = cell.get_child(0)
        for element in template_elements:
            for page_break in element.find_elements(ElementType.PAGE_BREAK):
                page_break.remove_from_parent()
            append_element(cell, element)
        if cell.get_num_children() > 1:
            placeholder.remove_from_parent()

        self.table = table
        self.bracket = build_paragraph()
        self.bracket.set_attribute("font_size", BRACKET_FONT_SIZE)
        return table

    def get_table_copy(self) -> Element:
        if self.table is None:
            raise RuntimeError("Body wrapper has not been constructed")
        return self.table.copy()

    def append_wrapped_body(self, output_body: Element, table: Element, is_first_page: bool = False,
                            is_last_page: bool = False) -> Element:
        """Append bracket paragraph, wrapped table and bracket paragraph as one page."""
        if self.bracket is None:
            raise RuntimeError("Body wrapper has not been constructed")
        output_body.append_paragraph(self.bracket)
        appended = output_body.append_table(table)
        synthetic = appended.get_next_sibling()
        trailing = output_body.append_paragraph(self.bracket)
        if synthetic is not None and synthetic.get_attribute(SYNTHETIC_ATTRIBUTE):
            synthetic.remove_from_parent()
        if is_first_page:
            output_body.get_child(0).remove_from_parent()
        if not is_last_page:
            trailing.append_page_break()
        return appended


class MergeOutputs:
    """
    Creates, names and tracks the output documents of one merge run, and
    finalizes them into the result URL.
    """

    def __init__(
        self,
        store: DocumentStore,
        template: TemplateDocument,
        options: MergeOptions,
        run_logger: Optional[RunLogger] = None,
        warnings: Optional[List[Dict]] = None,
    ):
        self.store = store
        self.template = template
        self.options = options
        self.run_logger = run_logger
        self.warnings = warnings
        self.folder_id: Optional[str] = None
        self.outputs: List[OutputDocument] = []
        self.created: List[OutputDocument] = []

    @property
    def multi_file(self) -> bool:
        # Labels always merge into one document.
        return self.options.multi_file and not self.options.is_labels

    def output_name(self, fields: Optional[Sequence[str]] = None, record: Optional[Sequence] = None,
                     record_num: Optional[int] = None) -> str:
        base = f"{self.options.output_file_name_prefix} {self.template.get_name()}".strip()
        if self.options.output_file_name:
            name = self.options.output_file_name
            if self.multi_file and fields is not None and record is not None:
                name = substitute_name(name, fields, record)
            return name
        if self.multi_file and record_num is not None:
            return f"{base} - Record {record_num}"
        return base

    def start_output(self, fields=None, record=None, record_num: Optional[int] = None) -> OutputDocument:
        """Copy the template into a new output document and clear its body."""
        folder_id = self.template.get_parent_folder()
        if self.multi_file:
            if self.folder_id is None:
                self.folder_id = self.store.create_folder(
                    f"{self.options.output_file_name_prefix} {self.template.get_name()}".strip(),
                    folder_id,
                )
            folder_id = self.folder_id

        name = self.output_name(fields, record, record_num)
        output = OutputDocument(self.store, self.template.make_copy(name, folder_id))
        output.clear_body()
        self.created.append(output)
        print(f"    Created: {name}")
        if self.run_logger:
            self.run_logger.log("info", "output_created", "Created output document", name=name, record=record_num)
        return output

    def register(self, output: OutputDocument) -> None:
        self.outputs.append(output)

    def finalize(self) -> str:
        """Commit every registered output, convert if requested, and return the link to show."""
        url = None
        for output in self.outputs:
            output.apply_changes()
            if self.options.wants_pdf:
                output.convert_and_replace(MIME_PDF)
                if self.run_logger:
                    self.run_logger.log("info", "output_converted", "Converted output to PDF", name=output.get_name())
            url = output.get_url()
            if self.run_logger:
                self.run_logger.log("info", "output_finalized", "Finalized output document", url=url)
        if self.multi_file and self.folder_id is not None:
            return self.store.get_folder_url(self.folder_id)
        if url is None:
            raise RuntimeError("The merge produced no output documents")
        return url


# ----------------------------------------------------------------------
# Strategies
# ----------------------------------------------------------------------

class MergeStrategy:
    """
    One way of assembling records into outputs.

    run() never raises: any failure is turned into an error MergeResult and
    the merge stops at the current record. Outputs already written for
    earlier records are left in place.
    """

    name = "base"

    def __init__(self, run_logger: Optional[RunLogger] = None, progress_callback=None):
        self.run_logger = run_logger
        self.progress_callback = progress_callback

    def validate(self, template: TemplateDocument) -> Optional[str]:
        """Return an error message if the template cannot be used, else None."""
        return None

    def run(self, records: Sequence[Sequence], template: TemplateDocument, sink: MergeOutputs) -> MergeResult:
        if len(records) < 2:
            return MergeResult.error("There are no records to merge.")
        fields = [str(field) for field in records[0]]
        rows = records[1:]
        record_num = 0
        try:
            for record_num, _record in enumerate(self._merge(fields, rows, template, sink), start=1):
                _safe_progress(self.progress_callback, record_num, len(rows), f"Merged record {record_num}")
        except Exception as exc:
            self._log("error", "merge_failed", "Merge stopped on a failed record",
                      strategy=self.name, record=record_num + 1, error=str(exc),
                      traceback=traceback.format_exc())
            return MergeResult.error(f"There was an error during the merge. {type(exc).__name__}: {exc}")
        return MergeResult.success(f"Merged {len(rows)} records.")

    def _merge(self, fields, rows, template, sink):
        """Merge the rows one by one, yielding after each record."""
        raise NotImplementedError

    def _log(self, level: str, event: str, message: str, **context) -> None:
        if self.run_logger:
            self.run_logger.log(level, event, message, **context)


class LetterMergeStrategy(MergeStrategy):
    """Appends every template element for every record, page by page."""

    name = "letters"

    def _merge(self, fields, rows, template, sink):
        output = None
        total = len(rows)
        for record_num, record in enumerate(rows, start=1):
            is_first = record_num == 1
            is_last = record_num == total
            new_output = is_first or sink.multi_file
            if new_output:
                output = sink.start_output(fields, record, record_num)
                self._start_output(output, template)

            self._append_record(output, template, fields, record,
                                is_first_page=new_output, is_last_page=is_last or sink.multi_file)
            self._log("info", "record_merged", "Merged record", record=record_num)

            if sink.multi_file or is_last:
                output.remove_table_paragraphs()
                sink.register(output)
            yield record

    def _start_output(self, output: OutputDocument, template: TemplateDocument) -> None:
        pass

    def _append_record(self, output, template, fields, record, is_first_page, is_last_page) -> None:
        body_copy = substitute(template.get_body_copy(), fields, record)
        output.insert_new_page(extract_elements(body_copy), is_first_page=is_first_page, is_last_page=is_last_page)


class TableWrapLetterMergeStrategy(LetterMergeStrategy):
    """Letters merge that appends each record as one wrapped table."""

    name = "letters_table_wrap"

    def __init__(self, run_logger=None, progress_callback=None):
        super().__init__(run_logger, progress_callback)
        self.wrapper: Optional[BodyWrapper] = None

    def _start_output(self, output: OutputDocument, template: TemplateDocument) -> None:
        self.wrapper = BodyWrapper()
        self.wrapper.construct(output.get_body(), extract_elements(template.get_body_copy()))
        output.shift_margins()

    def _append_record(self, output, template, fields, record, is_first_page, is_last_page) -> None:
        table = substitute(self.wrapper.get_table_copy(), fields, record)
        self.wrapper.append_wrapped_body(output.get_body(), table,
                                         is_first_page=is_first_page, is_last_page=is_last_page)


class LabelMergeStrategy(MergeStrategy):
    """Packs records into the cells of the template's single table, one table per grid."""

    name = "labels"

    def validate(self, template: TemplateDocument) -> Optional[str]:
        count = template.get_num_tables()
        if count != 1:
            return (
                "Label merges require the template to contain exactly one table; "
                f"found {count}."
            )
        return None

    def _merge(self, fields, rows, template, sink):
        output = sink.start_output()
        body = output.get_body()
        layout = template.get_table_dimensions()
        table_copy = output.get_table_copy()
        tables_appended = 0
        total = len(rows)

        for index, record in enumerate(rows, start=1):
            row, col = layout.position(index)
            substitute(table_copy.get_cell(row - 1, col - 1), fields, record)

            is_last = index == total
            grid_full = layout.is_last_cell(row, col)
            if grid_full or is_last:
                if tables_appended > 0:
                    body.append_page_break()
                if is_last and not grid_full:
                    self._clear_remaining_cells(table_copy, layout, index, row, col)
                body.append_table(table_copy)
                table_copy = output.get_table_copy()
                tables_appended += 1
                self._log("info", "table_appended", "Appended label table",
                          table=tables_appended, last_record=index)
            yield record

        output.remove_table_paragraphs()
        sink.register(output)

    @staticmethod
    def _clear_remaining_cells(table: Element, layout: TableLayout, index: int, row: int, col: int) -> None:
        for offset in range(1, layout.remaining_cells(row, col) + 1):
            next_row, next_col = layout.position(index + offset)
            table.get_cell(next_row - 1, next_col - 1).clear()


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------

class MergeOrchestrator:
    """Coordinates the entire merge: validation, strategy, finalization, result."""

    def __init__(
        self,
        document_store: DocumentStore,
        data_source: DataSpreadsheet,
        template_id: str,
        options: Optional[MergeOptions] = None,
        logs_dir: Optional[str] = None,
        enable_detailed_logging: bool = True,
        log_privacy_mode: str = "redacted",
    ):
        self.document_store = document_store
        self.data_source = data_source
        self.template_id = template_id
        self.options = options or MergeOptions()
        self.logs_dir = logs_dir
        self.enable_detailed_logging = enable_detailed_logging
        self.log_privacy_mode = log_privacy_mode

    def check_formatting_risks(self, template: Optional[TemplateDocument] = None) -> List[Dict]:
        """
        Formatting risks of a table-wrapped letters merge with this template.

        Returns an empty list when the merge does not use table wrapping.
        """
        warnings: List[Dict] = []
        if self.options.is_labels or not self.options.table_wrap_enabled:
            return warnings
        template = template or TemplateDocument(self.document_store, self.template_id)
        if template.starts_with_blank_line():
            _record_warning(
                warnings,
                'template_starts_with_blank_line',
                'The template starts with a blank line; its height will change in the merged output.',
            )
        if template.has_page_break():
            _record_warning(
                warnings,
                'template_has_page_break',
                'The template contains page breaks, which are removed by the faster merge. '
                'Use the standard merge to keep them.',
            )
        return warnings

    def select_strategy(self, progress_callback=None, run_logger=None) -> MergeStrategy:
        if self.options.is_labels:
            return LabelMergeStrategy(run_logger, progress_callback)
        if self.options.table_wrap_enabled:
            return TableWrapLetterMergeStrategy(run_logger, progress_callback)
        return LetterMergeStrategy(run_logger, progress_callback)

    def run_merge(
        self,
        confirm_callback: Optional[Callable[[List[Dict]], Union[bool, str]]] = None,
        progress_callback=None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> MergeResult:
        """
        Main entry point for a merge

        Args:
            confirm_callback: Asked with the formatting-risk warnings before a
                table-wrapped letters merge. Return True or CONFIRM_PROCEED to
                continue, CONFIRM_STANDARD to use the standard merge instead,
                anything else to cancel. Without a callback, risky merges
                are canceled.
            progress_callback: Optional callback function(current, total, message)

        Returns:
            MergeResult with kind success, error or warning
        """
        run_id = datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
        run_logger = RunLogger(
            logs_dir=self.logs_dir,
            run_id=run_id,
            enabled=self.enable_detailed_logging,
            privacy_mode=self.log_privacy_mode,
            event_callback=event_callback,
        )
        warnings: List[Dict] = []

        try:
            run_logger.log("info", "merge_start", "Merge started", options=self.options.to_dict())

            try:
                self.options.validate()
            except ValueError as exc:
                return self._fail(run_logger, str(exc), warnings)

            records = self.data_source.get_records()
            if not records or len(records) < 2:
                return self._fail(run_logger, "There are no records to merge.", warnings)

            template = TemplateDocument(self.document_store, self.template_id)
            strategy = self.select_strategy(progress_callback, run_logger)
            problem = strategy.validate(template)
            if problem:
                return self._fail(run_logger, problem, warnings)

            if self.options.is_labels and self.options.multi_file:
                _record_warning(
                    warnings,
                    'labels_single_output',
                    'Label merges always produce a single output document.',
                )

            risks = self.check_formatting_risks(template)
            if risks:
                warnings.extend(risks)
                run_logger.log("warning", "formatting_risks", "Template has formatting risks",
                               codes=[risk['code'] for risk in risks])
                decision = confirm_callback(risks) if confirm_callback is not None else CONFIRM_CANCEL
                if decision is True:
                    decision = CONFIRM_PROCEED
                if decision == CONFIRM_STANDARD:
                    strategy = LetterMergeStrategy(run_logger, progress_callback)
                elif decision != CONFIRM_PROCEED:
                    run_logger.log("warning", "merge_canceled", "Merge canceled before start")
                    return MergeResult.warning("Merge canceled.", warnings)

            record_count = len(records) - 1
            run_logger.log("info", "inputs_validated", "Inputs validated",
                           records=record_count, strategy=strategy.name)
            print(f"\nMerging {record_count} records ({strategy.name})")

            outputs = MergeOutputs(self.document_store, template, self.options, run_logger, warnings)
            result = strategy.run(records, template, outputs)
            if result.is_error:
                result.warnings = warnings
                return result

            url = outputs.finalize()
            message = f"Merge done! {record_count} records merged."
            run_logger.log("info", "merge_done", message, url=url, outputs=len(outputs.outputs))
            return MergeResult.success(message, url, warnings)
        except Exception as exc:
            run_logger.log("error", "merge_failed", "Fatal merge error", error=str(exc),
                           traceback=traceback.format_exc())
            return MergeResult.error(f"There was an error during the merge. {type(exc).__name__}: {exc}", warnings)
        finally:
            run_logger.close()

    @staticmethod
    def _fail(run_logger: RunLogger, message: str, warnings: List[Dict]) -> MergeResult:
        run_logger.log("error", "merge_failed", message)
        return MergeResult.error(message, warnings)
