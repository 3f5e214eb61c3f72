"""
Spreadsheet data - tabular records feeding the merge
Workbooks are .xlsx files (read with openpyxl) or .csv files (one sheet).
"""

import csv
import os
from pathlib import Path
from typing import Dict, List, Optional

try:
    from openpyxl import load_workbook
    HAS_OPENPYXL = True
except ImportError:
    HAS_OPENPYXL = False


Row = List[object]


class TabularDataStore:
    """Operations the merge needs from a spreadsheet host."""

    def get_name(self, spreadsheet_id: str) -> Optional[str]:
        raise NotImplementedError

    def list_sheet_names(self, spreadsheet_id: str) -> Optional[List[str]]:
        raise NotImplementedError

    def read_sheet(self, spreadsheet_id: str, sheet_name: str) -> Optional[List[Row]]:
        """Return the sheet's data range as rows, or None if the sheet does not exist."""
        raise NotImplementedError


class InMemoryDataStore(TabularDataStore):
    def __init__(self, workbooks: Optional[Dict[str, Dict[str, List[Row]]]] = None):
        self.workbooks = workbooks or {}

    def get_name(self, spreadsheet_id: str) -> Optional[str]:
        return spreadsheet_id if spreadsheet_id in self.workbooks else None

    def list_sheet_names(self, spreadsheet_id: str) -> Optional[List[str]]:
        workbook = self.workbooks.get(spreadsheet_id)
        return list(workbook) if workbook is not None else None

    def read_sheet(self, spreadsheet_id: str, sheet_name: str) -> Optional[List[Row]]:
        workbook = self.workbooks.get(spreadsheet_id)
        if workbook is None or sheet_name not in workbook:
            return None
        return _trim_data_range([list(row) for row in workbook[sheet_name]])


class WorkbookDataStore(TabularDataStore):
    """
    Reads workbooks from disk. The spreadsheet id is a file path, absolute
    or relative to `root_dir`.
    """

    def __init__(self, root_dir: str = "."):
        self.root_dir = os.path.abspath(root_dir)

    def path_for(self, spreadsheet_id: str) -> str:
        return spreadsheet_id if os.path.isabs(spreadsheet_id) else os.path.join(self.root_dir, spreadsheet_id)

    def get_name(self, spreadsheet_id: str) -> Optional[str]:
        path = self.path_for(spreadsheet_id)
        return Path(path).stem if os.path.isfile(path) else None

    def list_sheet_names(self, spreadsheet_id: str) -> Optional[List[str]]:
        path = self.path_for(spreadsheet_id)
        if not os.path.isfile(path):
            return None
        if path.lower().endswith(".csv"):
            return [Path(path).stem]
        workbook = self._open_workbook(path)
        try:
            return list(workbook.sheetnames)
        finally:
            workbook.close()

    def read_sheet(self, spreadsheet_id: str, sheet_name: str) -> Optional[List[Row]]:
        path = self.path_for(spreadsheet_id)
        if not os.path.isfile(path):
            return None

        if path.lower().endswith(".csv"):
            if sheet_name != Path(path).stem:
                return None
            with open(path, mode="r", encoding="utf-8-sig", newline="") as handle:
                return _trim_data_range([list(row) for row in csv.reader(handle)])

        workbook = self._open_workbook(path)
        try:
            if sheet_name not in workbook.sheetnames:
                return None
            sheet = workbook[sheet_name]
            rows = [list(row) for row in sheet.iter_rows(values_only=True)]
        finally:
            workbook.close()
        return _trim_data_range(rows)

    @staticmethod
    def _open_workbook(path: str):
        if not HAS_OPENPYXL:
            raise ImportError("openpyxl library is required to read .xlsx workbooks")
        return load_workbook(path, read_only=True, data_only=True)


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _trim_data_range(rows: List[Row]) -> List[Row]:
    """Drop trailing blank rows and columns and square the result, like a data-range read."""
    while rows and all(_is_blank(value) for value in rows[-1]):
        rows.pop()
    width = 0
    for row in rows:
        for index in range(len(row) - 1, -1, -1):
            if not _is_blank(row[index]):
                width = max(width, index + 1)
                break
    return [(row + [None] * width)[:width] for row in rows]


class DataSpreadsheet:
    """
    The selected sheet of the selected workbook.

    Every accessor returns None when no workbook or sheet is selected, or
    when the sheet holds no data.
    """

    def __init__(self, data_store: TabularDataStore, spreadsheet_id: Optional[str] = None,
                 sheet_name: Optional[str] = None):
        self.data_store = data_store
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name

    def get_id(self) -> Optional[str]:
        return self.spreadsheet_id

    def get_name(self) -> Optional[str]:
        if not self.spreadsheet_id:
            return None
        return self.data_store.get_name(self.spreadsheet_id)

    def get_sheet_names(self) -> Optional[List[str]]:
        if not self.spreadsheet_id:
            return None
        return self.data_store.list_sheet_names(self.spreadsheet_id)

    def get_sheet(self) -> Optional[List[Row]]:
        if not self.spreadsheet_id or not self.sheet_name:
            return None
        return self.data_store.read_sheet(self.spreadsheet_id, self.sheet_name)

    def get_fields(self) -> Optional[List[str]]:
        """Header names of the sheet, without trailing empty header cells."""
        return _header_fields(self.get_sheet())

    def get_records(self) -> Optional[List[Row]]:
        """
        All rows of the sheet, header row first.

        Rows are padded or truncated to the header width so every record
        lines up with the fields.
        """
        rows = self.get_sheet()
        fields = _header_fields(rows)
        if fields is None:
            return None
        width = len(fields)
        records: List[Row] = [list(fields)]
        for row in rows[1:]:
            records.append((list(row) + [None] * width)[:width])
        return records

    def get_record_count(self) -> Optional[int]:
        rows = self.get_sheet()
        if rows is None:
            return None
        return max(0, len(rows) - 1)


def _header_fields(rows: Optional[List[Row]]) -> Optional[List[str]]:
    if not rows:
        return None
    header = list(rows[0])
    while header and _is_blank(header[-1]):
        header.pop()
    if not header:
        return None
    return ["" if value is None else str(value).strip() for value in header]
