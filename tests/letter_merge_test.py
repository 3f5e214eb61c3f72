from document_model import ElementType, build_paragraph, new_body_tree
from document_store import InMemoryDocumentStore
from merge_engine import (
    CONFIRM_STANDARD,
    MergeOptions,
    MergeOrchestrator,
    MergeResult,
    OutputDocument,
)
from spreadsheet_data import DataSpreadsheet, InMemoryDataStore

from conftest import page_texts

RECORDS = [["Name", "Amount"], ["Alice", "10"], ["Bob", "20"]]


def _output_id(result):
    return result.url.rsplit("/", 1)[-1]


def _merge(store, template, data, **options):
    orchestrator = MergeOrchestrator(store, data, template.id, MergeOptions(**options))
    return orchestrator.run_merge(confirm_callback=lambda warnings: True)


def test_letters_single_file_one_page_per_record(store, make_template, make_data):
    template = make_template("Dear <<Name>>", "Amount: <<Amount>>")

    result = _merge(store, template, make_data(RECORDS), table_wrap_merge="disable")

    assert result.kind == MergeResult.SUCCESS
    assert len(store.document_ids()) == 2
    body = store.open_document(_output_id(result)).get_body()
    assert page_texts(body) == ["Dear Alice\nAmount: 10", "Dear Bob\nAmount: 20"]
    assert len(body.find_elements(ElementType.PAGE_BREAK)) == 1
    assert not body.get_child(body.get_num_children() - 1).find_elements(ElementType.PAGE_BREAK)


def test_leading_paragraph_removed_only_on_first_page(store, make_template, make_data, monkeypatch):
    template = make_template("Dear <<Name>>")
    calls = []
    original = OutputDocument.insert_new_page

    def recording(self, elements, is_first_page=False, is_last_page=False):
        calls.append((is_first_page, is_last_page))
        return original(self, elements, is_first_page=is_first_page, is_last_page=is_last_page)

    monkeypatch.setattr(OutputDocument, "insert_new_page", recording)
    rows = [["Name"], ["A"], ["B"], ["C"], ["D"]]

    result = _merge(store, template, make_data(rows), table_wrap_merge="disable")

    assert result.is_success
    assert calls == [(True, False), (False, False), (False, False), (False, True)]
    body = store.open_document(_output_id(result)).get_body()
    assert body.get_child(0).get_text() == "Dear A"
    assert len(body.find_elements(ElementType.PAGE_BREAK)) == 3


def test_no_data_rows_yields_error_and_no_outputs(store, make_template, make_data):
    template = make_template("Dear <<Name>>")

    result = _merge(store, template, make_data([["Name", "Amount"]]))

    assert result.is_error
    assert "no records" in result.message.lower()
    assert store.document_ids() == [template.id]


def test_missing_sheet_yields_error(store, make_template, make_data):
    template = make_template("Dear <<Name>>")
    data = make_data(RECORDS)
    data.sheet_name = "Missing"

    result = _merge(store, template, data)

    assert result.is_error
    assert store.document_ids() == [template.id]


def test_invalid_option_is_reported_before_any_output(store, make_template, make_data):
    template = make_template("Dear <<Name>>")

    result = _merge(store, template, make_data(RECORDS), merge_type="envelopes")

    assert result.is_error
    assert "envelopes" in result.message
    assert store.document_ids() == [template.id]


def test_table_wrap_blank_first_line_without_confirmation_is_canceled(store, make_template, make_data):
    template = make_template(build_paragraph(""), "Dear <<Name>>")
    orchestrator = MergeOrchestrator(store, make_data(RECORDS), template.id, MergeOptions())

    result = orchestrator.run_merge()

    assert result.kind == MergeResult.WARNING
    assert [warning["code"] for warning in result.warnings] == ["template_starts_with_blank_line"]
    assert store.document_ids() == [template.id]


def test_table_wrap_blank_first_line_with_confirmation_proceeds(store, make_template, make_data):
    template = make_template(build_paragraph(""), "Dear <<Name>>", "Amount: <<Amount>>")
    asked = []

    def confirm(warnings):
        asked.append([warning["code"] for warning in warnings])
        return True

    orchestrator = MergeOrchestrator(store, make_data(RECORDS), template.id, MergeOptions())
    result = orchestrator.run_merge(confirm_callback=confirm)

    assert result.is_success
    assert asked == [["template_starts_with_blank_line"]]
    body = store.open_document(_output_id(result)).get_body()
    tables = [child for child in body.get_children() if child.type == ElementType.TABLE]
    assert len(tables) == 2
    assert "Dear Alice" in tables[0].get_text()
    assert "Amount: 20" in tables[1].get_text()
    assert body.get_child(0).type == ElementType.PARAGRAPH


def test_page_break_warning_can_fall_back_to_standard_merge(store, make_template, make_data):
    breaking = build_paragraph("Page one <<Name>>")
    breaking.append_page_break()
    template = make_template(breaking, "Page two <<Name>>")

    orchestrator = MergeOrchestrator(store, make_data(RECORDS), template.id, MergeOptions())
    result = orchestrator.run_merge(confirm_callback=lambda warnings: CONFIRM_STANDARD)

    assert result.is_success
    body = store.open_document(_output_id(result)).get_body()
    assert not [child for child in body.get_children() if child.type == ElementType.TABLE]
    # One break inside each record's template plus one between the records.
    assert len(body.find_elements(ElementType.PAGE_BREAK)) == 3


def test_table_wrap_drops_template_page_breaks(store, make_template, make_data):
    breaking = build_paragraph("Page one <<Name>>")
    breaking.append_page_break()
    template = make_template(breaking, "Page two <<Name>>")

    result = _merge(store, template, make_data(RECORDS))

    assert result.is_success
    body = store.open_document(_output_id(result)).get_body()
    for table in [child for child in body.get_children() if child.type == ElementType.TABLE]:
        assert not table.find_elements(ElementType.PAGE_BREAK)
    assert len(body.find_elements(ElementType.PAGE_BREAK)) == 1


def test_table_wrap_shifts_margins(store, make_template, make_data):
    template = make_template("Dear <<Name>>")

    result = _merge(store, template, make_data(RECORDS))

    document = store.open_document(_output_id(result))
    assert document.get_margin("top") == 72.0 - 3.6
    assert document.get_margin("bottom") == 72.0 - 3.6
    assert document.get_margin("left") == 72.0


def test_table_wrap_makes_fewer_structural_appends():
    lines = [f"Line {index} for <<Name>>" for index in range(8)]
    rows = [["Name"]] + [[f"Person {index}"] for index in range(5)]
    counts = {}
    for mode in ("enable", "disable"):
        store = InMemoryDocumentStore()
        tree = new_body_tree()
        body = tree.root_element()
        for line in lines:
            body.append_paragraph(line)
        body.get_child(0).remove_from_parent()
        template = store.add_document("Template", tree)
        data = DataSpreadsheet(InMemoryDataStore({"Contacts": {"Sheet1": rows}}), "Contacts", "Sheet1")

        result = _merge(store, template, data, table_wrap_merge=mode)

        assert result.is_success
        counts[mode] = store.operation_counts["append"]

    assert counts["enable"] < counts["disable"]


def test_multi_file_creates_one_output_per_record_in_a_folder(store, make_template, make_data):
    template = make_template("Dear <<Name>>", "Amount: <<Amount>>")

    result = _merge(store, template, make_data(RECORDS), num_output_files="multi",
                    output_file_name="Letter for <<Name>>", table_wrap_merge="disable")

    assert result.is_success
    assert result.url.startswith("memory://folders/")
    folder_id = result.url.rsplit("/", 1)[-1]
    outputs = store.files_in_folder(folder_id)
    assert sorted(store.get_name(output_id) for output_id in outputs) == ["Letter for Alice", "Letter for Bob"]
    for output_id in outputs:
        body = store.open_document(output_id).get_body()
        assert not body.find_elements(ElementType.PAGE_BREAK)
        assert len(page_texts(body)) == 1


def test_multi_file_table_wrap_rebuilds_wrapper_per_output(store, make_template, make_data):
    template = make_template("Dear <<Name>>")

    result = _merge(store, template, make_data(RECORDS), num_output_files="multi")

    folder_id = result.url.rsplit("/", 1)[-1]
    texts = sorted(store.open_document(output_id).get_body().get_text().strip()
                   for output_id in store.files_in_folder(folder_id))
    assert texts == ["Dear Alice", "Dear Bob"]


def test_pdf_output_replaces_native_document(store, make_template, make_data):
    template = make_template("Dear <<Name>>")

    result = _merge(store, template, make_data(RECORDS), output_file_type="pdf", table_wrap_merge="disable")

    assert result.is_success
    file_id = _output_id(result)
    assert store.read_file(file_id).startswith(b"%PDF")
    assert store.get_name(file_id).endswith(".pdf")
    assert len(store.trashed) == 1
    assert store.document_ids() == [template.id]


def test_failure_mid_merge_is_reported_and_earlier_outputs_remain(store, make_template, make_data, monkeypatch):
    template = make_template("Dear <<Name>>")
    original = OutputDocument.insert_new_page
    seen = []

    def flaky(self, elements, is_first_page=False, is_last_page=False):
        seen.append(1)
        if len(seen) == 2:
            raise RuntimeError("append failed")
        return original(self, elements, is_first_page=is_first_page, is_last_page=is_last_page)

    monkeypatch.setattr(OutputDocument, "insert_new_page", flaky)

    result = _merge(store, template, make_data(RECORDS), num_output_files="multi", table_wrap_merge="disable")

    assert result.is_error
    assert "RuntimeError: append failed" in result.message
    assert len(store.document_ids()) == 3
    assert store.trashed == []


def test_progress_callback_reports_each_record(store, make_template, make_data):
    template = make_template("Dear <<Name>>")
    progress = []

    orchestrator = MergeOrchestrator(store, make_data(RECORDS), template.id,
                                     MergeOptions(table_wrap_merge="disable"))
    orchestrator.run_merge(progress_callback=lambda current, total, message: progress.append((current, total)))

    assert progress == [(1, 2), (2, 2)]


def test_single_file_name_keeps_field_tokens(store, make_template, make_data):
    template = make_template("Dear <<Name>>")

    result = _merge(store, template, make_data(RECORDS), output_file_name="Letters <<Name>>",
                    table_wrap_merge="disable")

    assert result.is_success
    assert store.get_name(_output_id(result)) == "Letters <<Name>>"
