from docx import Document
from pypdf import PdfReader

from document_model import ElementType, Position
from document_store import DocxDocumentStore, MIME_TEXT
from merge_engine import MergeOptions, MergeOrchestrator, TemplateDocument

RECORDS = [["Name", "Amount"], ["Alice", 10], ["Bob", 20]]


def _page_breaks(path):
    return Document(str(path)).element.body.xpath('.//w:br[@w:type="page"]')


def test_docx_round_trip_preserves_text_and_tables(tmp_path, make_docx):
    make_docx("source.docx", paragraphs=["First <<Name>>", "Second"], table=[["a", "b"], ["c", "d"]])
    store = DocxDocumentStore(str(tmp_path))

    document = store.open_document("source.docx")
    body = document.get_body()
    assert [child.type for child in body.get_children()] == [
        ElementType.PARAGRAPH, ElementType.PARAGRAPH, ElementType.TABLE, ElementType.PARAGRAPH,
    ]
    body.get_child(0).replace_text("<<Name>>", "Alice")
    store.save_and_close(document)

    saved = Document(str(tmp_path / "source.docx"))
    assert [paragraph.text for paragraph in saved.paragraphs] == ["First Alice", "Second", ""]
    assert saved.tables[0].cell(1, 1).text == "d"
    assert store.export_document("source.docx", MIME_TEXT).decode("utf-8").startswith("First Alice")


def test_letters_merge_into_docx(tmp_path, make_docx, make_data):
    make_docx("letter.docx", paragraphs=["Dear <<Name>>", "Amount: <<Amount>>"])
    store = DocxDocumentStore(str(tmp_path))

    result = MergeOrchestrator(
        store, make_data(RECORDS), "letter.docx", MergeOptions(table_wrap_merge="disable"),
    ).run_merge()

    assert result.is_success
    output = tmp_path / "[Merge Output] letter.docx"
    assert result.url == output.as_uri()
    texts = [paragraph.text for paragraph in Document(str(output)).paragraphs if paragraph.text.strip()]
    assert texts == ["Dear Alice", "Amount: 10", "Dear Bob", "Amount: 20"]
    assert len(_page_breaks(output)) == 1
    assert [paragraph.text for paragraph in Document(str(tmp_path / "letter.docx")).paragraphs] == [
        "Dear <<Name>>", "Amount: <<Amount>>",
    ]


def test_table_wrapped_letters_into_docx(tmp_path, make_docx, make_data):
    make_docx("letter.docx", paragraphs=["Dear <<Name>>", "Amount: <<Amount>>"])
    store = DocxDocumentStore(str(tmp_path))

    result = MergeOrchestrator(store, make_data(RECORDS), "letter.docx", MergeOptions()).run_merge()

    assert result.is_success
    merged = Document(str(tmp_path / "[Merge Output] letter.docx"))
    assert len(merged.tables) == 2
    assert merged.tables[0].cell(0, 0).text == "Dear Alice\nAmount: 10"
    assert merged.tables[1].cell(0, 0).text == "Dear Bob\nAmount: 20"
    assert not merged.element.body.xpath('./w:tbl/w:tblPr/w:tblStyle')
    assert len(_page_breaks(tmp_path / "[Merge Output] letter.docx")) == 1


def test_labels_merge_into_docx(tmp_path, make_docx, make_data):
    make_docx("labels.docx", paragraphs=[""], table=[["<<Name>>", "<<Name>>"]])
    store = DocxDocumentStore(str(tmp_path))

    result = MergeOrchestrator(
        store, make_data([["Name"], ["A"], ["B"], ["C"]]), "labels.docx", MergeOptions(merge_type="labels"),
    ).run_merge()

    assert result.is_success
    merged = Document(str(tmp_path / "[Merge Output] labels.docx"))
    assert [[cell.text for cell in table.rows[0].cells] for table in merged.tables] == [["A", "B"], ["C", ""]]


def test_multi_file_pdf_output_through_word(tmp_path, make_docx, make_data, patch_word_converter):
    patch_word_converter(available=True, pages=1)
    make_docx("letter.docx", paragraphs=["Dear <<Name>>"])
    store = DocxDocumentStore(str(tmp_path))
    options = MergeOptions(num_output_files="multi", output_file_type="pdf",
                           output_file_name="Letter <<Name>>", table_wrap_merge="disable")

    result = MergeOrchestrator(store, make_data(RECORDS), "letter.docx", options).run_merge()

    assert result.is_success
    folder = tmp_path / "[Merge Output] letter"
    assert result.url == folder.as_uri()
    assert sorted(path.name for path in folder.iterdir()) == ["Letter Alice.pdf", "Letter Bob.pdf"]
    assert sorted(path.name for path in (tmp_path / ".trash").iterdir()) == ["Letter Alice.docx", "Letter Bob.docx"]


def test_pdf_output_falls_back_to_reportlab(tmp_path, make_docx, make_data, patch_word_converter):
    patch_word_converter(available=False)
    make_docx("letter.docx", paragraphs=["Dear <<Name>>", "Amount: <<Amount>>"])
    store = DocxDocumentStore(str(tmp_path))

    result = MergeOrchestrator(
        store, make_data(RECORDS), "letter.docx",
        MergeOptions(output_file_type="pdf", table_wrap_merge="disable"),
    ).run_merge()

    assert result.is_success
    pdf_path = tmp_path / "[Merge Output] letter.pdf"
    assert pdf_path.exists()
    assert not (tmp_path / "[Merge Output] letter.docx").exists()
    reader = PdfReader(str(pdf_path))
    assert len(reader.pages) == 2
    assert "Dear Bob" in reader.pages[1].extract_text()


def test_inserted_field_is_written_to_the_docx_template(tmp_path, make_docx):
    make_docx("letter.docx", paragraphs=["Dear ,"])
    template = TemplateDocument(DocxDocumentStore(str(tmp_path)), "letter.docx")
    document = template.get_document()
    document.set_cursor(Position(document.get_body().get_child(0).get_child(0), 5))

    assert template.insert_merge_field("Name") is None

    assert Document(str(tmp_path / "letter.docx")).paragraphs[0].text == "Dear <<Name>>,"
