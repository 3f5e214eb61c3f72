import json

import pytest

from merge_engine import MergeOptions, MergeOrchestrator, MergeResult, OptionsStore


def test_options_round_trip_through_json_store(tmp_path):
    store = OptionsStore(str(tmp_path / "settings" / "options.json"))
    store.save(MergeOptions(merge_type="labels", output_file_type="pdf", output_file_name="Labels"))

    loaded = store.load()

    assert loaded.to_dict() == {
        "mergeType": "labels",
        "tableWrapMerge": "enable",
        "numOutputFiles": "single",
        "outputFileType": "pdf",
        "outputFileName": "Labels",
        "outputFileNamePrefix": "[Merge Output]",
    }


def test_partial_save_keeps_other_options(tmp_path):
    store = OptionsStore(str(tmp_path / "options.json"))
    store.save({"mergeType": "labels"})
    store.save({"numOutputFiles": "multi"})

    loaded = store.load()

    assert loaded.merge_type == "labels"
    assert loaded.multi_file


def test_set_default_options_fills_missing_values(tmp_path):
    path = tmp_path / "options.json"
    path.write_text(json.dumps({"tableWrapMerge": "disable", "outputFileType": None}), encoding="utf-8")

    options = OptionsStore(str(path)).set_default_options()

    assert options.table_wrap_merge == "disable"
    assert options.output_file_type == "native"
    assert json.loads(path.read_text(encoding="utf-8"))["mergeType"] == "letters"


def test_invalid_options_are_not_saved(tmp_path):
    store = OptionsStore(str(tmp_path / "options.json"))
    with pytest.raises(ValueError):
        store.save(MergeOptions(num_output_files="several"))
    assert not (tmp_path / "options.json").exists()


def test_from_dict_ignores_unknown_keys():
    options = MergeOptions.from_dict({"mergeType": "labels", "theme": "dark"})
    assert options.is_labels
    assert not options.wants_pdf


def test_result_display_carries_link():
    display = MergeResult.success("Merge done!", "memory://documents/1").to_display()
    assert display["type"] == "alert-success"
    assert 'href="memory://documents/1"' in display["content"]
    assert MergeResult.warning("Merge canceled.").to_display()["type"] == "alert-warning"


def test_run_logs_are_written_without_record_values(tmp_path, store, make_template, make_data):
    template = make_template("Dear <<Name>>")
    events = []
    orchestrator = MergeOrchestrator(
        store,
        make_data([["Name"], ["Alice"], ["Bob"]]),
        template.id,
        MergeOptions(table_wrap_merge="disable"),
        logs_dir=str(tmp_path / "logs"),
    )

    result = orchestrator.run_merge(event_callback=events.append)

    assert result.is_success
    jsonl_logs = list((tmp_path / "logs").glob("run_*.jsonl"))
    text_logs = list((tmp_path / "logs").glob("run_*.log"))
    assert len(jsonl_logs) == 1 and len(text_logs) == 1
    payloads = [json.loads(line) for line in jsonl_logs[0].read_text(encoding="utf-8").splitlines()]
    names = [payload["event"] for payload in payloads]
    assert names[0] == "merge_start"
    assert names[-1] == "merge_done"
    assert names.count("record_merged") == 2
    assert "output_finalized" in names
    assert [event["event"] for event in events] == names
    assert "Alice" not in jsonl_logs[0].read_text(encoding="utf-8")


def test_failed_run_is_logged(tmp_path, store, make_template, make_data):
    template = make_template("Dear <<Name>>")
    orchestrator = MergeOrchestrator(store, make_data([["Name"]]), template.id, logs_dir=str(tmp_path))

    result = orchestrator.run_merge()

    assert result.is_error
    log_text = next(tmp_path.glob("run_*.log")).read_text(encoding="utf-8")
    assert "ERROR merge_failed: There are no records to merge." in log_text


def test_logging_disabled_writes_nothing(tmp_path, store, make_template, make_data):
    template = make_template("Dear <<Name>>")
    orchestrator = MergeOrchestrator(store, make_data([["Name"], ["A"]]), template.id,
                                     MergeOptions(table_wrap_merge="disable"),
                                     logs_dir=str(tmp_path / "logs"), enable_detailed_logging=False)

    assert orchestrator.run_merge().is_success
    assert not (tmp_path / "logs").exists()


def test_output_names_from_records_are_not_logged(tmp_path, store, make_template, make_data):
    template = make_template("Dear <<Name>>")
    events = []
    options = MergeOptions(num_output_files="multi", output_file_name="Letter for <<Name>>",
                           table_wrap_merge="disable")
    orchestrator = MergeOrchestrator(store, make_data([["Name"], ["Alice"], ["Bob"]]), template.id, options,
                                     logs_dir=str(tmp_path / "logs"))

    assert orchestrator.run_merge(event_callback=events.append).is_success

    jsonl_text = next((tmp_path / "logs").glob("run_*.jsonl")).read_text(encoding="utf-8")
    text_log = next((tmp_path / "logs").glob("run_*.log")).read_text(encoding="utf-8")
    for logged in (jsonl_text, text_log, json.dumps(events, default=str)):
        assert "Alice" not in logged
        assert "Bob" not in logged
    created = [event for event in events if event["event"] == "output_created"]
    assert [event["context"] for event in created] == [
        {"name": "<redacted>", "record": 1},
        {"name": "<redacted>", "record": 2},
    ]


def test_full_privacy_mode_logs_output_names(tmp_path, store, make_template, make_data):
    template = make_template("Dear <<Name>>")
    options = MergeOptions(num_output_files="multi", output_file_name="Letter for <<Name>>",
                           table_wrap_merge="disable")
    orchestrator = MergeOrchestrator(store, make_data([["Name"], ["Alice"]]), template.id, options,
                                     logs_dir=str(tmp_path), log_privacy_mode="full")

    assert orchestrator.run_merge().is_success
    assert "Letter for Alice" in next(tmp_path.glob("run_*.jsonl")).read_text(encoding="utf-8")
