from pathlib import Path


def test_gui_options_default_from_options_store():
    source = Path("mail_merge_gui.py").read_text(encoding="utf-8")
    assert "options = self.options_store.set_default_options()" in source
    assert "self.merge_type = tk.StringVar(value=options.merge_type)" in source


def test_gui_asks_before_risky_table_wrap_merge():
    source = Path("mail_merge_gui.py").read_text(encoding="utf-8")
    assert "confirm_callback=self.confirm_formatting_risks" in source
    assert "answer['value'] = CONFIRM_STANDARD" in source
