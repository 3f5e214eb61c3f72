"""
Mail Merge - GUI Application
Desktop interface for merging spreadsheet records into a .docx template
"""

import tkinter as tk
from tkinter import ttk, filedialog, messagebox
import threading
import os
import platform
import subprocess
from pathlib import Path
from urllib.parse import unquote, urlparse

from document_store import DocxDocumentStore, WordToPdfConverter
from merge_engine import (
    CONFIRM_CANCEL,
    CONFIRM_PROCEED,
    CONFIRM_STANDARD,
    MergeOptions,
    MergeOrchestrator,
    OptionsStore,
    get_merge_field,
)
from spreadsheet_data import DataSpreadsheet, WorkbookDataStore

_LOG_MAX_LINES = 5000
_LOG_TRIM_LINES = 1000

OPTIONS_PATH = os.path.join(Path.home(), ".mail_merge", "options.json")
LOGS_DIR = os.path.join(Path.home(), ".mail_merge", "logs")


class MailMergeGUI:
    def __init__(self, root, options_store: OptionsStore = None):
        self.root = root
        self.root.title("Mail Merge v1.0")
        self.root.geometry("860x780")
        self.root.resizable(True, True)

        self.options_store = options_store or OptionsStore(OPTIONS_PATH)
        options = self.options_store.set_default_options()

        # Variables
        self.template_path = tk.StringVar()
        self.data_path = tk.StringVar()
        self.sheet_name = tk.StringVar()

        self.merge_type = tk.StringVar(value=options.merge_type)
        self.table_wrap_merge = tk.StringVar(value=options.table_wrap_merge)
        self.num_output_files = tk.StringVar(value=options.num_output_files)
        self.output_file_type = tk.StringVar(value=options.output_file_type)
        self.output_file_name = tk.StringVar(value=options.output_file_name or "")

        self.is_processing = False
        self._merge_thread = None

        # Build UI
        self.create_widgets()
        self._check_word_availability()

        self.root.protocol("WM_DELETE_WINDOW", self._on_window_close)

    def create_widgets(self):
        """Create all UI widgets"""

        # Header
        header_frame = tk.Frame(self.root, bg='#2E86AB', height=60)
        header_frame.pack(fill=tk.X)
        header_frame.pack_propagate(False)

        title_label = tk.Label(
            header_frame,
            text="Mail Merge",
            font=('Arial', 18, 'bold'),
            bg='#2E86AB',
            fg='white'
        )
        title_label.pack(pady=15)

        content_frame = tk.Frame(self.root, padx=20, pady=20)
        content_frame.pack(fill=tk.BOTH, expand=True)
        content_frame.grid_columnconfigure(0, weight=1)
        content_frame.grid_columnconfigure(1, weight=1)
        content_frame.grid_rowconfigure(11, weight=1)

        # Template selection
        tk.Label(content_frame, text="Template Document (.docx):", font=('Arial', 10, 'bold')).grid(
            row=0, column=0, sticky='w', pady=(0, 5)
        )
        template_frame = tk.Frame(content_frame)
        template_frame.grid(row=1, column=0, columnspan=2, sticky='ew', pady=(0, 15))
        tk.Entry(template_frame, textvariable=self.template_path, width=50, state='readonly').pack(
            side=tk.LEFT, fill=tk.X, expand=True, padx=(0, 10)
        )
        tk.Button(template_frame, text="Browse...", command=self.browse_template, width=10).pack(side=tk.RIGHT)

        # Data selection
        tk.Label(content_frame, text="Data Workbook (.xlsx, .csv):", font=('Arial', 10, 'bold')).grid(
            row=2, column=0, sticky='w', pady=(0, 5)
        )
        data_frame = tk.Frame(content_frame)
        data_frame.grid(row=3, column=0, columnspan=2, sticky='ew', pady=(0, 15))
        tk.Entry(data_frame, textvariable=self.data_path, width=40, state='readonly').pack(
            side=tk.LEFT, fill=tk.X, expand=True, padx=(0, 10)
        )
        tk.Button(data_frame, text="Browse...", command=self.browse_data, width=10).pack(side=tk.RIGHT)
        self.sheet_combo = ttk.Combobox(data_frame, textvariable=self.sheet_name, state='readonly', width=18)
        self.sheet_combo.pack(side=tk.RIGHT, padx=(0, 10))
        self.sheet_combo.bind("<<ComboboxSelected>>", lambda _event: self.refresh_fields())

        # Merge fields
        fields_frame = tk.LabelFrame(content_frame, text="Merge Fields", padx=10, pady=10)
        fields_frame.grid(row=4, column=0, columnspan=2, sticky='ew', pady=(0, 15))
        self.fields_list = tk.Listbox(fields_frame, height=4, exportselection=False)
        self.fields_list.pack(side=tk.LEFT, fill=tk.X, expand=True, padx=(0, 10))
        tk.Button(fields_frame, text="Copy Field", command=self.copy_merge_field, width=10).pack(side=tk.RIGHT)

        # Options
        options_frame = tk.LabelFrame(content_frame, text="Merge Options", padx=10, pady=10)
        options_frame.grid(row=5, column=0, columnspan=2, sticky='ew', pady=(0, 15))

        for row, (label, variable, choices) in enumerate((
            ("Merge type:", self.merge_type, (("Letters", "letters"), ("Labels", "labels"))),
            ("Fast merge (table wrap):", self.table_wrap_merge, (("Enable", "enable"), ("Disable", "disable"))),
            ("Output files:", self.num_output_files, (("Single", "single"), ("One per record", "multi"))),
            ("Output format:", self.output_file_type, (("Word document", "native"), ("PDF", "pdf"))),
        )):
            tk.Label(options_frame, text=label).grid(row=row, column=0, sticky='w', padx=(0, 10))
            for column, (text, value) in enumerate(choices, start=1):
                tk.Radiobutton(options_frame, text=text, variable=variable, value=value).grid(
                    row=row, column=column, sticky='w', padx=10
                )
        self.pdf_radio = options_frame.grid_slaves(row=3, column=2)[0]

        tk.Label(options_frame, text="Output file name:").grid(row=4, column=0, sticky='w', padx=(0, 10))
        tk.Entry(options_frame, textvariable=self.output_file_name, width=40).grid(
            row=4, column=1, columnspan=2, sticky='w', padx=10
        )

        # Start button
        self.start_button = tk.Button(
            content_frame,
            text="Start Merge",
            command=self.start_merge,
            bg='#2E86AB',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            cursor='hand2'
        )
        self.start_button.grid(row=6, column=0, columnspan=2, sticky='ew', pady=(0, 15))

        self.status_label = tk.Label(content_frame, text="Status: Ready", fg='#666')
        self.status_label.grid(row=7, column=0, columnspan=2, sticky='w', pady=(0, 5))

        self.progress = ttk.Progressbar(content_frame, mode='determinate')
        self.progress.grid(row=8, column=0, columnspan=2, sticky='ew', pady=(0, 10))

        self.records_label = tk.Label(content_frame, text="Records Merged: 0", fg='#666')
        self.records_label.grid(row=9, column=0, sticky='w')

        tk.Label(content_frame, text="Live Run Log:", font=('Arial', 10, 'bold')).grid(
            row=10, column=0, columnspan=2, sticky='w', pady=(4, 4)
        )

        log_frame = tk.Frame(content_frame)
        log_frame.grid(row=11, column=0, columnspan=2, sticky='nsew')
        log_frame.grid_columnconfigure(0, weight=1)
        log_frame.grid_rowconfigure(0, weight=1)
        self.log_text = tk.Text(log_frame, height=12, wrap='word', state='disabled')
        self.log_text.grid(row=0, column=0, sticky='nsew')
        log_scroll = ttk.Scrollbar(log_frame, orient='vertical', command=self.log_text.yview)
        log_scroll.grid(row=0, column=1, sticky='ns')
        self.log_text.configure(yscrollcommand=log_scroll.set)

    def _check_word_availability(self):
        """Note in the PDF option when Word is missing; ReportLab renders PDFs instead."""
        available, _reason = WordToPdfConverter.is_available()
        if not available:
            self.pdf_radio.config(text="PDF (basic layout)")

    def _on_window_close(self):
        if self.is_processing:
            if not messagebox.askyesno(
                "Merge in progress",
                "A merge is currently running and cannot be interrupted.\n\nClose anyway?",
            ):
                return
        self.root.destroy()

    def browse_template(self):
        path = filedialog.askopenfilename(
            title="Select Template Document",
            filetypes=[("Word documents", "*.docx"), ("All files", "*.*")],
        )
        if path:
            self.template_path.set(path)

    def browse_data(self):
        path = filedialog.askopenfilename(
            title="Select Data Workbook",
            filetypes=[("Workbooks", "*.xlsx *.csv"), ("All files", "*.*")],
        )
        if not path:
            return
        self.data_path.set(path)
        sheets = DataSpreadsheet(WorkbookDataStore(), path).get_sheet_names() or []
        self.sheet_combo.config(values=sheets)
        self.sheet_name.set(sheets[0] if sheets else "")
        self.refresh_fields()

    def _data_source(self) -> DataSpreadsheet:
        return DataSpreadsheet(WorkbookDataStore(), self.data_path.get() or None, self.sheet_name.get() or None)

    def refresh_fields(self):
        self.fields_list.delete(0, tk.END)
        for field in self._data_source().get_fields() or []:
            self.fields_list.insert(tk.END, field)

    def copy_merge_field(self):
        """Put the selected field's token on the clipboard for pasting into the template."""
        selection = self.fields_list.curselection()
        if not selection:
            messagebox.showerror("Error", "Select a merge field first.")
            return
        token = get_merge_field(self.fields_list.get(selection[0]))
        self.root.clipboard_clear()
        self.root.clipboard_append(token)
        self._append_log(f"[INFO] Copied {token} to the clipboard.")

    def _append_log(self, line):
        self.log_text.config(state='normal')
        self.log_text.insert(tk.END, line + "\n")
        line_count = int(self.log_text.index('end-1c').split('.')[0])
        if line_count > _LOG_MAX_LINES:
            self.log_text.delete('1.0', f'{_LOG_TRIM_LINES + 1}.0')
        self.log_text.see(tk.END)
        self.log_text.config(state='disabled')

    def _collect_options(self) -> MergeOptions:
        return MergeOptions(
            merge_type=self.merge_type.get(),
            table_wrap_merge=self.table_wrap_merge.get(),
            num_output_files=self.num_output_files.get(),
            output_file_type=self.output_file_type.get(),
            output_file_name=self.output_file_name.get().strip() or None,
        )

    def on_progress_update(self, current, total, message):
        try:
            self.root.after(0, self._handle_progress_update, current, total, message)
        except Exception:
            pass  # Window may have been destroyed

    def _handle_progress_update(self, current, total, message):
        self.progress.config(maximum=max(total, 1), value=current)
        self.status_label.config(text=f"Status: {message}", fg='#2E86AB')
        self.records_label.config(text=f"Records Merged: {current}/{max(total, 1)}")

    def on_run_event(self, payload):
        try:
            self.root.after(0, self._handle_run_event, payload)
        except Exception:
            pass

    def _handle_run_event(self, payload):
        if not isinstance(payload, dict):
            return
        level = str(payload.get("level", "INFO")).upper()
        event = str(payload.get("event", "event"))
        message = str(payload.get("message", ""))
        self._append_log(f"[{level}] {event}: {message}")

    def confirm_formatting_risks(self, warnings):
        """Ask about formatting risks on the UI thread; called from the merge thread."""
        answer = {}
        answered = threading.Event()

        def _ask():
            details = "\n\n".join(warning['message'] for warning in warnings)
            choice = messagebox.askyesnocancel(
                "Formatting warning",
                f"{details}\n\n"
                "Yes: continue with the fast merge.\n"
                "No: use the standard (slower) merge.\n"
                "Cancel: stop the merge.",
            )
            if choice is True:
                answer['value'] = CONFIRM_PROCEED
            elif choice is False:
                answer['value'] = CONFIRM_STANDARD
            else:
                answer['value'] = CONFIRM_CANCEL
            answered.set()

        self.root.after(0, _ask)
        answered.wait()
        return answer['value']

    def start_merge(self):
        """Start the merging process"""
        if self.is_processing:
            return

        template = self.template_path.get()
        if not template or not os.path.isfile(template):
            messagebox.showerror("Error", "Please select a template document")
            return
        if not self.data_path.get() or not self.sheet_name.get():
            messagebox.showerror("Error", "Please select a data workbook and sheet")
            return

        options = self._collect_options()
        try:
            self.options_store.save(options)
        except ValueError as exc:
            messagebox.showerror("Error", str(exc))
            return

        self.is_processing = True
        self.start_button.config(state='disabled', text='Merging...')
        self.progress.config(value=0)
        self.status_label.config(text="Status: Merging...", fg='#2E86AB')
        self.log_text.config(state='normal')
        self.log_text.delete("1.0", tk.END)
        self.log_text.config(state='disabled')
        self._append_log("Run started.")

        self._merge_thread = threading.Thread(target=self.run_merge, args=(options,), daemon=True)
        self._merge_thread.start()

    def run_merge(self, options: MergeOptions):
        """Run the merge operation (in separate thread)"""
        template = Path(self.template_path.get())
        store = DocxDocumentStore(str(template.parent))
        orchestrator = MergeOrchestrator(
            store,
            self._data_source(),
            template.name,
            options,
            logs_dir=LOGS_DIR,
        )
        result = orchestrator.run_merge(
            confirm_callback=self.confirm_formatting_risks,
            progress_callback=self.on_progress_update,
            event_callback=self.on_run_event,
        )
        try:
            self.root.after(0, self.on_merge_complete, result)
        except Exception:
            pass

    def on_merge_complete(self, result):
        self.is_processing = False
        self.start_button.config(state='normal', text='Start Merge')

        if result.is_error:
            self.status_label.config(text="Status: Error", fg='#dc3545')
            self._append_log(f"[ERROR] {result.message}")
            display_msg = result.message if len(result.message) <= 1000 else result.message[:1000] + "\n\n... (truncated)"
            messagebox.showerror("Error", f"The merge did not complete:\n\n{display_msg}")
            return

        if not result.is_success:
            self.status_label.config(text="Status: Cancelled", fg='#dc3545')
            self._append_log(f"[WARNING] {result.message}")
            messagebox.showwarning("Cancelled", result.message)
            return

        self.progress.config(value=self.progress['maximum'])
        self.status_label.config(text="Status: Complete!", fg='#28a745')
        self._append_log("Run completed.")

        target = unquote(urlparse(result.url).path) if result.url else ""
        if platform.system() == 'Windows' and target.startswith('/'):
            target = target.lstrip('/')
        if messagebox.askyesno("Success", f"{result.message}\n\nOutput:\n{target}\n\nOpen it now?"):
            try:
                if platform.system() == 'Windows':
                    os.startfile(target)
                elif platform.system() == 'Darwin':  # macOS
                    subprocess.run(['open', target], check=True)
                else:  # Linux and other Unix-like systems
                    subprocess.run(['xdg-open', target], check=True)
            except (OSError, FileNotFoundError, subprocess.CalledProcessError):
                messagebox.showwarning("Cannot Open Output",
                                       f"Output saved to:\n{target}\n\n"
                                       f"Please open manually.")


def main():
    """Main entry point"""
    root = tk.Tk()
    MailMergeGUI(root)
    root.mainloop()


if __name__ == "__main__":
    main()
