from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import ttkbootstrap as tb
from ttkbootstrap.dialogs import Messagebox

from plugins.base import AppContext, run_plugin_standalone
from .copy_confirmer_core import (
    AllPresent,
    ComparisonOutcome,
    ConfirmerError,
    CopyConfirmer,
    CopyConfirmerConfig,
    MissingFiles,
    PhaseProgress,
)
from .copy_confirmer_report import build_report, write_report

logger = logging.getLogger(__name__)

_STATUS_TAGS = {
    "FOUND": "success",
    "MISSING": "danger",
    "EXCLUDED": "secondary",
}

_PREFIX_LABEL = "folder"
_SUBSTRING_LABEL = "contains"


@dataclass
class _ExclusionRow:
    kind: str
    text: str

    def label(self) -> str:
        return f"{self.kind}: {self.text}"


def _outcome_rows(outcome: ComparisonOutcome, excluded: List[str]) -> List[Tuple[str, str, str]]:
    rows: List[Tuple[str, str, str]] = []
    if isinstance(outcome, MissingFiles):
        rows.extend(("MISSING", path, "") for path in outcome.paths)
    elif isinstance(outcome, AllPresent):
        for entry in outcome.found.values():
            dest = ", ".join(entry.dest_paths)
            rows.extend(("FOUND", path, dest) for path in entry.src_paths)
    rows.extend(("EXCLUDED", path, "") for path in excluded)
    return rows


def _relative_exclusion(source: str, path: str) -> Optional[str]:
    """Return ``path`` relative to ``source``, or None unless it lies strictly below it."""
    try:
        rel = os.path.relpath(path, source)
    except ValueError:
        # different drives on Windows
        return None
    if rel == os.curdir or rel == os.pardir or rel.startswith(os.pardir + os.sep):
        return None
    return rel


def _split_exclusions(rows: List[_ExclusionRow]) -> Tuple[List[str], List[str]]:
    excludes = [row.text for row in rows if row.kind == _PREFIX_LABEL]
    patterns = [row.text for row in rows if row.kind == _SUBSTRING_LABEL]
    return excludes, patterns


class CopyConfirmerTool:
    key = "copy_confirmer"
    title = "Copy Confirmer"
    description = (
        "Confirm every file in a source folder has an identical copy in one of the destinations."
    )

    def __init__(self) -> None:
        self.ctx: Optional[AppContext] = None
        self.panel: Optional[tb.Frame] = None
        self.source_var: Optional[tb.StringVar] = None
        self.jobs_var: Optional[tb.IntVar] = None
        self.pattern_var: Optional[tb.StringVar] = None
        self.summary_var: Optional[tb.StringVar] = None
        self.progress_var: Optional[tb.StringVar] = None
        self.progress_value: Optional[tb.DoubleVar] = None
        self.dest_list = None
        self.exclusion_list = None
        self.result_tree = None
        self.run_button = None

        self._exclusions: List[_ExclusionRow] = []
        self._worker: Optional[threading.Thread] = None
        self._ui_queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
        self._last_report: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------ UI --
    def make_panel(self, master, context: AppContext):
        import tkinter as tk
        from tkinter import filedialog

        self.ctx = context
        root = tb.Frame(master)
        self.panel = root

        source_frame = tb.Labelframe(root, text="Source directory", padding=8)
        source_frame.pack(fill="x", padx=8, pady=(10, 6))
        self.source_var = tk.StringVar(value="")
        tb.Entry(source_frame, textvariable=self.source_var).pack(side="left", fill="x", expand=True, padx=(0, 6))
        tb.Button(source_frame, text="Browse…", command=lambda: self._choose_source(filedialog.askdirectory)).pack(side="right")

        dest_frame = tb.Labelframe(root, text="Destination directories", padding=8)
        dest_frame.pack(fill="both", padx=8, pady=(0, 6))
        self.dest_list = tk.Listbox(dest_frame, height=4)
        self.dest_list.pack(fill="both", expand=True, side="left", padx=(0, 6))
        dest_buttons = tb.Frame(dest_frame)
        dest_buttons.pack(side="right", fill="y")
        tb.Button(dest_buttons, text="Add…", command=lambda: self._add_destination(filedialog.askdirectory)).pack(fill="x", pady=2)
        tb.Button(dest_buttons, text="Remove", command=lambda: self._remove_selected(self.dest_list)).pack(fill="x", pady=2)
        tb.Button(dest_buttons, text="Clear", command=lambda: self.dest_list.delete(0, "end")).pack(fill="x", pady=2)

        excl_frame = tb.Labelframe(root, text="Exclusions (source only)", padding=8)
        excl_frame.pack(fill="both", padx=8, pady=(0, 6))
        self.exclusion_list = tk.Listbox(excl_frame, height=3)
        self.exclusion_list.pack(fill="both", expand=True, side="left", padx=(0, 6))
        excl_buttons = tb.Frame(excl_frame)
        excl_buttons.pack(side="right", fill="y")
        tb.Button(excl_buttons, text="Folder…", command=lambda: self._add_folder_exclusion(filedialog.askdirectory)).pack(fill="x", pady=2)
        self.pattern_var = tk.StringVar(value="")
        tb.Entry(excl_buttons, textvariable=self.pattern_var, width=16).pack(fill="x", pady=2)
        tb.Button(excl_buttons, text="Add text", command=self._add_pattern_exclusion).pack(fill="x", pady=2)
        tb.Button(excl_buttons, text="Remove", command=self._remove_exclusion).pack(fill="x", pady=2)

        actions = tb.Frame(root)
        actions.pack(fill="x", padx=8, pady=(0, 6))
        tb.Label(actions, text="Jobs:").pack(side="left")
        self.jobs_var = tk.IntVar(value=max(1, (os.cpu_count() or 1)))
        tb.Spinbox(actions, from_=1, to=64, width=4, textvariable=self.jobs_var).pack(side="left", padx=(4, 8))
        self.run_button = tb.Button(actions, text="Confirm copy", bootstyle="success", command=self._start_run)
        self.run_button.pack(side="left")
        tb.Button(actions, text="Save report…", bootstyle="secondary", command=self._save_report).pack(side="left", padx=(6, 0))
        self.summary_var = tk.StringVar(value="Ready.")
        self.progress_var = tk.StringVar(value="Idle")
        summary_frame = tb.Frame(actions)
        summary_frame.pack(side="right")
        tb.Label(summary_frame, textvariable=self.summary_var, bootstyle="secondary").pack(anchor="e")
        tb.Label(summary_frame, textvariable=self.progress_var, bootstyle="info").pack(anchor="e")

        self.progress_value = tk.DoubleVar(value=0.0)
        tb.Progressbar(root, variable=self.progress_value, maximum=100, bootstyle="info-striped").pack(fill="x", padx=8, pady=(0, 6))

        columns = ("status", "source", "destination")
        self.result_tree = tb.Treeview(root, columns=columns, show="headings")
        self.result_tree.heading("status", text="Status")
        self.result_tree.heading("source", text="Source path")
        self.result_tree.heading("destination", text="Found in")
        self.result_tree.column("status", width=100, anchor="w")
        self.result_tree.column("source", width=380, anchor="w")
        self.result_tree.column("destination", anchor="w")
        self.result_tree.pack(fill="both", expand=True, padx=8, pady=(0, 8))

        style_manager = tb.Style()
        for status, style in _STATUS_TAGS.items():
            color = getattr(getattr(style_manager, "colors", None), style, None)
            if color:
                self.result_tree.tag_configure(status, foreground=color)

        return root

    # --------------------------------------------------------------- actions --
    def start(self, context: AppContext, targets: List[Path], argv: List[str]):
        if self.source_var is None:
            return
        for target in targets or []:
            if Path(target).is_dir():
                self.source_var.set(str(target))
                break
        it = iter(argv or [])
        for item in it:
            if item in {"--destination", "-d"}:
                value = next(it, None)
                if value:
                    self.dest_list.insert("end", value)
            elif item == "--exclude":
                value = next(it, None)
                if value:
                    self._append_exclusion(_ExclusionRow(_PREFIX_LABEL, value))
            elif item == "--exclude-pattern":
                value = next(it, None)
                if value:
                    self._append_exclusion(_ExclusionRow(_SUBSTRING_LABEL, value))

    def cleanup(self):
        if self._worker and self._worker.is_alive():
            self._worker.join(timeout=5)

    # ----------------------------------------------------------- UI helpers --
    def _choose_source(self, chooser):
        path = chooser()
        if path:
            self.source_var.set(path)

    def _add_destination(self, chooser):
        path = chooser()
        if path:
            self.dest_list.insert("end", path)

    def _remove_selected(self, listbox):
        for index in reversed(listbox.curselection()):
            listbox.delete(index)

    def _append_exclusion(self, row: _ExclusionRow) -> None:
        self._exclusions.append(row)
        self.exclusion_list.insert("end", row.label())

    def _add_folder_exclusion(self, chooser):
        source = self.source_var.get().strip()
        if not source:
            Messagebox.show_error(title=self.title, message="Choose the source directory first.")
            return
        path = chooser(initialdir=source)
        if not path:
            return
        rel = _relative_exclusion(source, path)
        if rel is None:
            Messagebox.show_error(
                title=self.title,
                message="Excluded folders must be below the source directory, not the source itself.",
            )
            return
        self._append_exclusion(_ExclusionRow(_PREFIX_LABEL, rel))

    def _add_pattern_exclusion(self):
        text = self.pattern_var.get().strip()
        if text:
            self._append_exclusion(_ExclusionRow(_SUBSTRING_LABEL, text))
            self.pattern_var.set("")

    def _remove_exclusion(self):
        for index in reversed(self.exclusion_list.curselection()):
            self.exclusion_list.delete(index)
            del self._exclusions[index]

    # -------------------------------------------------------------- Running --
    def _start_run(self):
        if self._worker and self._worker.is_alive():
            Messagebox.show_info(title=self.title, message="A comparison is already running.")
            return
        source = self.source_var.get().strip()
        destinations = [self.dest_list.get(idx) for idx in range(self.dest_list.size())]
        if not source or not Path(source).is_dir():
            Messagebox.show_error(title=self.title, message="Choose an existing source directory.")
            return
        if not destinations:
            Messagebox.show_error(title=self.title, message="Add at least one destination directory.")
            return
        excludes, patterns = _split_exclusions(self._exclusions)
        try:
            jobs = int(self.jobs_var.get())
        except (TypeError, ValueError):
            jobs = 1
        config = CopyConfirmerConfig(
            source=source,
            destinations=destinations,
            jobs=max(1, jobs),
            excludes=excludes,
            exclude_patterns=patterns,
        )
        self._last_report = None
        self.result_tree.delete(*self.result_tree.get_children())
        self.summary_var.set("Comparing…")
        self.progress_value.set(0.0)
        self.run_button.configure(state="disabled")
        self._worker = threading.Thread(target=self._run_core, args=(config,), name="copy-confirmer", daemon=True)
        self._worker.start()
        self.panel.after(100, self._poll_ui_queue)

    def _run_core(self, config: CopyConfirmerConfig) -> None:
        try:
            with CopyConfirmer.from_config(config) as engine:
                engine.enable_progress_reporting(lambda update: self._ui_queue.put(("progress", update)))
                outcome = engine.compare(config.source, config.destinations)
                excluded = engine.excluded_paths()
        except ConfirmerError as exc:
            self._ui_queue.put(("error", str(exc)))
            return
        except Exception as exc:
            logger.exception("Copy confirmer worker failed")
            self._ui_queue.put(("error", str(exc) or exc.__class__.__name__))
            return
        self._ui_queue.put(("done", (outcome, excluded)))

    def _poll_ui_queue(self):
        if self.panel is None:
            return
        try:
            while True:
                event, payload = self._ui_queue.get_nowait()
                if event == "progress":
                    self._show_progress(payload)
                elif event == "error":
                    self._finish_run(f"Failed – {payload}")
                    Messagebox.show_error(title=self.title, message=payload)
                elif event == "done":
                    self._show_outcome(*payload)
        except queue.Empty:
            pass
        if self._worker and self._worker.is_alive():
            self.panel.after(200, self._poll_ui_queue)
        elif not self._ui_queue.empty():
            self.panel.after(0, self._poll_ui_queue)

    def _show_progress(self, update: PhaseProgress):
        percent = (update.completed / update.total * 100.0) if update.total else 100.0
        self.progress_value.set(percent)
        self.progress_var.set(f"{update.label}: {update.completed}/{update.total}")

    def _show_outcome(self, outcome: ComparisonOutcome, excluded: List[str]):
        self._last_report = build_report(outcome, excluded)
        for status, source, dest in _outcome_rows(outcome, excluded):
            self.result_tree.insert("", "end", values=(status, source, dest), tags=(status,))
        if isinstance(outcome, AllPresent):
            self._finish_run("All files present in destinations.")
        else:
            self._finish_run(f"{len(outcome.paths)} files missing from destinations.")

    def _finish_run(self, message: str):
        self.summary_var.set(message)
        self.progress_var.set("Idle")
        self.run_button.configure(state="normal")

    def _save_report(self):
        import tkinter.filedialog as fd

        if self._last_report is None:
            Messagebox.show_info(title=self.title, message="Run a comparison first.")
            return
        file_path = fd.asksaveasfilename(
            title="Save copy confirmation report",
            defaultextension=".json",
            filetypes=(("JSON report", "*.json"), ("Excel workbook", "*.xlsx")),
        )
        if not file_path:
            return
        try:
            write_report(Path(file_path), self._last_report)
            Messagebox.show_info(title=self.title, message=f"Report saved to {file_path}")
        except OSError as exc:
            Messagebox.show_error(title=self.title, message=f"Cannot save report: {exc}")


PLUGIN = CopyConfirmerTool()


if __name__ == "__main__":  # pragma: no cover - manual harness
    run_plugin_standalone(PLUGIN)
