"""Report helpers for copy confirmation results."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from .copy_confirmer_core import AllPresent, ComparisonOutcome, MissingFiles

GREEN_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
RED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
BOLD = Font(bold=True)


def build_report(
    outcome: ComparisonOutcome,
    excluded: Iterable[str] = (),
    include_found: bool = True,
) -> Dict[str, Any]:
    report: Dict[str, Any] = {"excluded": list(excluded)}
    if isinstance(outcome, AllPresent):
        report["status"] = "all_present"
        report["missing"] = []
        if include_found:
            report["found"] = {checksum: entry.as_dict() for checksum, entry in outcome.found.items()}
    elif isinstance(outcome, MissingFiles):
        report["status"] = "missing_files"
        report["missing"] = list(outcome.paths)
    else:
        raise TypeError(f"Unknown outcome: {outcome!r}")
    return report


def format_text(report: Dict[str, Any], show_found: bool = False) -> str:
    lines: List[str] = []
    if report["status"] == "all_present":
        lines.append("All files present in destinations.")
        if show_found:
            for checksum, entry in report.get("found", {}).items():
                lines.append(checksum)
                lines.extend(f"  src  {path}" for path in entry["src_paths"])
                lines.extend(f"  dest {path}" for path in entry["dest_paths"])
    else:
        lines.append("Missing files:")
        lines.extend(report["missing"])
    if report["excluded"]:
        lines.append(f"Excluded {len(report['excluded'])} files.")
    return "\n".join(lines) + "\n"


def write_json_report(path: Path, report: Dict[str, Any]) -> None:
    Path(path).write_text(json.dumps(report, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def _autofit(ws, headers: List[str]) -> None:
    for column_idx, column_title in enumerate(headers, start=1):
        column_letter = get_column_letter(column_idx)
        max_length = len(column_title)
        for cell in ws[column_letter]:
            if cell.value is None:
                continue
            max_length = max(max_length, len(str(cell.value)))
        ws.column_dimensions[column_letter].width = max_length + 2


def _sheet(wb: Workbook, title: str, headers: List[str], first: bool = False):
    if first:
        ws = wb.active
        ws.title = title
    else:
        ws = wb.create_sheet(title)
    ws.append(headers)
    for cell in ws[1]:
        cell.font = BOLD
    ws.freeze_panes = "A2"
    return ws


def export_to_excel(path: Path, report: Dict[str, Any]) -> None:
    wb = Workbook()

    headers = ["Status", "Source path", "Destination path", "Checksum"]
    ws = _sheet(wb, "Results", headers, first=True)
    for source_path in report["missing"]:
        ws.append(["Missing", source_path, None, None])
        ws.cell(row=ws.max_row, column=1).fill = RED_FILL
    for checksum, entry in report.get("found", {}).items():
        dest_paths = entry["dest_paths"]
        for source_path in entry["src_paths"]:
            first_dest: Optional[str] = dest_paths[0] if dest_paths else None
            ws.append(["Found", source_path, first_dest, checksum])
            ws.cell(row=ws.max_row, column=1).fill = GREEN_FILL
            for extra in dest_paths[1:]:
                ws.append(["Found", source_path, extra, checksum])
                ws.cell(row=ws.max_row, column=1).fill = GREEN_FILL
    ws.auto_filter.ref = ws.dimensions
    _autofit(ws, headers)

    if report["excluded"]:
        excluded_ws = _sheet(wb, "Excluded", ["Source path"])
        for source_path in report["excluded"]:
            excluded_ws.append([source_path])
        _autofit(excluded_ws, ["Source path"])

    wb.save(Path(path))


def write_report(path: Path, report: Dict[str, Any]) -> None:
    path = Path(path)
    if path.suffix.lower() == ".xlsx":
        export_to_excel(path, report)
    else:
        write_json_report(path, report)


__all__ = [
    "build_report",
    "export_to_excel",
    "format_text",
    "write_json_report",
    "write_report",
]
