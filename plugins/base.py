from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol, Optional, Any, Tuple


def _parse_standalone_argv(argv: List[str]) -> Tuple[List[Path], List[str]]:
    """Split standalone arguments into target paths and passthrough options.

    ``--target PATH`` and bare positional paths become targets. Any other
    ``--option`` is passed to the tool together with its value when the next
    token is not itself an option.
    """

    targets: List[Path] = []
    extra: List[str] = []
    args = list(argv)
    idx = 0
    while idx < len(args):
        arg = args[idx]
        idx += 1
        if arg == "--target":
            if idx < len(args):
                targets.append(Path(args[idx]).expanduser())
                idx += 1
        elif arg.startswith("--"):
            extra.append(arg)
            if idx < len(args) and not args[idx].startswith("--"):
                extra.append(args[idx])
                idx += 1
        else:
            targets.append(Path(arg).expanduser())
    return targets, extra


class ToolPlugin(Protocol):
    key: str
    title: str
    description: str

    def make_panel(self, master, context: "AppContext") -> Any:
        """Build and return a GUI panel for this tool."""

    def start(self, context: "AppContext", targets: List[Path], argv: List[str]) -> None:
        """Invoked once the panel exists, with any command-line targets."""

    def cleanup(self) -> None:
        """Called on shutdown."""


@dataclass
class AppContext:
    app_name: str
    version: str
    platform: str
    resource_dir: Path


def run_plugin_standalone(plugin: "ToolPlugin", argv: Optional[List[str]] = None) -> None:
    """Open ``plugin`` in its own ttkbootstrap window and run the Tk main loop."""

    import platform
    import sys

    try:
        import ttkbootstrap as tb
        from ttkbootstrap.dialogs import Messagebox
    except ImportError as exc:  # pragma: no cover - import error propagated
        raise RuntimeError("Install dependencies: pip install ttkbootstrap") from exc

    argv = list(sys.argv[1:] if argv is None else argv)
    targets, extra = _parse_standalone_argv(argv)

    resource_root = Path(getattr(sys, "_MEIPASS", Path(__file__).resolve().parent.parent))
    ctx = AppContext(
        app_name=getattr(plugin, "title", getattr(plugin, "key", "Tool")),
        version=getattr(plugin, "version", "standalone"),
        platform=platform.system(),
        resource_dir=resource_root,
    )

    window = tb.Window(title=ctx.app_name, themename="darkly")
    window.geometry("1000x700")
    window.resizable(True, True)

    container = tb.Frame(window, padding=8)
    container.pack(fill="both", expand=True)

    panel = plugin.make_panel(container, ctx)
    if hasattr(panel, "pack"):
        panel.pack(fill="both", expand=True)

    def _start_tool():
        try:
            plugin.start(ctx, targets, extra)
        except Exception as exc:  # pragma: no cover - GUI error path
            Messagebox.show_error(message=str(exc), title="Tool start error")

    def _on_close():
        plugin.cleanup()
        window.destroy()

    window.after(50, _start_tool)
    window.protocol("WM_DELETE_WINDOW", _on_close)
    window.mainloop()
