"""Tool plugin protocol and the standalone window host."""

from .base import AppContext, ToolPlugin, run_plugin_standalone

__all__ = ["AppContext", "ToolPlugin", "run_plugin_standalone"]
