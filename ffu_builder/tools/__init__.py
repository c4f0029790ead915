"""External tool module.

This module handles:
- Running external tools with log capture and cancellation
- Command-template implementations of the imaging and VM collaborators
"""

from ffu_builder.tools.collaborators import CommandImageTools, CommandVMProvider
from ffu_builder.tools.runner import ToolRunner, ToolSession, render_command

__all__ = [
    "CommandImageTools",
    "CommandVMProvider",
    "ToolRunner",
    "ToolSession",
    "render_command",
]
