"""Allow running as ``python -m ffu_builder``."""

from ffu_builder.cli import app

app(prog_name="ffubuilder")
