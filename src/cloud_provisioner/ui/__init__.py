"""UI package exports for the CLI and rich rendering."""

from cloud_provisioner.ui.cli import CLIError, build_parser, run_cli
from cloud_provisioner.ui.render import CLIRenderer, PipelineProgressRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "PipelineProgressRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
