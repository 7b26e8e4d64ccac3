"""trellis — regenerate scaffolding without clobbering hand edits."""

__version__ = "0.1.0"
