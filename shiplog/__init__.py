"""shiplog: pull request activity reporter."""

__version__ = "0.1.0"
