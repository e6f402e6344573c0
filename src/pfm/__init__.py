"""Production Flow Manager: drives a work item through a fixed gate pipeline."""

__version__ = "0.1.0"
