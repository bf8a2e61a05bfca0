"""Task list client core: task records, a live store adapter and the list controller."""

__version__ = "0.1.0"
