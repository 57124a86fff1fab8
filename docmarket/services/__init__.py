"""Service layer for the document marketplace."""
