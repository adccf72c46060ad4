"""compound-docs: Markdown folder sync into a tenant-scoped vector index."""

__version__ = "0.1.0"
