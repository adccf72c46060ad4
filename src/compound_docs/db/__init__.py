"""compound-docs storage layer."""

from compound_docs.db.connection import Database
from compound_docs.db.migrations import MIGRATIONS, run_migrations
from compound_docs.db.repository import Repository
from compound_docs.db.vectors import ensure_vec_tables, model_to_slug, vec_table_names

__all__ = [
    "Database",
    "MIGRATIONS",
    "Repository",
    "ensure_vec_tables",
    "model_to_slug",
    "run_migrations",
    "vec_table_names",
]
