"""Retrieval: query engine, link-graph expansion, context assembly."""
