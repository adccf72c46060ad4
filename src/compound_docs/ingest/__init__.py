"""Ingest pipeline: hashing, chunking, link extraction, embeddings."""
