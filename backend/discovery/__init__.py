"""
Discovery back end: document ingestion, chunking, embeddings,
semantic search and theme extraction over case files.
"""

__version__ = "1.0.0"
