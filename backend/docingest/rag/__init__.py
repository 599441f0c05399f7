"""
Retrieval package — pgvector similarity search over embedded chunks.
"""

from docingest.rag.search import search_similar_chunks

__all__ = ["search_similar_chunks"]
