"""
Persistent embedding records.

Both tables are append-only from this app's point of view: rows are inserted
with ON CONFLICT DO NOTHING (first write wins) and never updated or deleted.
"""

from django.db import models
from pgvector.django import HnswIndex, VectorField

# Column width of both tables. Changing it needs a new migration and a
# matching EMBEDDING_DIMENSIONS setting.
EMBEDDING_DIMENSIONS = 512


class QueryEmbedding(models.Model):
    """Embedding of a search query, keyed by the hash of its normalized text."""

    query_hash = models.CharField(max_length=64, unique=True)
    query_text = models.TextField(blank=True, default="")
    embedding = VectorField(dimensions=EMBEDDING_DIMENSIONS)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "query_embeddings"
        indexes = [
            HnswIndex(
                name="query_embeddings_hnsw_idx",
                fields=["embedding"],
                m=16,
                ef_construction=64,
                opclasses=["vector_ip_ops"],
            ),
        ]

    def __str__(self):
        return f"{self.query_text[:50]} ({self.query_hash[:12]})"


class ResultEmbedding(models.Model):
    """Embedding of a search result (candidate document), keyed by its ID."""

    result_id = models.CharField(max_length=255, unique=True)
    embedding = VectorField(dimensions=EMBEDDING_DIMENSIONS)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "result_embeddings"
        indexes = [
            HnswIndex(
                name="result_embeddings_hnsw_idx",
                fields=["embedding"],
                m=16,
                ef_construction=64,
                opclasses=["vector_ip_ops"],
            ),
        ]

    def __str__(self):
        return self.result_id
