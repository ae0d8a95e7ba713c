# Generated migration for query and result embeddings
from django.db import migrations, models
import pgvector.django


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        pgvector.django.VectorExtension(),
        migrations.CreateModel(
            name="QueryEmbedding",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("query_hash", models.CharField(max_length=64, unique=True)),
                ("query_text", models.TextField(blank=True, default="")),
                ("embedding", pgvector.django.VectorField(dimensions=512)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "query_embeddings",
                "indexes": [
                    pgvector.django.HnswIndex(
                        ef_construction=64,
                        fields=["embedding"],
                        m=16,
                        name="query_embeddings_hnsw_idx",
                        opclasses=["vector_ip_ops"],
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ResultEmbedding",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("result_id", models.CharField(max_length=255, unique=True)),
                ("embedding", pgvector.django.VectorField(dimensions=512)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "result_embeddings",
                "indexes": [
                    pgvector.django.HnswIndex(
                        ef_construction=64,
                        fields=["embedding"],
                        m=16,
                        name="result_embeddings_hnsw_idx",
                        opclasses=["vector_ip_ops"],
                    ),
                ],
            },
        ),
    ]
