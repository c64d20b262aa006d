"""Application modules.

- ingest: Video ingestion and HLS packaging pipeline
- job: Retry policies and base Celery task
"""
