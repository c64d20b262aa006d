"""Ingest module: source probing, HLS rendition transcoding and publishing.

Exposes the asset lifecycle (Submit, GetStatus, Cancel, Delete, Retry) over
the API router and runs the pipeline in Celery tasks or a standalone worker.
"""
