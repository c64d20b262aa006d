"""HLS ingest service.

Accepts uploaded source videos, transcodes them into an adaptive-bitrate HLS
ladder and publishes the result atomically.

Modules:
    - core: Configuration, database, storage, Celery, logging, metrics, tracing
    - modules.ingest: Probe, planner, transcoder driver, publisher, orchestrator, API
    - modules.job: Retry/backoff policies shared by background work
"""

__version__ = "0.1.0"
