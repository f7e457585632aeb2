"""Worker registry for mapping CLI worker names to runner functions.

Each worker entry specifies:
- runner: The async function to execute
- description: One line shown in --help
"""

import asyncio
import logging
from typing import Any

from config.config import PipelineConfig
from warehouse_pipeline.common.health import HealthCheckServer
from warehouse_pipeline.runners import pipeline_runners

logger = logging.getLogger(__name__)

WORKER_REGISTRY: dict[str, dict[str, Any]] = {
    "sync-worker": {
        "runner": pipeline_runners.run_sync_worker,
        "description": "Pseudonymize change envelopes into warehouse rows",
    },
    "emitter-dummy": {
        "runner": pipeline_runners.run_dummy_emitter,
        "description": "Publish a synthetic change stream (local testing)",
    },
    "aggregation-scheduler": {
        "runner": pipeline_runners.run_aggregation_scheduler,
        "description": "Daily and weekly aggregate rollups",
    },
    "lifecycle-scheduler": {
        "runner": pipeline_runners.run_lifecycle_scheduler,
        "description": "Grace-window purge and retention sweep",
    },
}


async def run_worker_from_registry(
    worker_name: str,
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    instance_id: str | None = None,
    health_server: HealthCheckServer | None = None,
):
    """Run a worker by looking it up in the registry.

    Raises:
        ValueError: If worker not found in registry
    """
    if worker_name not in WORKER_REGISTRY:
        raise ValueError(f"Unknown worker: {worker_name}")

    kwargs = {
        "pipeline_config": pipeline_config,
        "shutdown_event": shutdown_event,
        "health_server": health_server,
    }
    if instance_id is not None:
        kwargs["instance_id"] = instance_id

    runner = WORKER_REGISTRY[worker_name]["runner"]
    await runner(**kwargs)
