"""Row lifecycle: soft delete, grace-window purge, hard retention."""

from warehouse_pipeline.lifecycle.manager import LifecycleManager, SweepReport

__all__ = ["LifecycleManager", "SweepReport"]
