"""Daily and weekly aggregate tables."""

from warehouse_pipeline.aggregation.scheduler import AggregationScheduler, Period

__all__ = ["AggregationScheduler", "Period"]
