"""Infrastructure shared by the pipeline components.

- MessageProducer / MessageConsumer: Kafka clients
- EnvelopePublisher / InMemoryBroker: queue publishing and its test double
- storage: warehouse and audit tables (Delta Lake, in-memory)
- dlq: dead-letter topic store
- alerts, scheduling, metrics

Import classes directly from submodules to avoid loading heavy dependencies:
    from warehouse_pipeline.common.consumer import MessageConsumer
    from warehouse_pipeline.common.storage import DeltaWarehouse
"""

__all__: list[str] = []
