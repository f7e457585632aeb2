"""Domain-agnostic building blocks shared by the pipeline workers.

Error taxonomy, structured logging, retry policy and small utilities.
Nothing in here knows about envelopes, warehouse rows or Kafka topics.
"""
