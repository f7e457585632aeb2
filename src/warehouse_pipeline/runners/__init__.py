"""Worker runner modules for orchestrating pipeline workers.

This package contains:
- common: Shared worker execution patterns and utilities
- pipeline_runners: Runners for the sync worker, emitter and scheduled jobs
- registry: Worker registry for mapping CLI commands to runner functions
"""
