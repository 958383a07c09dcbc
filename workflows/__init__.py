"""Workflow definitions module.

Temporal workflows (sync_job, periodic) and the operations service. Import
them from their modules; the workflow sandbox re-imports this package.
"""
