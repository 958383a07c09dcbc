"""Temporal queue manager, periodic scheduler, engine wiring and worker CLI."""
