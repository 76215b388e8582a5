"""Orchestrator services."""
