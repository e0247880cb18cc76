"""Workflow coordination — finalization and publication."""
