"""Workflow and execution engine components."""
