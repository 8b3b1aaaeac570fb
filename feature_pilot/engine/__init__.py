"""Workflow core: stage transitions, step execution and their dispatcher."""
