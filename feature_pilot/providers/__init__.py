"""External collaborators of the workflow core.

The interfaces live in ``base``; each other module provides one
production implementation.
"""
