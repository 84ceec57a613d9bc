"""Core utilities and shared infrastructure.

- config: Configuration loading and validation
- constants: Task, node, and context-key names
- context: Path lookup and copy helpers for the execution context
- exceptions: Custom exception hierarchy
- ingress: Trigger and activity input normalisation
"""
