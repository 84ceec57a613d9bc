"""Data models for the account-closure workflow.

- payloads: TypedDict contracts for trigger, activity, and branch boundaries
- execution: Observable execution state (pydantic)
"""
