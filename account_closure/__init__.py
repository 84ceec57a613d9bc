"""AWS account-closure workflow orchestrator.

Drives an account through suspension, closure, organisation status
checks, and dependent-service offboarding as a fixed graph of tasks,
choices, timed waits, and a parallel fan-out/fan-in stage.
"""

__version__ = "0.1.0"
