"""In-process execution driver.

- deadline: Instance-level ceiling with cancellable waits
- handlers: Task handler registry and HTTP transport
- invoker: Task invocation with retry/backoff
- parallel: Fan-out/fan-in stage
- orchestrator: Graph walker producing an ExecutionRecord
"""
