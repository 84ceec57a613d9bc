"""Durable Functions orchestrators."""
