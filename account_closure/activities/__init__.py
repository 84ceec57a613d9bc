"""Durable Functions activities."""
