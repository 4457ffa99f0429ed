"""Prometheus metrics for tokenledger."""
