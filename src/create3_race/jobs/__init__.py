"""Durable salt-search jobs: store, orchestrator and request intake."""
