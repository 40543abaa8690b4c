"""Adapters layer - concrete implementations of port interfaces.

- Inbound adapters: REST API over the governance engine
- Outbound adapters: object store, orchestrator, device driver, device
  inventory and observability backends
"""
