"""Ports layer - interface definitions following Hexagonal Architecture.

- Inbound ports: the GovernanceAPI offered to operators and clients
- Outbound ports: device inventory, device driver, orchestrator and
  object store collaborators

Adapters implement these ports with concrete functionality.
"""
