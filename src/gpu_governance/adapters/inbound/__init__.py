"""Inbound adapters for GPU governance.

Provides the REST API adapter over the governance engine.
"""

from gpu_governance.adapters.inbound.rest_api import create_app

__all__ = ["create_app"]
