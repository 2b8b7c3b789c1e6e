"""Clients for the external systems the checkout workflow talks to.

Client classes live in their own modules; only the shared error and
configuration are re-exported here.
"""

from .config import IntegrationConfig, load_integration_config
from .errors import IntegrationError

__all__ = ["IntegrationConfig", "IntegrationError", "load_integration_config"]
