"""
Webhook Forwarder

Receives queued webhook events from a broker and forwards them to local
or remote destinations with retries and health-gated routing.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .config.settings import Config, load_config
from .dispatcher import WebhookDispatcher
from .utils import HealthMonitor

__all__ = [
    "WebhookDispatcher",
    "Config",
    "load_config",
    "HealthMonitor",
    "__version__",
    "__license__",
]
