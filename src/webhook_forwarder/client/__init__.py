"""Broker client and collaborator contracts."""

from .base import EventSource, OutcomeSink
from .broker_client import BrokerClient, BrokerClientError

__all__ = ["EventSource", "OutcomeSink", "BrokerClient", "BrokerClientError"]
