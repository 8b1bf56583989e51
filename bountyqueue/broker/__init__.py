"""
Broker module.
Contains the broker collaborator protocol and its REST implementation.
"""

from bountyqueue.broker.client import (
    BrokerClient,
    BrokerRecord,
    ProduceAck,
    UpstashRestBroker,
    create_broker,
)

__all__ = [
    "BrokerClient",
    "BrokerRecord",
    "ProduceAck",
    "UpstashRestBroker",
    "create_broker",
]
