from taskyard.core.brokers.postgres import PostgresBroker

__all__ = [
    'PostgresBroker',
]
