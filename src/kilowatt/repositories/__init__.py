from .authorization import LocalAuthListRepository
from .configuration import ConfigurationRepository
from .connector import ConnectorStateRepository

__all__ = [
    "ConfigurationRepository",
    "ConnectorStateRepository",
    "LocalAuthListRepository",
]
