"""REST clients for the source server and destination organizations."""

from .base import BaseAPIClient
from .sonarcloud import SonarCloudClient
from .sonarqube import SonarQubeClient

__all__ = [
    "BaseAPIClient",
    "SonarCloudClient",
    "SonarQubeClient",
]
