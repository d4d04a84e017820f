"""Model provider clients."""

from .base import Completion, ModelProviderClient
from .http import HttpModelProviderClient

__all__ = ["Completion", "ModelProviderClient", "HttpModelProviderClient"]
