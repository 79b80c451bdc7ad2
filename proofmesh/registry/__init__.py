"""Provider registry."""

from .models import ProviderView
from .service import API_STYLES, ProviderRegistry

__all__ = ["API_STYLES", "ProviderRegistry", "ProviderView"]
