"""Carrier (delivery provider) integrations."""

from ordersync_api.api.carriers.base import ShippingProvider
from ordersync_api.api.carriers.factory import CarrierSlug, create_provider, provider_class
from ordersync_api.api.carriers.maystro import MaystroProvider
from ordersync_api.api.carriers.noest import NoestProvider
from ordersync_api.api.carriers.yalidine import YalidineProvider

__all__ = [
    "CarrierSlug",
    "MaystroProvider",
    "NoestProvider",
    "ShippingProvider",
    "YalidineProvider",
    "create_provider",
    "provider_class",
]
