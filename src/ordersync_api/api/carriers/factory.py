"""Carrier provider factory keyed on the carrier slug."""

from enum import Enum
from typing import Type

from ordersync_api.api.carriers.base import ShippingProvider
from ordersync_api.api.carriers.maystro import MaystroProvider
from ordersync_api.api.carriers.noest import NoestProvider
from ordersync_api.api.carriers.yalidine import YalidineProvider
from ordersync_api.config.credentials import CarrierCredential
from ordersync_api.core.errors import ConfigurationError


class CarrierSlug(str, Enum):
    MAYSTRO = "maystro"
    GUEPEX = "guepex"
    YALIDINE = "yalidine"
    NORD_WEST = "nord_west"

    @classmethod
    def parse(cls, raw: str) -> "CarrierSlug":
        normalized = (raw or "").strip().lower().replace("-", "_")
        if normalized == "nordwest":
            normalized = cls.NORD_WEST.value
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigurationError(f"Unsupported carrier: {raw}") from None


_PROVIDERS = {
    CarrierSlug.MAYSTRO: MaystroProvider,
    CarrierSlug.GUEPEX: YalidineProvider,
    CarrierSlug.YALIDINE: YalidineProvider,
    CarrierSlug.NORD_WEST: NoestProvider,
}


def provider_class(slug) -> Type[ShippingProvider]:
    """Return the provider class for a slug (string or CarrierSlug)."""
    return _PROVIDERS[CarrierSlug.parse(slug) if not isinstance(slug, CarrierSlug) else slug]


def create_provider(credential: CarrierCredential, rate_limiter, **options) -> ShippingProvider:
    """
    Build the provider for a credential.

    Raises:
        ConfigurationError: unknown slug or incomplete credential
    """
    if not credential.secret_key:
        raise ConfigurationError(f"Credential {credential.credential_id} has no key")
    return provider_class(credential.slug)(credential, rate_limiter, **options)
