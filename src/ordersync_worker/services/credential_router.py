"""
Carrier credential routing.

Maps a store to the carrier credential authoritative for its shipments and
keeps per-credential usage counters in the shared cache.
"""

from typing import Callable, Dict, List, Optional

from ordersync_api.api.carriers.base import ShippingProvider
from ordersync_api.config.constants import REDIS_CARRIER_KEY_STATS
from ordersync_api.config.credentials import CarrierCredential
from ordersync_api.core.errors import ConfigurationError
from ordersync_api.core.logger import setup_logger

logger = setup_logger(__name__)


class CredentialRouter:
    """Resolves providers per store; lookups without a mapping fan out to every credential."""

    def __init__(
        self,
        credentials: List[CarrierCredential],
        provider_factory: Callable[[CarrierCredential], ShippingProvider],
        cache=None,
    ):
        """
        Args:
            credentials: Loaded carrier credentials
            provider_factory: Builds the provider for one credential
            cache: Optional Redis client for usage stats
        """
        self.cache = cache
        self._providers: Dict[str, ShippingProvider] = {}
        self._store_map: Dict[str, str] = {}
        self._primary_id: Optional[str] = None

        for credential in sorted(credentials, key=lambda c: c.priority):
            if not credential.is_active:
                continue
            try:
                provider = provider_factory(credential)
            except ConfigurationError as e:
                # Only this credential is unusable
                logger.error(f"Skipping carrier credential {credential.credential_id}: {e}")
                continue

            self._providers[credential.credential_id] = provider
            if credential.is_primary and self._primary_id is None:
                self._primary_id = credential.credential_id

            for store in credential.stores:
                owner = self._store_map.get(store)
                if owner is not None:
                    logger.error(
                        f"Store {store} is mapped to both {owner} and {credential.credential_id}; keeping {owner}"
                    )
                    continue
                self._store_map[store] = credential.credential_id

        if self._primary_id is None and self._providers:
            self._primary_id = next(iter(self._providers))

        logger.info(
            f"Credential router ready: {len(self._providers)} credential(s), "
            f"{len(self._store_map)} store mapping(s), primary={self._primary_id}"
        )

    @property
    def providers(self) -> List[ShippingProvider]:
        """Active providers in priority order."""
        return list(self._providers.values())

    @property
    def primary(self) -> Optional[ShippingProvider]:
        return self._providers.get(self._primary_id) if self._primary_id else None

    def provider_for(self, credential_id: Optional[str]) -> Optional[ShippingProvider]:
        return self._providers.get(credential_id) if credential_id else None

    def resolve(self, store_identifier: Optional[str]) -> Optional[ShippingProvider]:
        """Credential authoritative for a store: exact mapping, else the primary."""
        mapped = self._store_map.get(store_identifier) if store_identifier else None
        if mapped:
            return self._providers[mapped]
        return self.primary

    def candidates_for(self, store_identifier: Optional[str]) -> List[ShippingProvider]:
        """
        Lookup order for a store's shipments.

        Mapped stores try their own credential, then the primary. Unmapped
        stores try the primary, then every other credential by priority.
        """
        mapped = self._store_map.get(store_identifier) if store_identifier else None
        if mapped:
            ordered = [self._providers[mapped]]
            if self.primary is not None and self._primary_id != mapped:
                ordered.append(self.primary)
            return ordered

        ordered = [self.primary] if self.primary is not None else []
        ordered.extend(p for cid, p in self._providers.items() if cid != self._primary_id)
        return ordered

    async def record_usage(self, credential_id: str, success: bool) -> None:
        """Increment request/success/error counters of a credential."""
        if self.cache is None:
            return
        key = REDIS_CARRIER_KEY_STATS.format(credential=credential_id)
        try:
            await self.cache.hincrby(key, "requests", 1)
            await self.cache.hincrby(key, "successes" if success else "errors", 1)
        except Exception as e:
            logger.warning(f"Failed to record usage for {credential_id}: {e}")

    async def get_stats(self) -> Dict[str, dict]:
        stats = {}
        for credential_id, provider in self._providers.items():
            entry = {
                "name": provider.credential.name,
                "carrier": provider.SLUG,
                "primary": credential_id == self._primary_id,
                "stores": list(provider.credential.stores),
            }
            if self.cache is not None:
                try:
                    counters = await self.cache.hgetall(REDIS_CARRIER_KEY_STATS.format(credential=credential_id))
                    entry.update({k: int(v) for k, v in (counters or {}).items()})
                except Exception as e:
                    logger.warning(f"Failed to read usage for {credential_id}: {e}")
            stats[credential_id] = entry
        return stats

    async def test_connections(self) -> Dict[str, bool]:
        return {cid: await p.test_connection() for cid, p in self._providers.items()}

    async def close(self):
        for provider in self._providers.values():
            await provider.close()
