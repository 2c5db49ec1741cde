"""
tests/test_credential_router.py: carrier credential loading and store routing.

Covers: load_carrier_credentials, CredentialRouter (resolve, candidates_for,
        usage counters, misconfigured credentials)
Depends on: InMemoryCache (conftest)
"""

from ordersync_api.api.carriers import MaystroProvider, create_provider
from ordersync_api.config.credentials import CarrierCredential, load_carrier_credentials
from ordersync_api.core.errors import ConfigurationError
from ordersync_worker.services.credential_router import CredentialRouter


class StubProvider:
    """Just enough of ShippingProvider for routing."""

    SLUG = "maystro"

    def __init__(self, credential):
        self.credential = credential
        self.closed = False

    @property
    def credential_id(self):
        return self.credential.credential_id

    async def test_connection(self):
        return self.credential.credential_id != "broken"

    async def close(self):
        self.closed = True


def credential(credential_id, priority, stores=(), primary=False, **kwargs) -> CarrierCredential:
    return CarrierCredential(
        credential_id=credential_id,
        secret_key=f"secret-{credential_id}",
        stores=list(stores),
        priority=priority,
        is_primary=primary,
        **kwargs,
    )


class TestLoadCredentials:

    def test_numbered_keys(self):
        env = {
            "CARRIER_API_KEY_2": "k2",
            "CARRIER_API_KEY_2_NAME": "Store Y key",
            "CARRIER_API_KEY_1": "k1",
            "CARRIER_API_KEY_1_STORES": "store-x, store-z",
            "CARRIER_API_KEY_3": "k3",
            "CARRIER_API_KEY_3_SLUG": "guepex",
            "CARRIER_API_KEY_3_ACCOUNT": "api-id",
            "CARRIER_BASE_URL": "https://carrier.test",
        }

        credentials = load_carrier_credentials(env)

        assert [c.credential_id for c in credentials] == ["key_1", "key_2", "key_3"]
        assert credentials[0].stores == ["store-x", "store-z"]
        assert credentials[0].is_primary is True
        assert credentials[1].name == "Store Y key"
        assert credentials[2].slug == "guepex"
        assert credentials[2].account_id == "api-id"
        assert all(c.base_url == "https://carrier.test" for c in credentials)

    def test_legacy_key_is_primary(self):
        credentials = load_carrier_credentials({
            "CARRIER_API_KEY": "legacy",
            "CARRIER_API_KEY_1": "k1",
        })

        assert [(c.credential_id, c.is_primary) for c in credentials] == [("primary", True), ("key_1", False)]

    def test_empty_key_is_skipped(self):
        credentials = load_carrier_credentials({"CARRIER_API_KEY_1": "  ", "CARRIER_API_KEY_2": "k2"})

        assert [c.credential_id for c in credentials] == ["key_2"]
        assert credentials[0].is_primary is True

    def test_no_credentials(self):
        assert load_carrier_credentials({}) == []


class TestRouting:

    def make_router(self, cache=None) -> CredentialRouter:
        return CredentialRouter(
            [
                credential("c2", priority=2, primary=True),
                credential("c1", priority=1, stores=["X"]),
            ],
            StubProvider,
            cache=cache,
        )

    def test_mapped_store_uses_its_credential_first(self):
        router = self.make_router()

        assert router.resolve("X").credential_id == "c1"
        assert [p.credential_id for p in router.candidates_for("X")] == ["c1", "c2"]

    def test_unmapped_store_falls_back_to_primary(self):
        router = self.make_router()

        assert router.resolve("Y").credential_id == "c2"
        assert router.resolve(None).credential_id == "c2"
        assert [p.credential_id for p in router.candidates_for("Y")] == ["c2", "c1"]

    def test_providers_in_priority_order(self):
        router = self.make_router()

        assert [p.credential_id for p in router.providers] == ["c1", "c2"]
        assert router.primary.credential_id == "c2"
        assert router.provider_for("c1").credential_id == "c1"
        assert router.provider_for("missing") is None

    def test_duplicate_store_mapping_keeps_first(self):
        router = CredentialRouter(
            [credential("a", 1, stores=["X"]), credential("b", 2, stores=["X"])],
            StubProvider,
        )

        assert router.resolve("X").credential_id == "a"
        assert router.primary.credential_id == "a"

    def test_inactive_and_misconfigured_credentials_are_skipped(self, rate_limiter):
        router = CredentialRouter(
            [
                credential("inactive", 1, is_active=False),
                credential("yalidine", 2, slug="guepex"),
                credential("good", 3),
            ],
            lambda c: create_provider(c, rate_limiter),
        )

        assert [p.credential_id for p in router.providers] == ["good"]
        assert isinstance(router.primary, MaystroProvider)

    def test_factory_error_propagates_only_configuration_errors(self):
        def factory(c):
            if c.credential_id == "bad":
                raise ConfigurationError("no base url")
            return StubProvider(c)

        router = CredentialRouter([credential("bad", 1), credential("ok", 2)], factory)

        assert [p.credential_id for p in router.providers] == ["ok"]

    async def test_usage_counters(self, cache):
        router = self.make_router(cache)

        await router.record_usage("c1", True)
        await router.record_usage("c1", False)
        stats = await router.get_stats()

        assert stats["c1"]["requests"] == 2
        assert stats["c1"]["successes"] == 1
        assert stats["c1"]["errors"] == 1
        assert stats["c1"]["stores"] == ["X"]
        assert stats["c2"]["primary"] is True

    async def test_connections_and_close(self):
        router = CredentialRouter([credential("ok", 1), credential("broken", 2)], StubProvider)

        assert await router.test_connections() == {"ok": True, "broken": False}
        await router.close()
        assert all(p.closed for p in router.providers)
