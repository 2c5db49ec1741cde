"""
tests/test_reconciler.py: bulk-then-fallback shipping status reconciliation.

Covers: Reconciler.reconcile, build_bulk_map, lookup_reference,
        regression guard, not-found reporting, error isolation
Depends on: aiosqlite repository (conftest), stub carriers
"""

import pytest

from ordersync_api.api.carriers import MaystroProvider
from ordersync_api.config.constants import CARRIER_NOT_FOUND_MESSAGE
from ordersync_api.config.credentials import CarrierCredential
from ordersync_api.core.errors import TransportError
from ordersync_api.models.carrier import CarrierShipment
from ordersync_worker.services.credential_router import CredentialRouter
from ordersync_worker.services.reconciler import ERROR, NOT_FOUND, Reconciler
from tests.conftest import add_order


class StubCarrier:
    """Carrier answering from fixed bulk and per-reference tables."""

    SLUG = "maystro"

    def __init__(self, credential, bulk=None, by_reference=None, fail_bulk=False, fail_lookup=False):
        self.credential = credential
        self.bulk = bulk or {}
        self.by_reference = by_reference or {}
        self.fail_bulk = fail_bulk
        self.fail_lookup = fail_lookup
        self.lookups = []

    @property
    def credential_id(self):
        return self.credential.credential_id

    def _shipment(self, reference, code, tracking=None):
        return CarrierShipment(
            reference=reference,
            native_status=code,
            tracking_number=tracking,
            carrier_order_id=f"{self.credential_id}-{reference}",
            credential_id=self.credential_id,
        )

    def map_status(self, code):
        return MaystroProvider.map_status(code)

    async def fetch_bulk(self, max_results):
        if self.fail_bulk:
            raise TransportError("bulk endpoint down", status_code=502)
        return [self._shipment(ref, code, tracking) for ref, (code, tracking) in self.bulk.items()]

    async def fetch_by_reference(self, reference):
        self.lookups.append(reference)
        if self.fail_lookup:
            raise TransportError("lookup failed", status_code=500)
        if reference in self.by_reference:
            code, tracking = self.by_reference[reference]
            return self._shipment(reference, code, tracking)
        return None

    async def close(self):
        pass


def build_router(*carriers, cache=None) -> CredentialRouter:
    by_id = {c.credential_id: c for c in carriers}
    return CredentialRouter([c.credential for c in carriers], lambda cred: by_id[cred.credential_id], cache=cache)


def carrier(credential_id, priority, stores=(), primary=False, **tables) -> StubCarrier:
    cred = CarrierCredential(
        credential_id=credential_id, secret_key="s", stores=list(stores), priority=priority, is_primary=primary,
    )
    return StubCarrier(cred, **tables)


class TestReconcile:

    async def test_bulk_hit_updates_status_and_tracking(self, repository, session_factory):
        await add_order(session_factory, "R1", native_id=1, shipping_status="in_transit")
        primary = carrier("c1", 1, primary=True, bulk={"R1": (41, "TRK-1")})
        reconciler = Reconciler(repository, build_router(primary))

        result = await reconciler.reconcile()

        assert result.checked == 1
        assert result.updated == 1
        assert result.success is True
        assert result.details == [{"reference": "R1", "status": "delivered"}]
        order = (await repository.find_by_references(["R1"]))[0]
        assert order.shipping_status == "delivered"
        assert order.status == "DELIVERED"
        assert order.tracking_code == "TRK-1"
        assert order.carrier_status_code == "41"
        assert order.carrier_credential_id == "c1"
        assert primary.lookups == []

    async def test_delivered_order_is_never_regressed(self, repository, session_factory):
        await add_order(session_factory, "R1", native_id=1, status="DELIVERED", shipping_status="delivered")
        reconciler = Reconciler(repository, build_router(carrier("c1", 1, bulk={"R1": (9, None)})))

        result = await reconciler.reconcile(references=["R1"])

        assert result.rejected == 1
        assert result.updated == 0
        order = (await repository.find_by_references(["R1"]))[0]
        assert order.shipping_status == "delivered"

    async def test_terminal_orders_are_not_selected(self, repository, session_factory):
        await add_order(session_factory, "R1", native_id=1, status="DELIVERED", shipping_status="delivered")
        await add_order(session_factory, "R2", native_id=2, shipping_status="cancelled")
        await add_order(session_factory, "R3", native_id=3, shipping_status=None)
        reconciler = Reconciler(repository, build_router(carrier("c1", 1, bulk={"R3": (4, None)})))

        result = await reconciler.reconcile()

        assert result.checked == 1
        assert result.updated == 1

    async def test_unchanged_status_is_not_written(self, repository, session_factory):
        await add_order(session_factory, "R1", native_id=1, shipping_status="in_transit", tracking_code="TRK")
        reconciler = Reconciler(repository, build_router(carrier("c1", 1, bulk={"R1": (9, "OTHER")})))

        result = await reconciler.reconcile()

        assert result.unchanged == 1
        assert result.updated == 0
        order = (await repository.find_by_references(["R1"]))[0]
        assert order.tracking_code == "TRK"

    async def test_miss_uses_store_routed_credential_first(self, repository, session_factory):
        await add_order(session_factory, "RX", store_identifier="X", native_id=1, shipping_status="created")
        await add_order(session_factory, "RY", store_identifier="Y", native_id=1, shipping_status="created")
        c1 = carrier("c1", 1, stores=["X"], by_reference={"RX": (9, None)})
        c2 = carrier("c2", 2, primary=True, by_reference={"RY": (31, None)})
        reconciler = Reconciler(repository, build_router(c1, c2))

        result = await reconciler.reconcile()

        assert result.updated == 2
        assert c1.lookups == ["RX"]
        assert c2.lookups == ["RY"]
        orders = {o.reference: o for o in await repository.find_by_references(["RX", "RY"])}
        assert orders["RX"].shipping_status == "in_transit"
        assert orders["RX"].carrier_credential_id == "c1"
        assert orders["RY"].shipping_status == "shipped"

    async def test_not_found_is_reported_per_reference(self, repository, session_factory):
        await add_order(session_factory, "R404", native_id=1)
        reconciler = Reconciler(repository, build_router(carrier("c1", 1)))

        result = await reconciler.reconcile()

        assert result.not_found == 1
        assert result.errors == 0
        assert result.details == [{"reference": "R404", "status": NOT_FOUND, "error": CARRIER_NOT_FOUND_MESSAGE}]
        assert result.success is True

    async def test_lookup_failure_is_counted_and_run_continues(self, repository, session_factory):
        await add_order(session_factory, "R1", native_id=1, shipping_status="created")
        await add_order(session_factory, "R2", native_id=2, shipping_status="created")
        failing = carrier("c1", 1, primary=True, bulk={"R2": (9, None)}, fail_lookup=True)
        reconciler = Reconciler(repository, build_router(failing))

        result = await reconciler.reconcile()

        assert result.errors == 1
        assert result.updated == 1
        assert result.details[0]["reference"] == "R1"
        assert result.details[0]["status"] == ERROR
        assert result.success is True

    async def test_failed_bulk_credential_is_counted(self, repository, session_factory, cache):
        await add_order(session_factory, "R1", native_id=1, shipping_status="created")
        down = carrier("c1", 1, primary=True, fail_bulk=True)
        up = carrier("c2", 2, bulk={"R1": (9, None)})
        reconciler = Reconciler(repository, build_router(down, up, cache=cache))

        result = await reconciler.reconcile()

        assert result.errors == 1
        assert result.updated == 1
        assert cache.hashes["ordersync:carrier_key:c1"]["errors"] == "1"
        assert cache.hashes["ordersync:carrier_key:c2"]["successes"] == "1"

    async def test_lower_priority_credential_wins_conflicts(self, repository, session_factory):
        await add_order(session_factory, "R1", native_id=1, shipping_status="created")
        first = carrier("c1", 1, bulk={"R1": (9, None)})
        second = carrier("c2", 2, bulk={"R1": (50, None)})
        reconciler = Reconciler(repository, build_router(second, first))

        bulk, failures = await reconciler.build_bulk_map()

        assert failures == 0
        assert bulk["R1"].credential_id == "c1"

    async def test_without_credentials_run_fails(self, repository, session_factory):
        await add_order(session_factory, "R1", native_id=1)
        reconciler = Reconciler(repository, build_router())

        result = await reconciler.reconcile()

        assert result.errors == 1
        assert result.success is False

    async def test_write_failure_only_affects_that_order(self, repository, session_factory):
        await add_order(session_factory, "R1", native_id=1, shipping_status="created")
        await add_order(session_factory, "R2", native_id=2, shipping_status="created")

        class FlakyRepository:
            def __getattr__(self, name):
                return getattr(repository, name)

            async def apply_status_update(self, update):
                if update.reference == "R1":
                    raise RuntimeError("deadlock detected")
                return await repository.apply_status_update(update)

        router = build_router(carrier("c1", 1, bulk={"R1": (9, None), "R2": (9, None)}))
        reconciler = Reconciler(FlakyRepository(), router, write_batch_size=1)

        result = await reconciler.reconcile()

        assert result.updated == 1
        assert result.errors == 1
        assert {"reference": "R1", "status": ERROR, "error": "deadlock detected"} in result.details


class TestLookupReference:

    async def test_raises_when_only_failures(self, repository, session_factory):
        order = await add_order(session_factory, "R1", native_id=1)
        reconciler = Reconciler(repository, build_router(carrier("c1", 1, fail_lookup=True)))

        with pytest.raises(TransportError, match="R1"):
            await reconciler.lookup_reference(order)

    async def test_found_by_second_candidate_after_failure(self, repository, session_factory):
        order = await add_order(session_factory, "R1", store_identifier="X", native_id=1)
        c1 = carrier("c1", 1, stores=["X"], fail_lookup=True)
        c2 = carrier("c2", 2, primary=True, by_reference={"R1": (41, None)})
        reconciler = Reconciler(repository, build_router(c1, c2))

        shipment = await reconciler.lookup_reference(order)

        assert shipment.credential_id == "c2"
