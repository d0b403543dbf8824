import asyncio

import pytest
import requests

from client.api import OrderApiClient
from client.errors import PollFailure
from client.reconciler import POLL, PUSH, OrderReconciler
from services.order_status import OrderStatus


class FakeFetch:
    """Returns (or raises) scripted results; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self, order_id):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestApply:
    """Idempotent, terminal-final local updates"""

    def test_push_updates_local_status(self):
        changes = []
        rec = OrderReconciler(1, FakeFetch("PREPARING"), initial_status="ADMIN_ACCEPTED",
                              on_change=lambda *args: changes.append(args))

        assert rec.handle_push({"orderId": 1, "status": "PREPARING", "timestamp": "x"})
        assert rec.local_status == OrderStatus.PREPARING
        assert changes == [(OrderStatus.PREPARING, OrderStatus.ADMIN_ACCEPTED, PUSH)]

    def test_duplicate_push_is_a_noop(self):
        changes = []
        rec = OrderReconciler(1, FakeFetch("PREPARING"), on_change=lambda *args: changes.append(args))
        rec.handle_push({"orderId": 1, "status": "PREPARING"})
        assert not rec.handle_push({"orderId": 1, "status": "PREPARING"})
        assert len(changes) == 1

    def test_push_for_another_order_is_ignored(self):
        rec = OrderReconciler(1, FakeFetch("PREPARING"), initial_status="ADMIN_ACCEPTED")
        assert not rec.handle_push({"orderId": 2, "status": "PREPARING"})
        assert rec.local_status == OrderStatus.ADMIN_ACCEPTED
        assert rec.last_push_time is None

    def test_unknown_pushed_status_is_ignored(self):
        rec = OrderReconciler(1, FakeFetch("PREPARING"), initial_status="ADMIN_ACCEPTED")
        assert not rec.handle_push({"orderId": 1, "status": "TELEPORTED"})
        assert not rec.handle_push("garbage")
        assert rec.local_status == OrderStatus.ADMIN_ACCEPTED

    def test_legacy_push_shape(self):
        rec = OrderReconciler(1, FakeFetch("PREPARING"), initial_status="ADMIN_ACCEPTED")
        assert rec.handle_push({"order_id": "1", "order_status": "processing"})
        assert rec.local_status == OrderStatus.PREPARING

    def test_older_status_is_ignored(self):
        changes = []
        rec = OrderReconciler(1, FakeFetch("PREPARING"), initial_status="READY_FOR_DELIVERY",
                              on_change=lambda *args: changes.append(args))
        assert not rec.apply("PREPARING", POLL)
        assert not rec.apply("PENDING", POLL)
        assert rec.local_status == OrderStatus.READY_FOR_DELIVERY
        assert changes == []

    def test_jump_over_missed_updates_is_adopted(self):
        rec = OrderReconciler(1, FakeFetch("PREPARING"), initial_status="ADMIN_ACCEPTED")
        assert rec.apply("OUT_FOR_DELIVERY", POLL)
        assert rec.local_status == OrderStatus.OUT_FOR_DELIVERY

    def test_terminal_status_is_final(self):
        rec = OrderReconciler(1, FakeFetch("PREPARING"), initial_status="OUT_FOR_DELIVERY")
        assert rec.apply("DELIVERED")
        assert rec.is_terminal
        assert not rec.apply("PREPARING", POLL)
        assert not rec.handle_push({"orderId": 1, "status": "CANCELLED"})
        assert rec.local_status == OrderStatus.DELIVERED


class TestPolling:
    """Fallback when pushes are missed"""

    def test_poll_picks_up_missed_change(self):
        changes = []

        async def scenario():
            fetch = FakeFetch("READY_FOR_DELIVERY")
            rec = OrderReconciler(1, fetch, initial_status="PREPARING", poll_interval=0.01)

            def on_change(status, previous, source):
                changes.append((status, previous, source))
                rec.stop()

            rec._on_change = on_change
            await asyncio.wait_for(rec.run(), timeout=2)
            return rec

        rec = asyncio.run(scenario())
        assert rec.local_status == OrderStatus.READY_FOR_DELIVERY
        assert changes == [(OrderStatus.READY_FOR_DELIVERY, OrderStatus.PREPARING, POLL)]
        assert rec.last_sync_time is not None

    def test_terminal_poll_ends_run(self):
        async def scenario():
            fetch = FakeFetch("PREPARING", "DELIVERED")
            rec = OrderReconciler(1, fetch, initial_status="ADMIN_ACCEPTED", poll_interval=0.01)
            await asyncio.wait_for(rec.run(), timeout=2)
            calls = fetch.calls
            await asyncio.sleep(0.05)
            return rec, fetch, calls

        rec, fetch, calls = asyncio.run(scenario())
        assert rec.local_status == OrderStatus.DELIVERED
        assert fetch.calls == calls == 2

    def test_run_does_nothing_when_already_terminal(self):
        async def scenario():
            fetch = FakeFetch("PREPARING")
            rec = OrderReconciler(1, fetch, initial_status="CANCELLED", poll_interval=0.01)
            await asyncio.wait_for(rec.run(), timeout=1)
            return fetch

        assert asyncio.run(scenario()).calls == 0

    def test_fresh_push_skips_poll(self):
        async def scenario():
            fetch = FakeFetch("ADMIN_ACCEPTED")
            rec = OrderReconciler(1, fetch, initial_status="ADMIN_ACCEPTED", poll_interval=0.01,
                                  clock=FakeClock())
            rec.handle_push({"orderId": 1, "status": "PREPARING"})
            asyncio.get_running_loop().call_later(0.1, rec.stop)
            await asyncio.wait_for(rec.run(), timeout=1)
            return rec, fetch

        rec, fetch = asyncio.run(scenario())
        assert fetch.calls == 0
        assert rec.local_status == OrderStatus.PREPARING

    def test_poll_read_before_push_does_not_roll_back(self):
        """The poll was answered with PREPARING, then READY_FOR_DELIVERY was pushed"""
        changes = []

        async def scenario():
            release = asyncio.Event()

            async def gated_fetch(order_id):
                await release.wait()
                return "PREPARING"

            rec = OrderReconciler(1, gated_fetch, initial_status="PREPARING",
                                  on_change=lambda *args: changes.append(args))
            poll = asyncio.create_task(rec.poll_once())
            await asyncio.sleep(0)
            rec.handle_push({"orderId": 1, "status": "READY_FOR_DELIVERY"})
            release.set()
            changed = await poll
            return rec, changed

        rec, changed = asyncio.run(scenario())
        assert not changed
        assert rec.local_status == OrderStatus.READY_FOR_DELIVERY
        assert changes == [(OrderStatus.READY_FOR_DELIVERY, OrderStatus.PREPARING, PUSH)]
        assert rec.consecutive_failures == 0

    def test_on_connected_polls_immediately(self):
        async def scenario():
            rec = OrderReconciler(1, FakeFetch("OUT_FOR_DELIVERY"), initial_status="PREPARING")
            await rec.on_connected()
            return rec

        assert asyncio.run(scenario()).local_status == OrderStatus.OUT_FOR_DELIVERY


class TestPollFailures:
    """Silent retries, one escalation at the threshold"""

    def test_escalates_once_and_resets_on_success(self):
        escalations = []

        async def scenario():
            fetch = FakeFetch(PollFailure("down"), PollFailure("down"), PollFailure("down"),
                              PollFailure("down"), "PREPARING", PollFailure("down"),
                              PollFailure("down"), PollFailure("down"))
            rec = OrderReconciler(1, fetch, initial_status="ADMIN_ACCEPTED", failure_threshold=3,
                                  on_refresh_failed=lambda: escalations.append(True))
            for _ in range(2):
                await rec.poll_once()
            assert escalations == []
            await rec.poll_once()
            await rec.poll_once()
            assert len(escalations) == 1
            assert rec.refresh_failed
            assert rec.local_status == OrderStatus.ADMIN_ACCEPTED

            assert await rec.poll_once()
            assert rec.consecutive_failures == 0
            assert not rec.refresh_failed

            for _ in range(3):
                await rec.poll_once()
            return rec

        rec = asyncio.run(scenario())
        assert len(escalations) == 2
        assert rec.local_status == OrderStatus.PREPARING

    def test_timeout_counts_as_failure(self):
        async def slow(order_id):
            await asyncio.sleep(1)
            return "PREPARING"

        async def scenario():
            rec = OrderReconciler(1, slow, initial_status="ADMIN_ACCEPTED", poll_timeout=0.01)
            changed = await rec.poll_once()
            return rec, changed

        rec, changed = asyncio.run(scenario())
        assert not changed
        assert rec.consecutive_failures == 1
        assert rec.local_status == OrderStatus.ADMIN_ACCEPTED

    def test_unknown_polled_status_counts_as_failure(self):
        async def scenario():
            rec = OrderReconciler(1, FakeFetch("ADMIN_ACCEPTED"), initial_status="ADMIN_ACCEPTED")
            rec._fetch_status = OrderApiClient(session=UnknownStatusSession()).fetch_status
            await rec.poll_once()
            return rec

        rec = asyncio.run(scenario())
        assert rec.consecutive_failures == 1


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class UnknownStatusSession:
    def get(self, url, timeout=None):
        return FakeResponse({"id": 1, "order_status": "SHIPPED"})


class TestOrderApiClient:

    def test_http_error_is_a_poll_failure(self):
        class NotFoundSession:
            def get(self, url, timeout=None):
                return FakeResponse({"detail": "Order 1 not found"}, 404)

        with pytest.raises(PollFailure):
            OrderApiClient(base_url="http://orders", session=NotFoundSession()).get_order(1)

    def test_connection_error_is_a_poll_failure(self):
        class DownSession:
            def get(self, url, timeout=None):
                raise requests.ConnectionError("refused")

        with pytest.raises(PollFailure):
            asyncio.run(OrderApiClient(base_url="http://orders", session=DownSession()).fetch_status(1))

    def test_legacy_snapshot_is_normalized(self):
        class LegacySession:
            def __init__(self):
                self.urls = []

            def get(self, url, timeout=None):
                self.urls.append((url, timeout))
                return FakeResponse({"order_id": 1, "orderStatus": "pending"})

        session = LegacySession()
        api = OrderApiClient(base_url="http://orders/", timeout=3, session=session)
        assert asyncio.run(api.fetch_status(1)) == OrderStatus.PENDING_ADMIN_DECISION
        assert session.urls == [("http://orders/orders/1", 3)]

    def test_poll_against_live_api(self, client, api_order):
        """Server moved on while the push was missed; the next poll catches up"""
        order_id = api_order.id
        client.post(f"/orders/{order_id}/accept")
        client.patch(f"/orders/{order_id}/status", json={"status": "PREPARING"})
        client.patch(f"/orders/{order_id}/status", json={"status": "READY_FOR_DELIVERY"})

        async def scenario():
            api = OrderApiClient(base_url="", session=client)
            rec = OrderReconciler(order_id, api.fetch_status, initial_status="PREPARING",
                                  poll_interval=0.01, on_change=lambda *args: rec.stop())
            await asyncio.wait_for(rec.run(), timeout=5)
            return rec

        rec = asyncio.run(scenario())
        assert rec.local_status == OrderStatus.READY_FOR_DELIVERY
