import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from db.models import ListingStatus
from events import AuctionUpdated, NotificationCreated
from services.event_bus import EventBus

STARTS = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
ENDS = datetime(2024, 6, 8, 12, 0, tzinfo=timezone.utc)


def make_update(listing_id: str = "listing-1") -> AuctionUpdated:
    return AuctionUpdated(
        listing_id=listing_id,
        status=ListingStatus.ACTIVE,
        starts_at=STARTS,
        ends_at=ENDS,
        current_price=Decimal("0.00"),
        bid_count=0,
    )


@pytest.fixture()
async def bus():
    bus = EventBus()
    await bus.start()
    yield bus
    await bus.stop()


def test_auction_updated_payload_uses_camel_case():
    payload = make_update().to_payload()

    assert payload == {
        "id": "listing-1",
        "status": "ACTIVE",
        "startsAt": STARTS.isoformat(),
        "endsAt": ENDS.isoformat(),
        "currentPrice": "0.00",
        "bidCount": 0,
        "winnerId": None,
        "winningBidId": None,
        "soldAt": None,
    }
    assert AuctionUpdated.name == "auctionUpdated"


@pytest.mark.asyncio
async def test_subscribers_receive_events_by_type(bus):
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe(AuctionUpdated, handler)
    await bus.publish(make_update())
    await bus.publish(NotificationCreated(notification_id="n", user_id="u", type="AUCTION_WON", title="t"))
    await bus.drain()

    assert [event.listing_id for event in received] == ["listing-1"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_affect_others(bus):
    received = []

    async def broken(event):
        raise RuntimeError("subscriber crashed")

    async def healthy(event):
        received.append(event)

    bus.subscribe(AuctionUpdated, broken)
    bus.subscribe(AuctionUpdated, healthy)
    await bus.publish(make_update())
    await bus.drain()

    assert len(received) == 1
    assert bus.is_running


@pytest.mark.asyncio
async def test_listen_queue_receives_events_while_open(bus):
    async with bus.listen(AuctionUpdated) as queue:
        await bus.publish(make_update("a"))
        event = await asyncio.wait_for(queue.get(), timeout=1)
    await bus.publish(make_update("b"))
    await bus.drain()

    assert event.listing_id == "a"
    assert queue.empty()


@pytest.mark.asyncio
async def test_slow_listener_drops_events(bus):
    async with bus.listen(AuctionUpdated, maxsize=1) as queue:
        for listing_id in ("a", "b", "c"):
            await bus.publish(make_update(listing_id))
        await bus.drain()

        assert queue.qsize() == 1
        assert queue.get_nowait().listing_id == "a"
    assert bus.dropped_events == 2


@pytest.mark.asyncio
async def test_stop_delivers_already_queued_events():
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe(AuctionUpdated, handler)
    await bus.start()
    bus.publish_nowait(make_update())
    await bus.stop()

    assert len(received) == 1
    assert not bus.is_running
