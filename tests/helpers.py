import asyncio

from schemas.order import OrderItemIn


def make_items():
    return [
        OrderItemIn(product_id="p-1", name="Milk 1L", quantity=2, unit_price=1.25),
        OrderItemIn(product_id="p-2", name="Bread", quantity=1, unit_price=2.50),
    ]


class RecordingChannel:
    """Broadcaster channel that keeps everything it was sent."""

    def __init__(self):
        self.received = []

    async def send(self, event, data):
        self.received.append((event, data))


def run(coro):
    return asyncio.run(coro)
