"""Example: producer "orders" fans out to consumers "billing" and "shipping" (in-memory store)."""

import asyncio
import logging

from durable_pubsub import Client, DeliveryPolicy, MemoryStore

logging.basicConfig(level=logging.INFO)


async def main() -> None:
    store = MemoryStore()
    done = asyncio.Event()
    received = []

    def on_event(topic, payload, ack) -> None:
        received.append(topic)
        ack()
        if len(received) == 2:
            done.set()

    orders = Client(identity="orders", store=store)
    billing = Client(identity="billing", store=store)
    shipping = Client(identity="shipping", store=store, policy=DeliveryPolicy.INSTANCE)

    async with orders, billing, shipping:
        await billing.subscribe({"orders": ["order.created"]}, on_event)
        await shipping.subscribe({"orders": ["order.created"]}, on_event)

        await orders.publish("order.created", '{"order_id": 201}')
        await done.wait()

    print(received, store.keys())


if __name__ == "__main__":
    asyncio.run(main())
