from iapsync.queues.memory import InMemoryPaymentQueue, StaticProductsProvider

__all__ = ["InMemoryPaymentQueue", "StaticProductsProvider"]
