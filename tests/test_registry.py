"""Test ChainRegistry ownership and in-flight tracking."""

import asyncio

import pytest

from conftest import make_graph
from promptchain.errors import ChainNotFoundError
from promptchain.models import Chain
from promptchain.registry import ChainRegistry


def test_add_get_list():
    registry = ChainRegistry()
    chain = registry.add(Chain(graph=make_graph({"A": []})))
    assert registry.get(chain.id) is chain
    assert chain.id in registry
    assert registry.list() == [chain]

    with pytest.raises(ChainNotFoundError):
        registry.get("missing")
    with pytest.raises(KeyError):
        registry.get("missing")


def test_claim_is_exclusive():
    registry = ChainRegistry()

    async def run():
        claims = await asyncio.gather(*(registry.claim("c1", "A") for _ in range(5)))
        in_flight = registry.in_flight("c1")
        await registry.release("c1", "A")
        again = await registry.claim("c1", "A")
        return claims, in_flight, again

    claims, in_flight, again = asyncio.run(run())
    assert claims.count(True) == 1
    assert in_flight == frozenset({"A"})
    assert again


def test_driver_is_forgotten_when_done():
    registry = ChainRegistry()

    async def run():
        task = asyncio.create_task(asyncio.sleep(0))
        registry.set_driver("c1", task)
        present = registry.get_driver("c1") is task
        await task
        await asyncio.sleep(0)
        return present, registry.get_driver("c1"), registry.drivers()

    present, after, drivers = asyncio.run(run())
    assert present
    assert after is None
    assert drivers == []
