import pytest

from rulesim import PoolSet, UNLIMITED, new_resource


def test_absent_resource_reads_as_zero(iron):
    ps = PoolSet()
    assert ps.quantity(iron) == 0
    assert ps.capacity(iron) == 0
    assert ps.quantity(None) == 0
    assert ps.capacity(None) == 0


def test_writes_to_absent_resource_hand_everything_back(iron):
    ps = PoolSet()
    assert ps.add(iron, 5) == 5
    assert ps.set(iron, 5) == 5
    assert ps.remove(iron, 5) == 5
    assert ps.add(None, 3) == 3
    assert iron not in ps


def test_set_capacity_creates_empty_pool(iron):
    ps = PoolSet()
    ps.set_capacity(iron, 10)
    assert iron in ps
    assert ps.quantity(iron) == 0
    assert ps.capacity(iron) == 10


def test_set_capacity_does_not_clamp_until_next_write(iron):
    ps = PoolSet()
    ps.add_pool(iron, 10, 8)
    ps.set_capacity(iron, 5)
    assert ps.quantity(iron) == 8
    assert ps.add(iron, 0) == 3
    assert ps.quantity(iron) == 5


def test_add_pool_rejects_missing_resource():
    with pytest.raises(ValueError):
        PoolSet().add_pool(None, 10, 1)


def test_add_clamps_to_capacity(iron):
    ps = PoolSet()
    ps.add_pool(iron, 10, 7)
    assert ps.add(iron, 5) == 2
    assert ps.quantity(iron) == 10


def test_add_negative_clamps_at_zero(iron):
    ps = PoolSet()
    ps.add_pool(iron, 10, 3)
    assert ps.add(iron, -5) == -2
    assert ps.quantity(iron) == 0


def test_set_clamps_to_capacity(iron):
    ps = PoolSet()
    ps.add_pool(iron, 10, 0)
    assert ps.set(iron, 4) == 0
    assert ps.quantity(iron) == 4
    assert ps.set(iron, 25) == 15
    assert ps.quantity(iron) == 10


def test_uninitialised_capacity_forces_zero(iron):
    ps = PoolSet()
    ps.set_capacity(iron, 0)
    assert ps.add(iron, 4) == 4
    assert ps.quantity(iron) == 0


def test_quantity_stays_in_bounds():
    r = new_resource("grain")
    ps = PoolSet()
    ps.add_pool(r, 50, 0)
    for q in (30, 40, -100, 7, 60, -3, 0, 51):
        ps.add(r, q)
        assert 0 <= ps.quantity(r) <= ps.capacity(r)
        ps.set(r, q)
        assert 0 <= ps.quantity(r) <= ps.capacity(r)


def test_remove_is_all_or_nothing(iron):
    ps = PoolSet()
    ps.add_pool(iron, 100, 10)
    assert ps.remove(iron, 11) == 11
    assert ps.quantity(iron) == 10
    assert ps.remove(iron, 10) == 0
    assert ps.quantity(iron) == 0


def test_add_then_remove_restores_quantity(iron):
    ps = PoolSet()
    ps.add_pool(iron, UNLIMITED, 1000)
    assert ps.add(iron, 250) == 0
    assert ps.remove(iron, 250) == 0
    assert ps.quantity(iron) == 1000


def test_pools_are_keyed_by_resource_identity():
    a = new_resource("copper")
    b = new_resource("copper")
    ps = PoolSet()
    ps.add_pool(a, 10, 4)
    assert a != b
    assert ps.quantity(b) == 0
    assert ps.quantity(a) == 4
