import pytest

from memwalk.operable import Operable


class Counter(Operable):
    def __init__(self, scale, result=7):
        super().__init__(scale)
        self.calls = 0
        self.result = result

    def operate(self):
        self.calls += 1
        return self.result


def run_ticks(unit, count):
    return [Operable.tick(unit) for _ in range(count)]


def test_operable_is_abstract():
    with pytest.raises(TypeError):
        Operable(1)


def test_unit_scale_operates_every_tick():
    unit = Counter(1)
    ticks = 25
    results = [Operable.tick(unit) for _ in range(ticks)]
    assert unit.calls == ticks
    assert unit.current_cycle == ticks
    assert all(r == unit.result for r in results)


def test_double_scale_skips_alternate_ticks():
    unit = Counter(2, result=7)
    results = [Operable.tick(unit) for _ in range(4)]
    assert results == [7, 0, 7, 0]
    assert unit.current_cycle == unit.calls


def test_skipped_ticks_do_not_advance_cycle():
    unit = Counter(3)
    results = [Operable.tick(unit) for _ in range(30)]
    operated = [r for r in results if r == unit.result]
    assert len(operated) == unit.calls
    assert unit.current_cycle == unit.calls
    assert unit.calls < 30


def test_fractional_scale_operates_at_least_as_often_as_slower_scale():
    fast = Counter(1.5)
    slow = Counter(2)
    for _ in range(40):
        Operable.tick(fast)
        Operable.tick(slow)
    assert fast.calls >= slow.calls
    assert fast.current_cycle == fast.calls