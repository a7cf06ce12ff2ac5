"""
Tests for windusb.core.events module.
"""

import threading

from windusb.core.events import Error, EventChannel, Finished, Update, is_terminal


class TestEventTypes:
    """Tests for the event dataclasses."""

    def test_update_percent(self) -> None:
        assert Update("Copying", 0.456).percent == 45

    def test_terminal_detection(self) -> None:
        assert is_terminal(Finished())
        assert is_terminal(Error("boom"))
        assert not is_terminal(Update("x", 0.1))


class TestEventChannel:
    """Tests for EventChannel guarantees."""

    def test_updates_in_order(self) -> None:
        channel = EventChannel()
        channel.update("a", 0.1)
        channel.update("b", 0.2)

        assert channel.drain() == [Update("a", 0.1), Update("b", 0.2)]

    def test_regressing_update_dropped(self) -> None:
        channel = EventChannel()
        channel.update("a", 0.5)

        assert not channel.update("b", 0.4)
        assert channel.drain() == [Update("a", 0.5)]
        assert channel.last_fraction == 0.5

    def test_equal_fraction_allowed(self) -> None:
        channel = EventChannel()
        channel.update("a", 0.5)

        assert channel.update("b", 0.5)

    def test_fraction_clamped(self) -> None:
        channel = EventChannel()
        channel.update("low", -1.0)
        channel.update("high", 7.0)

        assert [e.fraction for e in channel.drain()] == [0.0, 1.0]

    def test_single_terminal_event(self) -> None:
        channel = EventChannel()

        assert channel.error("first")
        assert not channel.finish()
        assert not channel.error("second")
        assert channel.drain() == [Error("first")]
        assert channel.terminal_event == Error("first")

    def test_no_update_after_terminal(self) -> None:
        channel = EventChannel()
        channel.finish()

        assert not channel.update("late", 0.99)
        assert channel.drain() == [Finished()]
        assert channel.closed

    def test_get_timeout_returns_none(self) -> None:
        assert EventChannel().get(timeout=0.01) is None

    def test_concurrent_writers_keep_one_terminal(self) -> None:
        channel = EventChannel()
        barrier = threading.Barrier(8)

        def writer(i: int) -> None:
            barrier.wait()
            for step in range(50):
                channel.update(f"w{i}", step / 100)
            channel.error(f"writer {i}")

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        events = channel.drain()
        assert sum(1 for e in events if is_terminal(e)) == 1
        assert is_terminal(events[-1])
        fractions = [e.fraction for e in events if isinstance(e, Update)]
        assert fractions == sorted(fractions)
