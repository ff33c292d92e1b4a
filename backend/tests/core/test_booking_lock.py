import asyncio

import pytest

from lessonbook.core.booking_lock import BookingLockRegistry
from lessonbook.core.exceptions import BookingLockTimeoutException


class TestBookingLockRegistry:
    @pytest.mark.asyncio
    async def test_same_subject_is_serialised(self):
        registry = BookingLockRegistry()
        order = []

        async def worker(name: str) -> None:
            async with registry.hold("calendar"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_lock_dropped_when_idle(self):
        registry = BookingLockRegistry()

        async with registry.hold("calendar"):
            assert registry.is_locked("calendar")
            assert len(registry) == 1

        assert not registry.is_locked("calendar")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_timeout_when_held_elsewhere(self):
        registry = BookingLockRegistry()

        async with registry.hold("calendar"):
            with pytest.raises(BookingLockTimeoutException) as exc_info:
                async with registry.hold("calendar", timeout_s=0.01):
                    pass

        assert exc_info.value.status_code == 503
        assert exc_info.value.details["subject"] == "calendar"

        assert len(registry) == 0
