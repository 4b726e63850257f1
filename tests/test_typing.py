"""Tests for the typing-indicator lease."""

from __future__ import annotations

import asyncio

import pytest

from clinicrelay.dashboard.typing import TypingLease


class FlagRecorder:
    def __init__(self) -> None:
        self.value = False
        self.writes: list[bool] = []

    async def __call__(self, value: bool) -> None:
        self.value = value
        self.writes.append(value)


class TestTypingLease:
    @pytest.mark.asyncio
    async def test_pulses_extend_the_lease(self):
        # Pulses at t=0, 0.1, 0.2 keep the flag up until t≈0.6.
        flag = FlagRecorder()
        lease = TypingLease(flag, quiet_period=0.4)

        await lease.pulse()
        await asyncio.sleep(0.1)
        await lease.pulse()
        await asyncio.sleep(0.1)
        await lease.pulse()

        await asyncio.sleep(0.25)          # t≈0.45, last pulse + 0.25
        assert flag.value is True

        await asyncio.sleep(0.3)           # t≈0.75, past last pulse + 0.4
        assert flag.value is False
        assert flag.writes == [True, False]
        assert not lease.active

    @pytest.mark.asyncio
    async def test_true_written_once_per_lease(self):
        flag = FlagRecorder()
        lease = TypingLease(flag, quiet_period=1.0)
        for _ in range(5):
            await lease.pulse()
        assert flag.writes == [True]
        await lease.close()

    @pytest.mark.asyncio
    async def test_close_clears_synchronously(self):
        flag = FlagRecorder()
        lease = TypingLease(flag, quiet_period=5.0)
        await lease.pulse()

        await lease.close()
        assert flag.value is False
        assert flag.writes == [True, False]

        # No timer outlives the session.
        await asyncio.sleep(0.05)
        assert flag.writes == [True, False]

    @pytest.mark.asyncio
    async def test_close_without_pulse_writes_nothing(self):
        flag = FlagRecorder()
        lease = TypingLease(flag, quiet_period=0.1)
        await lease.close()
        assert flag.writes == []

    @pytest.mark.asyncio
    async def test_new_lease_after_expiry(self):
        flag = FlagRecorder()
        lease = TypingLease(flag, quiet_period=0.05)
        await lease.pulse()
        await asyncio.sleep(0.1)
        await lease.pulse()
        assert flag.writes == [True, False, True]
        await lease.close()
        assert flag.writes == [True, False, True, False]

    @pytest.mark.asyncio
    async def test_long_session_refreshes_flag(self):
        flag = FlagRecorder()
        lease = TypingLease(flag, quiet_period=0.2)
        for _ in range(4):
            await lease.pulse()
            await asyncio.sleep(0.12)
        # Continuous typing past the quiet period re-raises the flag.
        assert flag.writes.count(True) >= 2
        assert False not in flag.writes
        await lease.close()
