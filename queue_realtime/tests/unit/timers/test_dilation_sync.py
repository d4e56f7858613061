"""Unit tests for eye-drop queue snapshot to countdown synchronisation."""

import asyncio

import pytest

from queue_realtime.timers.countdown import CountdownTimerEngine, PatientStatus
from queue_realtime.timers.dilation_sync import DilationTimerSync, QueueEntrySnapshot


def _entry(entry_id="Q1", round_=1, waiting_since=0, **timing):
    timing.setdefault("waitingForDilation", True)
    return {
        "queueEntryId": entry_id,
        "patient": {"fullName": "Ada Lovelace"},
        "timing": {"dilationRound": round_, "waitingSinceMinutes": waiting_since, **timing},
    }


@pytest.fixture
def engine(fake_clock):
    return CountdownTimerEngine(clock=fake_clock, tick_interval=0.01)


@pytest.fixture
def sync(engine):
    return DilationTimerSync(engine, default_duration_minutes=10)


def test_snapshot_from_api():
    snapshot = QueueEntrySnapshot.from_api(
        {**_entry(round_=2, waiting_since=3, timeRemaining=7), "customWaitMinutes": 20}
    )
    assert snapshot.queue_entry_id == "Q1"
    assert snapshot.status is PatientStatus.WAITING_FOR_DILATION
    assert snapshot.dilation_round == 2
    assert snapshot.waiting_since_minutes == 3
    assert snapshot.time_remaining_minutes == 7.0
    assert snapshot.custom_wait_minutes == 20.0
    assert snapshot.patient_name == "Ada Lovelace"


def test_snapshot_requires_queue_entry_id():
    with pytest.raises(ValueError):
        QueueEntrySnapshot.from_api({"timing": {}})


@pytest.mark.parametrize(
    ("snapshot", "expected_seconds"),
    [
        (QueueEntrySnapshot("Q1", PatientStatus.WAITING_FOR_DILATION, time_remaining_minutes=2.5), 150),
        (QueueEntrySnapshot("Q1", PatientStatus.WAITING_FOR_DILATION, waiting_since_minutes=4), 360),
        (
            QueueEntrySnapshot(
                "Q1", PatientStatus.WAITING_FOR_DILATION, waiting_since_minutes=5, custom_wait_minutes=15
            ),
            600,
        ),
        (QueueEntrySnapshot("Q1", PatientStatus.WAITING_FOR_DILATION, waiting_since_minutes=30), 0),
    ],
)
def test_snapshot_expires_at(snapshot, expected_seconds):
    assert snapshot.expires_at(1000.0, 10) == 1000.0 + expected_seconds


@pytest.mark.asyncio
async def test_waiting_entry_starts_countdown(sync, engine):
    result = sync.apply_snapshot([_entry(waiting_since=4)])

    assert result.started == ["Q1"]
    assert engine.remaining("Q1") == 360
    assert sync.tracked_ids == frozenset({"Q1"})
    await engine.shutdown()


@pytest.mark.asyncio
async def test_refetch_keeps_running_countdown(sync, engine, fake_clock):
    """A refetch that reports the same round and roughly the same expiry does not reset the countdown."""
    sync.apply_snapshot([_entry(waiting_since=4)])
    timer = engine.get("Q1")

    fake_clock.advance(30)
    result = sync.apply_snapshot([_entry(waiting_since=4)])

    assert result.kept == ["Q1"]
    assert engine.get("Q1") is timer
    assert engine.remaining("Q1") == 330
    await engine.shutdown()


@pytest.mark.asyncio
async def test_new_dilation_round_restarts_countdown(sync, engine):
    sync.apply_snapshot([_entry(round_=1, waiting_since=4)])
    result = sync.apply_snapshot([_entry(round_=2, waiting_since=0)])

    assert result.started == ["Q1"]
    assert engine.remaining("Q1") == 600
    await engine.shutdown()


@pytest.mark.asyncio
async def test_moved_expiry_restarts_countdown(sync, engine):
    sync.apply_snapshot([_entry(timeRemaining=10)])
    result = sync.apply_snapshot([_entry(timeRemaining=5)])

    assert result.started == ["Q1"]
    assert engine.remaining("Q1") == 300
    await engine.shutdown()


@pytest.mark.asyncio
async def test_entries_leaving_dilation_are_cancelled(sync, engine):
    sync.apply_snapshot([_entry("Q1"), _entry("Q2"), _entry("Q3")])

    result = sync.apply_snapshot(
        [
            _entry("Q1", needsDrops=True, waitingForDilation=False),
            _entry("Q2", readyToResume=True, waitingForDilation=False),
        ]
    )

    assert sorted(result.cancelled) == ["Q1", "Q2", "Q3"]
    assert engine.active_ids() == []
    assert sync.tracked_ids == frozenset()
    await engine.shutdown()


@pytest.mark.asyncio
async def test_expired_countdown_stays_expired_until_entry_moves_on(sync, engine):
    sync.apply_snapshot([_entry(timeRemaining=0)])
    await asyncio.sleep(0.05)
    assert engine.get("Q1").expired

    result = sync.apply_snapshot([_entry(timeRemaining=0)])
    assert result.kept == ["Q1"]

    result = sync.apply_snapshot([_entry(readyToResume=True, waitingForDilation=False)])
    assert result.cancelled == []
    assert engine.get("Q1") is None
    await engine.shutdown()


@pytest.mark.asyncio
async def test_malformed_entries_are_skipped(sync, engine):
    result = sync.apply_snapshot([{"timing": {}}, _entry("Q2")])
    assert result.started == ["Q2"]
    await engine.shutdown()


@pytest.mark.asyncio
async def test_accepts_snapshot_objects(sync, engine):
    snapshot = QueueEntrySnapshot("Q7", PatientStatus.WAITING_FOR_DILATION, time_remaining_minutes=1)
    assert sync.apply_snapshot([snapshot]).started == ["Q7"]
    assert engine.remaining("Q7") == 60
    await engine.shutdown()
