"""Unit tests for SessionEngine: pure state machine, no I/O dependencies."""

from datetime import datetime, timezone

import pytest

from study_session.engine import SessionEngine, SessionEvent, TickResult
from study_session.errors import InvalidConfig, NoActiveSession
from study_session.models import (
    SessionConfig,
    SessionMode,
    SessionPhase,
    SessionState,
    format_duration,
)

STARTED_AT = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
MIN = 60_000


# ---- Helpers ----

def make_engine(mode: SessionMode = SessionMode.FREE, now_ms: int = 0, **config) -> SessionEngine:
    return SessionEngine(
        session_id="s-1",
        book_id="book-1",
        config=SessionConfig(mode=mode, **config),
        now_mono_ms=now_ms,
        started_at=STARTED_AT,
    )


def advance(engine: SessionEngine, start_ms: int, seconds: int, active: bool = False) -> TickResult:
    """Advance in 1-second ticks, returning the last result.

    With active=True the UI reports activity just before every tick.
    """
    result = TickResult()
    for i in range(seconds):
        now = start_ms + (i + 1) * 1000
        if active:
            engine.report_activity(now)
        result = engine.tick(now)
    return result


def collect_events(engine: SessionEngine, start_ms: int, seconds: int, active: bool = False) -> list[SessionEvent]:
    events = []
    for i in range(seconds):
        now = start_ms + (i + 1) * 1000
        if active:
            events.extend(engine.report_activity(now).events)
        events.extend(engine.tick(now).events)
    return events


def accounted(engine: SessionEngine, now_ms: int) -> int:
    return engine.snapshot(now_ms).stats.accounted_ms


# ---- Config ----

class TestConfig:
    def test_defaults(self):
        config = SessionConfig()
        assert config.mode == SessionMode.POMODORO
        assert (config.work_minutes, config.break_minutes) == (25, 5)
        assert config.afk_timeout_minutes == 5
        assert config.microbreak_interval_minutes == 20

    def test_zero_work_rejected_in_pomodoro(self):
        with pytest.raises(InvalidConfig):
            SessionConfig(mode=SessionMode.POMODORO, work_minutes=0).validate()

    def test_zero_break_rejected_in_pomodoro(self):
        with pytest.raises(InvalidConfig):
            SessionConfig(mode=SessionMode.POMODORO, break_minutes=0).validate()

    def test_work_ignored_in_free_mode(self):
        SessionConfig(mode=SessionMode.FREE, work_minutes=0, break_minutes=0).validate()

    def test_zero_afk_rejected(self):
        with pytest.raises(InvalidConfig):
            SessionConfig(afk_timeout_minutes=0).validate()

    def test_negative_microbreak_rejected(self):
        with pytest.raises(InvalidConfig):
            SessionConfig(microbreak_interval_minutes=-1).validate()

    def test_engine_validates_on_construction(self):
        with pytest.raises(InvalidConfig):
            make_engine(SessionMode.POMODORO, work_minutes=-5)

    def test_invalid_config_is_a_value_error(self):
        with pytest.raises(ValueError):
            SessionConfig(afk_timeout_minutes=-1).validate()


class TestFormatDuration:
    def test_minutes(self):
        assert format_duration(25 * MIN) == "25 min"

    def test_hours_and_minutes(self):
        assert format_duration(65 * MIN) == "1h 5min"

    def test_whole_hours(self):
        assert format_duration(120 * MIN) == "2h"

    def test_zero(self):
        assert format_duration(0) == "0 min"


# ---- Start state ----

class TestStart:
    def test_pomodoro_starts_in_work(self):
        engine = make_engine(SessionMode.POMODORO)
        assert engine.state == SessionState.RUNNING
        assert engine.phase == SessionPhase.WORK

    def test_free_starts_idle_phase(self):
        engine = make_engine(SessionMode.FREE)
        assert engine.state == SessionState.RUNNING
        assert engine.phase == SessionPhase.IDLE

    def test_initial_snapshot_is_zeroed(self):
        snap = make_engine(SessionMode.POMODORO).snapshot(0)
        assert snap.active_ms == 0
        assert snap.stats.accounted_ms == 0
        assert snap.phase_remaining_ms == 25 * MIN
        assert snap.started_at == STARTED_AT
        assert not snap.microbreak_due

    def test_free_mode_has_no_remaining(self):
        assert make_engine(SessionMode.FREE).snapshot(0).phase_remaining_ms is None


# ---- Active time ----

class TestActiveTime:
    def test_running_tick_adds_elapsed(self):
        engine = make_engine()
        advance(engine, 0, 60)
        assert engine.stats.active_ms == 60_000
        assert engine.snapshot().timer_seconds == 60

    def test_report_activity_is_idempotent(self):
        engine = make_engine()
        advance(engine, 0, 10)
        engine.report_activity(10_000)
        before = engine.snapshot(10_000)
        engine.report_activity(10_000)
        engine.report_activity(10_000)
        after = engine.snapshot(10_000)
        assert after == before

    def test_activity_does_not_add_time(self):
        engine = make_engine()
        engine.report_activity(5_000)
        assert engine.stats.active_ms == 0

    def test_tick_at_same_time_is_noop(self):
        engine = make_engine()
        engine.tick(1_000)
        result = engine.tick(1_000)
        assert result.elapsed_ms == 0
        assert engine.stats.active_ms == 1_000

    def test_sleep_gap_is_reconciled(self):
        """A 2-minute gap between ticks (laptop lid) counts in full."""
        engine = make_engine()
        engine.tick(1_000)
        result = engine.tick(121_000)
        assert result.elapsed_ms == 120_000
        assert engine.stats.active_ms == 121_000

    def test_long_gap_becomes_afk(self):
        """A gap longer than the AFK timeout is AFK time, not reading."""
        engine = make_engine()
        engine.tick(1_000)
        result = engine.tick(601_000)
        assert SessionEvent.AFK_STARTED in result.events
        snap = engine.snapshot(601_000)
        assert snap.active_ms == 0
        assert snap.stats.total_afk_ms == 601_000

    def test_page_views_and_annotations(self):
        engine = make_engine()
        engine.record_page_view(words=250)
        engine.record_page_view(words=300)
        engine.record_page_view()
        engine.record_highlight()
        engine.record_note()
        stats = engine.stats
        assert stats.pages_viewed == 3
        assert stats.words_read_estimate == 550
        assert stats.highlights_during == 1
        assert stats.notes_during == 1

    def test_negative_word_count_ignored(self):
        engine = make_engine()
        engine.record_page_view(words=-40)
        assert engine.stats.words_read_estimate == 0
        assert engine.stats.pages_viewed == 1


# ---- AFK ----

class TestAfk:
    def test_idle_window_becomes_afk(self):
        """No activity for the full timeout: active time is retracted to AFK."""
        engine = make_engine(afk_timeout_minutes=1)
        advance(engine, 0, 59)
        assert engine.state == SessionState.RUNNING
        assert engine.stats.active_ms == 59_000

        result = engine.tick(60_000)
        assert result.events == [SessionEvent.AFK_STARTED]
        assert engine.state == SessionState.PAUSED_AFK
        assert engine.afk_started_ms == 0
        snap = engine.snapshot(60_000)
        assert snap.active_ms == 0
        assert snap.stats.total_afk_ms == 60_000

    def test_afk_ticks_add_no_active_time(self):
        engine = make_engine(afk_timeout_minutes=1)
        advance(engine, 0, 90)
        assert engine.stats.active_ms == 0
        assert engine.snapshot(90_000).stats.total_afk_ms == 90_000

    def test_activity_resumes_and_commits_afk(self):
        engine = make_engine(afk_timeout_minutes=1)
        advance(engine, 0, 90)
        result = engine.report_activity(90_000)
        assert result.events == [SessionEvent.AFK_ENDED]
        assert engine.state == SessionState.RUNNING
        assert engine.afk_started_ms is None
        assert engine.stats.total_afk_ms == 90_000

        engine.tick(91_000)
        assert engine.stats.active_ms == 1_000
        assert accounted(engine, 91_000) == 91_000

    def test_confirm_presence_resumes(self):
        engine = make_engine(afk_timeout_minutes=1)
        advance(engine, 0, 70)
        result = engine.confirm_presence(70_000)
        assert SessionEvent.AFK_ENDED in result.events
        assert engine.state == SessionState.RUNNING

    def test_only_unconfirmed_time_is_retracted(self):
        """Active time before the last activity stays active."""
        engine = make_engine(afk_timeout_minutes=1)
        advance(engine, 0, 30, active=True)
        advance(engine, 30_000, 60)
        assert engine.state == SessionState.PAUSED_AFK
        assert engine.stats.active_ms == 30_000
        assert engine.afk_started_ms == 30_000
        assert accounted(engine, 90_000) == 90_000

    def test_afk_clears_microbreak_due(self):
        engine = make_engine(afk_timeout_minutes=5, microbreak_interval_minutes=1)
        advance(engine, 0, 60, active=True)
        assert engine.microbreak_due
        advance(engine, 60_000, 300)
        assert engine.state == SessionState.PAUSED_AFK
        assert not engine.microbreak_due

    def test_activity_while_running_emits_nothing(self):
        engine = make_engine()
        assert engine.report_activity(1_000).events == []

    def test_pomodoro_progress_pauses_while_afk(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=25, afk_timeout_minutes=1)
        advance(engine, 0, 120)
        assert engine.state == SessionState.PAUSED_AFK
        assert engine.phase_elapsed_ms == 0
        assert engine.phase == SessionPhase.WORK


# ---- Pomodoro ----

class TestPomodoro:
    def test_work_to_break_to_work(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=1, break_minutes=1)
        events = collect_events(engine, 0, 60)
        assert SessionEvent.POMODORO_COMPLETED in events
        assert events.count(SessionEvent.PHASE_CHANGED) == 1
        assert engine.phase == SessionPhase.BREAK
        assert engine.stats.completed_pomodoros == 1
        assert engine.stats.active_ms == 60_000

        result = advance(engine, 60_000, 60)
        assert result.events == [SessionEvent.PHASE_CHANGED]
        assert result.old_phase == SessionPhase.BREAK
        assert engine.phase == SessionPhase.WORK
        assert engine.stats.total_break_ms == 60_000
        assert engine.stats.active_ms == 60_000
        assert engine.phase_elapsed_ms == 0

    def test_phase_remaining_counts_down(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=25)
        advance(engine, 0, 60)
        assert engine.snapshot().phase_remaining_ms == 24 * MIN

    def test_break_does_not_count_active(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=1, break_minutes=5)
        advance(engine, 0, 60)
        advance(engine, 60_000, 120)
        assert engine.stats.active_ms == 60_000
        assert engine.stats.total_break_ms == 120_000

    def test_no_afk_during_break(self):
        engine = make_engine(
            SessionMode.POMODORO, work_minutes=1, break_minutes=10, afk_timeout_minutes=1
        )
        advance(engine, 0, 60, active=True)
        assert engine.phase == SessionPhase.BREAK
        events = collect_events(engine, 60_000, 600)
        assert SessionEvent.AFK_STARTED not in events
        assert engine.phase == SessionPhase.WORK

        # AFK detection restarts from the break's end
        result = advance(engine, 660_000, 60)
        assert SessionEvent.AFK_STARTED in result.events

    def test_gap_is_charged_to_current_phase(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=1, break_minutes=1)
        result = engine.tick(90_000)
        assert SessionEvent.POMODORO_COMPLETED in result.events
        assert engine.phase == SessionPhase.BREAK
        assert engine.stats.active_ms == 90_000
        assert engine.stats.total_break_ms == 0

    def test_skip_break(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=1, break_minutes=5)
        advance(engine, 0, 60)
        result = engine.skip_break(61_000)
        assert result.events == [SessionEvent.PHASE_CHANGED]
        assert engine.phase == SessionPhase.WORK
        assert engine.stats.total_break_ms == 1_000
        assert engine.stats.completed_pomodoros == 1
        assert engine.phase_elapsed_ms == 0

    def test_skip_break_outside_break_is_noop(self):
        engine = make_engine(SessionMode.POMODORO)
        advance(engine, 0, 10)
        result = engine.skip_break(10_000)
        assert result.events == []
        assert engine.phase == SessionPhase.WORK

    def test_free_mode_never_breaks(self):
        engine = make_engine(SessionMode.FREE, microbreak_interval_minutes=0)
        events = collect_events(engine, 0, 3600, active=True)
        assert SessionEvent.PHASE_CHANGED not in events
        assert engine.stats.completed_pomodoros == 0
        assert engine.phase == SessionPhase.IDLE


# ---- Microbreaks ----

class TestMicrobreak:
    def test_due_after_interval(self):
        engine = make_engine(afk_timeout_minutes=5, microbreak_interval_minutes=5)
        advance(engine, 0, 299, active=True)
        assert not engine.microbreak_due
        result = advance(engine, 299_000, 1, active=True)
        assert SessionEvent.MICROBREAK_DUE in result.events
        assert engine.microbreak_due

    def test_due_fires_once(self):
        engine = make_engine(afk_timeout_minutes=5, microbreak_interval_minutes=1)
        events = collect_events(engine, 0, 180, active=True)
        assert events.count(SessionEvent.MICROBREAK_DUE) == 1

    def test_take_and_end(self):
        engine = make_engine(afk_timeout_minutes=5, microbreak_interval_minutes=5)
        advance(engine, 0, 300, active=True)

        result = engine.microbreak_take(300_000)
        assert result.events == [SessionEvent.MICROBREAK_STARTED]
        assert engine.microbreak_active
        assert not engine.microbreak_due

        advance(engine, 300_000, 20)
        assert engine.stats.total_microbreak_ms == 20_000
        assert engine.stats.active_ms == 300_000

        result = engine.microbreak_end(320_000)
        assert result.events == [SessionEvent.MICROBREAK_ENDED]
        assert not engine.microbreak_active

        engine.tick(321_000)
        assert engine.stats.active_ms == 301_000
        assert accounted(engine, 321_000) == 321_000

    def test_no_afk_during_microbreak(self):
        engine = make_engine(afk_timeout_minutes=1, microbreak_interval_minutes=20)
        engine.microbreak_take(0)
        events = collect_events(engine, 0, 600)
        assert SessionEvent.AFK_STARTED not in events
        assert engine.stats.total_microbreak_ms == 600_000

    @pytest.mark.parametrize("interval_minutes", [3, 5, 10])
    def test_postpone_reminds_five_minutes_later(self, interval_minutes):
        # Same five minutes whether the interval is shorter or longer than that
        engine = make_engine(afk_timeout_minutes=20, microbreak_interval_minutes=interval_minutes)
        due_at = interval_minutes * MIN
        advance(engine, 0, due_at // 1000)
        assert engine.microbreak_due

        engine.microbreak_postpone(due_at)
        assert not engine.microbreak_due
        events = collect_events(engine, due_at, 299)
        assert SessionEvent.MICROBREAK_DUE not in events
        assert not engine.microbreak_due
        result = advance(engine, due_at + 299_000, 1)
        assert result.events == [SessionEvent.MICROBREAK_DUE]
        assert engine.microbreak_due

    def test_disable_today(self):
        engine = make_engine(afk_timeout_minutes=5, microbreak_interval_minutes=1)
        advance(engine, 0, 60, active=True)
        assert engine.microbreak_due
        engine.microbreak_disable_today(60_000)
        assert engine.microbreak_suppressed
        assert not engine.microbreak_due
        events = collect_events(engine, 60_000, 600, active=True)
        assert SessionEvent.MICROBREAK_DUE not in events

    def test_disable_during_microbreak_ends_it(self):
        engine = make_engine(microbreak_interval_minutes=1)
        engine.microbreak_take(0)
        advance(engine, 0, 10)
        result = engine.microbreak_disable_today(10_000)
        assert SessionEvent.MICROBREAK_ENDED in result.events
        assert not engine.microbreak_active
        assert engine.stats.total_microbreak_ms == 10_000

    def test_unsuppress_restores_reminders(self):
        engine = make_engine(afk_timeout_minutes=5, microbreak_interval_minutes=1)
        engine.set_microbreak_suppressed(True, 0)
        advance(engine, 0, 120, active=True)
        assert not engine.microbreak_due
        engine.set_microbreak_suppressed(False, 120_000)
        advance(engine, 120_000, 1, active=True)
        assert engine.microbreak_due

    def test_zero_interval_disables(self):
        engine = make_engine(afk_timeout_minutes=5, microbreak_interval_minutes=0)
        events = collect_events(engine, 0, 1800, active=True)
        assert SessionEvent.MICROBREAK_DUE not in events

    def test_not_due_during_pomodoro_break(self):
        engine = make_engine(
            SessionMode.POMODORO, work_minutes=1, break_minutes=5, microbreak_interval_minutes=2
        )
        advance(engine, 0, 60)
        events = collect_events(engine, 60_000, 240)
        assert SessionEvent.MICROBREAK_DUE not in events

    def test_take_during_break_is_ignored(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=1, break_minutes=5)
        advance(engine, 0, 60)
        result = engine.microbreak_take(60_000)
        assert result.events == []
        assert not engine.microbreak_active


# ---- End / abandon ----

class TestTerminal:
    def test_end_finalizes(self):
        engine = make_engine()
        advance(engine, 0, 30)
        result = engine.end(45_000)
        assert result.events[-1] == SessionEvent.COMPLETED
        assert engine.state == SessionState.COMPLETED
        assert engine.phase == SessionPhase.IDLE
        assert not engine.is_live
        assert engine.stats.active_ms == 45_000

    def test_end_commits_pending_afk(self):
        engine = make_engine(afk_timeout_minutes=1)
        advance(engine, 0, 90)
        engine.end(100_000)
        stats = engine.stats
        assert stats.total_afk_ms == 100_000
        assert stats.accounted_ms == 100_000
        assert engine.afk_started_ms is None

    def test_end_during_microbreak(self):
        engine = make_engine()
        engine.microbreak_take(0)
        engine.end(30_000)
        assert engine.stats.total_microbreak_ms == 30_000
        assert not engine.microbreak_active

    def test_abandon(self):
        engine = make_engine()
        advance(engine, 0, 10)
        result = engine.abandon(10_000)
        assert result.events == [SessionEvent.ABANDONED]
        assert engine.state == SessionState.ABANDONED

    def test_tick_after_end_is_noop(self):
        engine = make_engine()
        engine.end(1_000)
        result = engine.tick(5_000)
        assert result.events == []
        assert engine.stats.active_ms == 1_000

    @pytest.mark.parametrize(
        "command",
        [
            lambda e: e.report_activity(2_000),
            lambda e: e.confirm_presence(2_000),
            lambda e: e.skip_break(2_000),
            lambda e: e.microbreak_take(2_000),
            lambda e: e.microbreak_postpone(2_000),
            lambda e: e.record_highlight(),
            lambda e: e.end(2_000),
            lambda e: e.abandon(2_000),
        ],
    )
    def test_commands_after_end_raise(self, command):
        engine = make_engine()
        engine.end(1_000)
        with pytest.raises(NoActiveSession):
            command(engine)


# ---- Export ----

class TestSnapshotExport:
    def test_remaining_rounds_up_to_whole_seconds(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=25)
        engine.tick(1_500)
        exported = engine.snapshot().to_export_dict()
        assert exported["pomodoroEnabled"] is True
        assert exported["timerSeconds"] == 1
        assert exported["pomodoroRemainingSeconds"] == 1499
        assert exported["sessionId"] == "s-1"
        assert exported["startTime"] == STARTED_AT.isoformat()

    def test_break_seconds_rounded(self):
        engine = make_engine(SessionMode.POMODORO, work_minutes=1, break_minutes=1)
        advance(engine, 0, 60, active=True)
        advance(engine, 60_000, 30)
        engine.tick(90_400)
        exported = engine.snapshot().to_export_dict()
        assert exported["phase"] == SessionPhase.BREAK.value
        assert exported["breakSeconds"] == 30
        assert exported["pomodoroRemainingSeconds"] == 30
        assert exported["completedPomodoros"] == 1

    def test_free_mode_includes_running_afk(self):
        engine = make_engine(afk_timeout_minutes=1)
        advance(engine, 0, 60)
        assert engine.state == SessionState.PAUSED_AFK
        exported = engine.snapshot(90_600).to_export_dict()
        assert exported["pomodoroEnabled"] is False
        assert exported["pomodoroRemainingSeconds"] == 0
        assert exported["afkSeconds"] == 91
        assert exported["state"] == SessionState.PAUSED_AFK.value


# ---- End-to-end ----

class TestFullSession:
    def test_default_pomodoro_cycle(self):
        """25/5 Pomodoro, reader active throughout work, then a full break."""
        engine = make_engine(SessionMode.POMODORO)
        events = collect_events(engine, 0, 1500, active=True)
        assert events.count(SessionEvent.MICROBREAK_DUE) == 1
        assert events.count(SessionEvent.POMODORO_COMPLETED) == 1
        assert engine.phase == SessionPhase.BREAK
        assert not engine.microbreak_due

        advance(engine, 1_500_000, 300)
        assert engine.phase == SessionPhase.WORK

        engine.end(1_800_000)
        stats = engine.stats
        assert stats.active_ms == 25 * MIN
        assert stats.total_break_ms == 5 * MIN
        assert stats.completed_pomodoros == 1
        assert stats.total_afk_ms == 0
        assert stats.accounted_ms == 30 * MIN

    def test_time_buckets_sum_to_elapsed(self):
        engine = make_engine(
            SessionMode.POMODORO,
            work_minutes=2,
            break_minutes=1,
            afk_timeout_minutes=1,
            microbreak_interval_minutes=1,
        )
        now = 0
        advance(engine, now, 70, active=True)
        now = 70_000
        engine.microbreak_take(now)
        advance(engine, now, 20)
        now += 20_000
        engine.microbreak_end(now)
        advance(engine, now, 90)
        now += 90_000
        engine.report_activity(now)
        advance(engine, now, 200, active=True)
        now += 200_000
        assert accounted(engine, now) == now
        engine.end(now)
        assert engine.stats.accounted_ms == now

    def test_pomodoro_to_break_then_end(self):
        engine = make_engine(
            SessionMode.POMODORO,
            work_minutes=25,
            break_minutes=5,
            afk_timeout_minutes=5,
            microbreak_interval_minutes=0,
        )
        advance(engine, 0, 1500, active=True)
        assert engine.phase == SessionPhase.BREAK
        assert engine.stats.completed_pomodoros == 1

        engine.end(1_500_000)
        stats = engine.stats
        assert stats.active_ms == 1_500_000
        assert stats.completed_pomodoros == 1
        assert stats.total_break_ms == 0

    def test_afk_round_trip_in_work_phase(self):
        engine = make_engine(SessionMode.POMODORO, afk_timeout_minutes=5)
        advance(engine, 0, 60, active=True)
        advance(engine, 60_000, 6 * 60)
        assert engine.state == SessionState.PAUSED_AFK

        engine.confirm_presence(420_000)
        assert engine.stats.active_ms == 60_000
        assert engine.stats.total_afk_ms == 360_000
        assert engine.phase_elapsed_ms == 60_000
