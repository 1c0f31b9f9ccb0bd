"""Tests for the session lifecycle against simulated browsers."""

import asyncio
import struct
from unittest.mock import AsyncMock

import pytest
from gmeet_fakes import FakeLauncher, FakeSender, FakeSynthesizer, FakeTrack, PageClosedError

from tool_modules.aa_gmeet.src.errors import (
    BrowserError,
    PlaybackError,
    SessionError,
    SynthesisError,
)
from tool_modules.aa_gmeet.src.injection_queue import QueueState
from tool_modules.aa_gmeet.src.session import (
    SessionManager,
    SessionState,
    get_session_manager,
    validate_target_url,
)
from tool_modules.aa_gmeet.src.wav_codec import wrap

MEET_URL = "https://meet.google.com/abc-defg-hij"


@pytest.fixture
def manager(fake_launcher, gmeet_config_fast, fake_synthesizer):
    return SessionManager(
        launcher=fake_launcher, config=gmeet_config_fast, synthesizer=fake_synthesizer
    )


class TestValidateTargetUrl:
    """Tests for target URL validation."""

    def test_accepts_https(self):
        assert validate_target_url(f"  {MEET_URL} ") == MEET_URL

    @pytest.mark.parametrize("url", ["", "meet.google.com/abc", "ftp://x/y", "https://"])
    def test_rejects(self, url):
        with pytest.raises(SessionError) as exc_info:
            validate_target_url(url)
        assert exc_info.value.code == SessionError.INVALID_URL


class TestCreate:
    """Tests for SessionManager.create()."""

    @pytest.mark.asyncio
    async def test_registers_joining_session(self, manager, fake_launcher):
        session = await manager.create(MEET_URL)

        assert session.state is SessionState.JOINING
        assert session.target_url == MEET_URL
        assert session.id in manager.registry
        assert manager.get(session.id) is session
        # Tracker installed before anything navigates
        assert len(fake_launcher.browsers[0].page.init_scripts) == 1
        fake_launcher.browsers[0].meet_page.join.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, manager):
        a = await manager.create(MEET_URL)
        b = await manager.create(MEET_URL)
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_invalid_url_launches_nothing(self, manager, fake_launcher):
        with pytest.raises(SessionError):
            await manager.create("not a url")
        assert fake_launcher.browsers == []

    @pytest.mark.asyncio
    async def test_launch_failure_propagates(self, gmeet_config_fast):
        launcher = AsyncMock(side_effect=BrowserError("chromium missing"))
        manager = SessionManager(launcher=launcher, config=gmeet_config_fast)

        with pytest.raises(BrowserError):
            await manager.create(MEET_URL)
        assert len(manager.registry) == 0

    @pytest.mark.asyncio
    async def test_tracker_install_failure_closes_browser(self, manager, fake_launcher):
        original = FakeLauncher.__call__

        async def failing_launch(self, session_id, config):
            browser = await original(self, session_id, config)
            browser.control.add_init_script = AsyncMock(side_effect=RuntimeError("boom"))
            return browser

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr(FakeLauncher, "__call__", failing_launch)
            with pytest.raises(RuntimeError, match="boom"):
                await manager.create(MEET_URL)

        fake_launcher.browsers[0].close.assert_awaited_once()
        assert len(manager.registry) == 0


class TestActivate:
    """Tests for takeover-on-activate with bounded retries."""

    @pytest.mark.asyncio
    async def test_success_binds_queue(self, manager, fake_launcher):
        session = await manager.create(MEET_URL)
        fake_launcher.browsers[0].page.create_connection(FakeSender(track=FakeTrack()))

        await manager.activate(session)

        assert session.state is SessionState.ACTIVE
        assert session.handle is not None
        assert session.queue.is_bound
        assert session.speech_available
        assert fake_launcher.browsers[0].page.waits == []

    @pytest.mark.asyncio
    async def test_retries_with_fixed_delay(self, manager, fake_launcher):
        session = await manager.create(MEET_URL)
        page = fake_launcher.browsers[0].page

        real_wait = page.wait_for

        async def connect_during_wait(ms):
            await real_wait(ms)
            if len(page.waits) == 2:
                page.create_connection(FakeSender(track=FakeTrack()))

        page.wait_for = connect_during_wait

        await manager.activate(session)

        assert page.waits == [10, 10]
        assert page.calls.count("discover") == 3
        assert session.speech_available

    @pytest.mark.asyncio
    async def test_exhausted_attempts_still_active(self, manager, fake_launcher):
        session = await manager.create(MEET_URL)
        page = fake_launcher.browsers[0].page

        await manager.activate(session)

        assert session.state is SessionState.ACTIVE
        assert session.handle is None
        assert not session.speech_available
        # Delay between attempts only, not after the last
        assert page.waits == [10, 10]
        assert page.graphs_created == 0

    @pytest.mark.asyncio
    async def test_close_during_retry_wait(self, manager, fake_launcher):
        session = await manager.create(MEET_URL)
        page = fake_launcher.browsers[0].page

        async def close_during_wait(ms):
            page.waits.append(ms)
            await manager.close(session.id)
            page.closed = True
            raise PageClosedError("Target page, context or browser has been closed")

        page.wait_for = close_during_wait

        result = await manager.activate(session)

        assert result is session
        assert session.state is SessionState.ENDED
        assert session.id not in manager.registry
        # No further attempts once the session left JOINING
        assert page.waits == [10]
        assert page.calls.count("discover") == 1
        assert page.graphs_created == 0

    @pytest.mark.asyncio
    async def test_close_between_attempts_stops_retrying(self, manager, fake_launcher):
        session = await manager.create(MEET_URL)
        page = fake_launcher.browsers[0].page
        real_wait = page.wait_for

        async def close_after_wait(ms):
            await real_wait(ms)
            await manager.close(session.id)

        page.wait_for = close_after_wait

        await manager.activate(session)

        assert session.state is SessionState.ENDED
        assert page.calls.count("discover") == 1

    @pytest.mark.asyncio
    async def test_only_from_joining(self, manager):
        session = await manager.create(MEET_URL)
        await manager.activate(session)

        with pytest.raises(SessionError) as exc_info:
            await manager.activate(session)
        assert exc_info.value.code == SessionError.INVALID_STATE


class TestJoin:
    """Tests for the create -> join -> activate convenience."""

    @pytest.mark.asyncio
    async def test_join(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)

        fake_launcher.browsers[0].meet_page.join.assert_awaited_once_with(MEET_URL)
        assert session.state is SessionState.ACTIVE
        assert session.speech_available
        assert session.state_history == [SessionState.JOINING, SessionState.ACTIVE]

    @pytest.mark.asyncio
    async def test_join_failure_closes_session(self, manager, fake_launcher):
        fake_launcher.connect_on_join = False
        original = FakeLauncher.__call__

        async def launch(self, session_id, config):
            browser = await original(self, session_id, config)
            browser.meet_page.join.side_effect = RuntimeError("no join button")
            return browser

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr(FakeLauncher, "__call__", launch)
            with pytest.raises(RuntimeError, match="no join button"):
                await manager.join(MEET_URL)

        browser = fake_launcher.browsers[0]
        browser.close.assert_awaited_once()
        assert len(manager.registry) == 0


class TestClose:
    """Tests for best-effort teardown."""

    @pytest.mark.asyncio
    async def test_close_releases_everything(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)
        browser = fake_launcher.browsers[0]
        queue = session.queue

        await manager.close(session.id)

        assert session.state is SessionState.ENDED
        assert session.ended_at is not None
        assert session.handle is None
        assert session.queue is None
        assert not queue.is_bound
        assert session.id not in manager.registry
        browser.meet_page.leave.assert_awaited_once()
        browser.close.assert_awaited_once()
        browser.force_kill.assert_not_awaited()
        assert "release" in browser.page.calls
        assert session.state_history[-2:] == [SessionState.LEAVING, SessionState.ENDED]

    @pytest.mark.asyncio
    async def test_close_reaches_ended_when_leave_and_teardown_fail(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)
        browser = fake_launcher.browsers[0]
        browser.meet_page.leave.side_effect = RuntimeError("leave button gone")
        browser.close.side_effect = asyncio.TimeoutError()
        browser.force_kill.side_effect = RuntimeError("no such process")
        browser.page.closed = True  # release fails too

        await manager.close(session.id)

        assert session.state is SessionState.ENDED
        assert session.id not in manager.registry
        browser.force_kill.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_falls_back_to_force_kill(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)
        browser = fake_launcher.browsers[0]
        browser.close.side_effect = RuntimeError("Browser has been closed")

        await manager.close(session.id)

        browser.force_kill.assert_awaited_once()
        assert session.state is SessionState.ENDED

    @pytest.mark.asyncio
    async def test_close_rejects_pending_speech(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)
        manager._synthesizer = FakeSynthesizer(seconds=1.0)

        first = asyncio.create_task(manager.speak(session.id, "one"))
        second = asyncio.create_task(manager.speak(session.id, "two"))
        await asyncio.sleep(0.001)
        assert session.queue.state is QueueState.PLAYING

        await manager.close(session.id)

        await asyncio.gather(first, return_exceptions=True)
        with pytest.raises(PlaybackError) as exc_info:
            await second
        assert exc_info.value.code == PlaybackError.NOT_BOUND

    @pytest.mark.asyncio
    async def test_close_unknown(self, manager):
        with pytest.raises(SessionError) as exc_info:
            await manager.close("nope")
        assert exc_info.value.code == SessionError.NOT_FOUND

    @pytest.mark.asyncio
    async def test_close_joining_session(self, manager, fake_launcher):
        session = await manager.create(MEET_URL)
        await manager.close(session.id)
        assert session.state_history == [
            SessionState.JOINING,
            SessionState.LEAVING,
            SessionState.ENDED,
        ]

    @pytest.mark.asyncio
    async def test_close_all_is_independent(self, manager, fake_launcher):
        a = await manager.join(MEET_URL)
        b = await manager.join(MEET_URL)
        c = await manager.join(MEET_URL)
        fake_launcher.browsers[1].meet_page.leave.side_effect = RuntimeError("boom")
        fake_launcher.browsers[1].close.side_effect = RuntimeError("boom")

        closed = await manager.close_all()

        assert closed == 3
        assert len(manager.registry) == 0
        for session in (a, b, c):
            assert session.state is SessionState.ENDED
        for browser in fake_launcher.browsers:
            browser.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_all_empty(self, manager):
        assert await manager.close_all() == 0


class TestSpeak:
    """Tests for SessionManager.speak()."""

    @pytest.mark.asyncio
    async def test_speak(self, manager, fake_synthesizer, fake_launcher):
        session = await manager.join(MEET_URL)

        duration = await manager.speak(session.id, "hello", "nova")

        assert duration == pytest.approx(0.5)
        assert fake_synthesizer.calls == [("hello", "nova")]
        fake_launcher.browsers[0].meet_page.ensure_microphone_on.assert_awaited()

    @pytest.mark.asyncio
    async def test_speak_without_takeover(self, manager, fake_synthesizer, fake_launcher):
        fake_launcher.connect_on_join = False
        session = await manager.join(MEET_URL)

        with pytest.raises(PlaybackError) as exc_info:
            await manager.speak(session.id, "hello")
        assert exc_info.value.code == PlaybackError.NOT_BOUND
        assert fake_synthesizer.calls == []

    @pytest.mark.asyncio
    async def test_speak_unknown_session(self, manager):
        with pytest.raises(SessionError) as exc_info:
            await manager.speak("missing", "hello")
        assert exc_info.value.code == SessionError.NOT_FOUND

    @pytest.mark.asyncio
    async def test_speak_on_joining_session(self, manager):
        session = await manager.create(MEET_URL)
        with pytest.raises(SessionError) as exc_info:
            await manager.speak(session.id, "hello")
        assert exc_info.value.code == SessionError.INVALID_STATE

    @pytest.mark.asyncio
    async def test_synthesis_failure_propagates(self, manager):
        session = await manager.join(MEET_URL)
        manager._synthesizer = AsyncMock()
        manager._synthesizer.synthesize.side_effect = SynthesisError("HTTP 401")

        with pytest.raises(SynthesisError):
            await manager.speak(session.id, "hello")
        assert session.queue.state is QueueState.IDLE

    @pytest.mark.asyncio
    async def test_non_wav_tts_output(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)
        manager._synthesizer = AsyncMock()
        manager._synthesizer.synthesize.return_value = b"ID3\x04" + bytes(100)

        with pytest.raises(SynthesisError, match="PCM WAV") as exc_info:
            await manager.speak(session.id, "hello")

        assert exc_info.value.details["size"] == 104
        assert "play" not in fake_launcher.browsers[0].page.calls

    @pytest.mark.asyncio
    async def test_stereo_tts_output_is_downmixed(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)
        wav = bytearray(wrap(bytes(24000 * 2), 24000))
        struct.pack_into("<H", wav, 22, 2)  # channels
        manager._synthesizer = AsyncMock()
        manager._synthesizer.synthesize.return_value = bytes(wav)

        assert await manager.speak(session.id, "hello") == pytest.approx(0.5)
        assert fake_launcher.browsers[0].page.play_log[-1] == ("end", 0.5)

    @pytest.mark.asyncio
    async def test_unsupported_sample_width(self, manager):
        session = await manager.join(MEET_URL)
        wav = bytearray(wrap(bytes(4800), 24000))
        struct.pack_into("<H", wav, 34, 8)  # bits per sample
        manager._synthesizer = AsyncMock()
        manager._synthesizer.synthesize.return_value = bytes(wav)

        with pytest.raises(SynthesisError, match="8 bits"):
            await manager.speak(session.id, "hello")

    @pytest.mark.asyncio
    async def test_microphone_check_failure_is_ignored(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)
        fake_launcher.browsers[0].meet_page.ensure_microphone_on.side_effect = RuntimeError("x")
        assert await manager.speak(session.id, "hello") == pytest.approx(0.5)


class TestEndToEnd:
    """Join, take over, survive a revert, speak in order, close."""

    @pytest.mark.asyncio
    async def test_full_scenario(self, manager, fake_launcher):
        session = await manager.join(MEET_URL)
        page = fake_launcher.browsers[0].page
        handle = session.handle

        # Meet renegotiates and puts its microphone back
        sender = page.trackers[handle.audio_graph_ref].connections[0].senders[0]
        page.revert_sender(sender)

        manager._synthesizer = FakeSynthesizer(durations={"first": 1.0, "second": 0.5})
        first = asyncio.create_task(manager.speak(session.id, "first"))
        second = asyncio.create_task(manager.speak(session.id, "second"))

        assert await first == pytest.approx(1.0)
        assert await second == pytest.approx(0.5)
        assert handle.reassert_count == 1
        assert sender.track.id == handle.output_track_id
        assert page.max_active_playbacks == 1
        assert [e for e in page.play_log if e[0] == "start"] == [("start", 1.0), ("start", 0.5)]

        diag = await manager.diagnostics(session.id)
        assert diag["takeover"]["tracks_match"] is True
        assert diag["playback"]["has_context"] is True
        assert diag["queue"]["completed"] == 2
        assert diag["microphone"] == "on"

        assert [s["session_id"] for s in manager.list_sessions()] == [session.id]

        await manager.close(session.id)
        assert session.state is SessionState.ENDED
        assert manager.list_sessions() == []
        with pytest.raises(SessionError):
            manager.get(session.id)


class TestGlobalManager:
    def test_singleton(self):
        assert get_session_manager() is get_session_manager()
