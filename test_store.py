"""ContestStore状態遷移テスト"""

import asyncio

import orjson
import pytest

from contestbot.state import AdvanceKind
from contestbot.store import CancelToken, ContestStore, ScheduleLoadError


def _schedule(*days: int) -> bytes:
    return orjson.dumps([
        {"day": d, "species": d * 10, "version": f"v{d}", "hints": [f"hint-{d}"]}
        for d in days
    ])


async def _loaded_store(*days: int):
    store = ContestStore()
    await store.start_contest()
    loaded = await store.load_schedule(_schedule(*days))
    return store, loaded


class TestStartStop:
    """start/stopの冪等性テスト"""

    @pytest.mark.asyncio
    async def test_start_creates_contest_and_awaits_data(self):
        # Given: 空のストア
        store = ContestStore()

        # When: startを実行
        created = await store.start_contest()

        # Then: コンテストが作成されデータ待ちになる
        status = await store.status()
        assert created is True
        assert status.active is True
        assert status.awaiting_data is True
        assert status.current_day is None

    @pytest.mark.asyncio
    async def test_second_start_is_noop(self):
        """2回目のstartは状態を変えないこと"""
        store = ContestStore()
        await store.start_contest()
        first = store._contest

        created = await store.start_contest()

        assert created is False
        assert store._contest is first
        assert len(store._contest.schedule) == 0
        assert await store.is_awaiting_data() is True

    @pytest.mark.asyncio
    async def test_second_start_keeps_running_contest(self):
        """進行中のコンテストはstartで置き換わらないこと"""
        store, _ = await _loaded_store(1, 2)

        created = await store.start_contest()

        status = await store.status()
        assert created is False
        assert status.current_day == 0
        assert status.last_day == 2

    @pytest.mark.asyncio
    async def test_stop_without_contest_is_noop(self):
        """未開始でstopしてもエラーにならないこと"""
        store = ContestStore()

        await store.stop_contest()
        await store.stop_contest()

        status = await store.status()
        assert status.active is False
        assert status.awaiting_data is False

    @pytest.mark.asyncio
    async def test_stop_clears_slot_and_flag(self):
        store = ContestStore()
        await store.start_contest()

        await store.stop_contest()

        status = await store.status()
        assert status.active is False
        assert status.awaiting_data is False


class TestLoadSchedule:
    """load_scheduleのゲート・失敗時挙動テスト"""

    @pytest.mark.asyncio
    async def test_load_sets_day_zero_and_issues_token(self):
        store, loaded = await _loaded_store(1, 3, 5)

        status = await store.status()
        assert status.current_day == 0
        assert status.last_day == 5
        assert status.awaiting_data is False
        assert loaded.day_count == 3
        assert loaded.last_day == 5
        assert isinstance(loaded.token, CancelToken)
        assert loaded.token.cancelled is False

    @pytest.mark.asyncio
    async def test_load_without_contest_has_no_effect(self):
        """コンテスト不在では何も作られないこと"""
        store = ContestStore()

        result = await store.load_schedule(_schedule(1))

        assert result is None
        assert (await store.status()).active is False

    @pytest.mark.asyncio
    async def test_malformed_load_without_gate_does_not_raise(self):
        """ゲートが閉じていれば不正データでもエラーにならないこと"""
        store, _ = await _loaded_store(1)

        result = await store.load_schedule(b"garbage")

        assert result is None
        status = await store.status()
        assert status.active is True
        assert status.current_day == 0

    @pytest.mark.asyncio
    async def test_second_load_is_gated_after_success(self):
        """読込成功後はstartし直すまで再読込できないこと"""
        store, loaded = await _loaded_store(1, 2)
        await store.advance_day(loaded.token)

        result = await store.load_schedule(_schedule(7))

        assert result is None
        status = await store.status()
        assert status.current_day == 1
        assert status.last_day == 2
        assert loaded.token.cancelled is False

    @pytest.mark.asyncio
    async def test_malformed_upload_destroys_session(self):
        """不正データでLoadErrorになりセッションが破棄されること"""
        store = ContestStore()
        await store.start_contest()

        with pytest.raises(ScheduleLoadError):
            await store.load_schedule(b'[{"day": 1}]')

        status = await store.status()
        assert status.active is False
        assert status.awaiting_data is False

    @pytest.mark.asyncio
    async def test_restart_after_stop_cancels_previous_token(self):
        """stop→start→loadで旧トークンは取り消され新トークンが発行されること"""
        store, first = await _loaded_store(1, 2)
        await store.stop_contest()
        await store.start_contest()

        second = await store.load_schedule(_schedule(1))

        assert first.token.cancelled is True
        assert second.token is not first.token
        assert second.token.cancelled is False


class TestAdvanceDay:
    """advance_dayの決定性テスト"""

    @pytest.mark.asyncio
    async def test_advancement_with_gaps(self):
        """days {1,3,5} で Broadcast/Skip/…/Ended の順になること"""
        store, loaded = await _loaded_store(1, 3, 5)

        outcomes = [await store.advance_day(loaded.token) for _ in range(6)]

        assert [o.kind for o in outcomes] == [
            AdvanceKind.BROADCAST,
            AdvanceKind.SKIP,
            AdvanceKind.BROADCAST,
            AdvanceKind.SKIP,
            AdvanceKind.BROADCAST,
            AdvanceKind.ENDED,
        ]
        assert [o.day for o in outcomes] == [1, 2, 3, 4, 5, 6]
        assert outcomes[0].content.version == "v1"
        assert outcomes[2].content.hints == ("hint-3",)
        assert (await store.status()).active is False
        assert loaded.token.cancelled is True

    @pytest.mark.asyncio
    async def test_after_end_returns_stopped(self):
        store, loaded = await _loaded_store(1)
        await store.advance_day(loaded.token)
        ended = await store.advance_day(loaded.token)

        after = await store.advance_day(loaded.token)
        untokened = await store.advance_day()

        assert ended.kind == AdvanceKind.ENDED
        assert after.kind == AdvanceKind.STOPPED
        assert untokened.kind == AdvanceKind.STOPPED

    @pytest.mark.asyncio
    async def test_stop_between_ticks_yields_stopped(self):
        """tickの間にstopされると次のtickはStoppedになること"""
        store, loaded = await _loaded_store(1, 2, 3)
        await store.advance_day(loaded.token)

        await store.stop_contest()
        outcome = await store.advance_day(loaded.token)

        assert outcome.kind == AdvanceKind.STOPPED
        assert loaded.token.cancelled is True

    @pytest.mark.asyncio
    async def test_stale_token_cannot_advance(self):
        """旧スケジューラのトークンでは新しいコンテストを進められないこと"""
        store, first = await _loaded_store(1, 2)
        await store.stop_contest()
        await store.start_contest()
        second = await store.load_schedule(_schedule(1, 2))

        stale = await store.advance_day(first.token)
        current = await store.advance_day(second.token)

        assert stale.kind == AdvanceKind.STOPPED
        assert current.kind == AdvanceKind.BROADCAST
        assert current.day == 1

    @pytest.mark.asyncio
    async def test_advance_before_load_returns_stopped(self):
        store = ContestStore()
        await store.start_contest()

        outcome = await store.advance_day()

        assert outcome.kind == AdvanceKind.STOPPED
        assert (await store.status()).current_day is None

    @pytest.mark.asyncio
    async def test_empty_schedule_ends_on_first_tick(self):
        store, loaded = await _loaded_store()

        outcome = await store.advance_day(loaded.token)

        assert outcome.kind == AdvanceKind.ENDED
        assert (await store.status()).active is False

    @pytest.mark.asyncio
    async def test_concurrent_ticks_never_repeat_a_day(self):
        """同時tickでも日付が重複・欠落しないこと"""
        store, loaded = await _loaded_store(*range(1, 21))

        outcomes = await asyncio.gather(*(store.advance_day(loaded.token) for _ in range(20)))

        assert sorted(o.day for o in outcomes) == list(range(1, 21))


class TestCancelToken:
    """CancelTokenの待機テスト"""

    @pytest.mark.asyncio
    async def test_wait_times_out_when_not_cancelled(self):
        token = CancelToken()

        assert await token.wait(0.01) is False

    @pytest.mark.asyncio
    async def test_wait_returns_immediately_on_cancel(self):
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        assert await token.wait(5) is True
        assert token.cancelled is True


class TestUploadSession:
    """stop→start後の旧アップロード判別テスト"""

    @pytest.mark.asyncio
    async def test_awaiting_session_numbers_each_start(self):
        # Given: 未開始
        store = ContestStore()
        assert await store.awaiting_session() is None

        # When: start → stop → start
        await store.start_contest()
        first = await store.awaiting_session()
        await store.stop_contest()
        await store.start_contest()
        second = await store.awaiting_session()

        # Then: startごとに別の番号
        assert first is not None
        assert second is not None
        assert second != first

    @pytest.mark.asyncio
    async def test_awaiting_session_is_none_after_load(self):
        store, _ = await _loaded_store(1)

        assert await store.awaiting_session() is None

    @pytest.mark.asyncio
    async def test_abandon_current_session(self):
        """データ待ちの現行sessionは破棄できること"""
        store = ContestStore()
        await store.start_contest()
        session = await store.awaiting_session()

        assert await store.abandon_session(session) is True

        status = await store.status()
        assert status.active is False
        assert status.awaiting_data is False

    @pytest.mark.asyncio
    async def test_abandon_stale_session_keeps_new_contest(self):
        """旧sessionの破棄要求は新しいコンテストに影響しないこと"""
        # Given: 旧sessionを保持したままstop→start
        store = ContestStore()
        await store.start_contest()
        stale = await store.awaiting_session()
        await store.stop_contest()
        await store.start_contest()

        # When: 旧sessionで破棄
        abandoned = await store.abandon_session(stale)

        # Then: 新コンテストはデータ待ちのまま
        assert abandoned is False
        status = await store.status()
        assert status.active is True
        assert status.awaiting_data is True

    @pytest.mark.asyncio
    async def test_abandon_after_load_is_refused(self):
        store = ContestStore()
        await store.start_contest()
        session = await store.awaiting_session()
        loaded = await store.load_schedule(_schedule(1), session=session)

        assert await store.abandon_session(session) is False
        assert loaded.token.cancelled is False
        assert (await store.status()).active is True

    @pytest.mark.asyncio
    async def test_load_with_stale_session_is_ignored(self):
        """旧sessionのデータは新コンテストに読み込まれないこと"""
        store = ContestStore()
        await store.start_contest()
        stale = await store.awaiting_session()
        await store.stop_contest()
        await store.start_contest()

        assert await store.load_schedule(_schedule(1, 2), session=stale) is None
        assert await store.load_schedule(b"not json", session=stale) is None

        status = await store.status()
        assert status.awaiting_data is True
        assert status.current_day is None


class TestStatusSummary:
    """ログ用スナップショットの要約テスト"""

    @pytest.mark.asyncio
    async def test_summary_while_awaiting_data(self):
        store = ContestStore()
        await store.start_contest()

        assert (await store.status()).summary() == "active=True awaiting_data=True day=None/None"

    @pytest.mark.asyncio
    async def test_summary_after_load(self):
        store, _ = await _loaded_store(1, 4)

        assert (await store.status()).summary() == "active=True awaiting_data=False day=0/4"
