# Contest Store - コンテストセッションの排他管理
# セッションスロット・データ待ちフラグ・スケジューラ停止トークンを一元保持

import asyncio
from dataclasses import dataclass
from typing import Optional

from contestbot.state import (
    AdvanceOutcome,
    Contest,
    ContestSchedule,
    ScheduleFormatError,
    parse_schedule,
)


class ContestError(Exception):
    """コンテスト操作の基底例外"""


class ScheduleLoadError(ContestError):
    """スケジュール読込失敗（セッションは破棄済み）"""


class CancelToken:
    """DayScheduler停止シグナル

    load_scheduleの成功ごとに1つ発行され、stop・終了・再読込で取り消される。
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """取り消しまたはタイムアウトまで待機（取り消し時True）"""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False


@dataclass(frozen=True)
class ScheduleLoaded:
    """読込成功通知（DayScheduler起動用トークン付き）"""
    token: CancelToken
    day_count: int
    last_day: Optional[int]


@dataclass(frozen=True)
class ContestStatus:
    """ログ用のスナップショット"""
    active: bool
    awaiting_data: bool
    current_day: Optional[int]
    last_day: Optional[int]

    def summary(self) -> str:
        return (
            f"active={self.active} awaiting_data={self.awaiting_data} "
            f"day={self.current_day}/{self.last_day}"
        )


class ContestStore:
    """唯一のContestスロットの所有者

    各操作はロックを保持したまま完結するが、操作同士は合成されない。
    ロック取得順は常に contest → awaiting_data。
    """

    def __init__(self) -> None:
        self._contest: Optional[Contest] = None
        self._contest_lock = asyncio.Lock()
        self._awaiting_data = False
        self._awaiting_lock = asyncio.Lock()
        # contest_lockで保護
        self._token: Optional[CancelToken] = None
        self._sessions = 0

    def _cancel_scheduler(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    async def _set_awaiting(self, value: bool) -> None:
        async with self._awaiting_lock:
            self._awaiting_data = value

    async def start_contest(self) -> bool:
        """空のコンテストを作成しデータ待ちにする

        Returns:
            bool: 新規作成した場合True（既に進行中なら何もせずFalse）
        """
        async with self._contest_lock:
            if self._contest is not None:
                return False
            self._sessions += 1
            self._contest = Contest(session=self._sessions)
            await self._set_awaiting(True)
            return True

    async def stop_contest(self) -> None:
        """セッションを無条件に破棄（未開始でも可）"""
        async with self._contest_lock:
            self._contest = None
            self._cancel_scheduler()
            await self._set_awaiting(False)

    async def is_awaiting_data(self) -> bool:
        async with self._awaiting_lock:
            return self._awaiting_data

    def _is_pending(self, session: Optional[int]) -> bool:
        # contest_lock保持中に呼ぶこと
        if self._contest is None:
            return False
        return session is None or self._contest.session == session

    async def awaiting_session(self) -> Optional[int]:
        """データ待ちのコンテストのsession番号（待っていなければNone）"""
        async with self._contest_lock:
            if self._contest is None or not await self.is_awaiting_data():
                return None
            return self._contest.session

    async def abandon_session(self, session: int) -> bool:
        """指定sessionがまだデータ待ちの場合のみ破棄する

        Returns:
            bool: 破棄した場合True（stop→startで別sessionになっていればFalse）
        """
        async with self._contest_lock:
            if not self._is_pending(session) or not await self.is_awaiting_data():
                return False
            self._contest = None
            self._cancel_scheduler()
            await self._set_awaiting(False)
            return True

    async def load_schedule(self, raw: bytes, session: Optional[int] = None) -> Optional[ScheduleLoaded]:
        """アップロードデータを読み込みコンテストを開始可能にする

        データ待ちでない、コンテスト不在、またはsessionが現行と異なる場合は
        状態に触れずNoneを返す。
        解析失敗時はセッションを破棄してScheduleLoadErrorを送出する。

        Args:
            raw: 添付ファイルのバイト列
            session: awaiting_sessionで得た番号（省略時は現行sessionに読込）

        Returns:
            Optional[ScheduleLoaded]: 成功時のDayScheduler起動シグナル

        Raises:
            ScheduleLoadError: スケジュール構造不正
        """
        # 解析はロック外（CPUのみ・状態非依存）
        parse_error: Optional[ScheduleFormatError] = None
        schedule: Optional[ContestSchedule] = None
        try:
            schedule = parse_schedule(raw)
        except ScheduleFormatError as e:
            parse_error = e

        async with self._contest_lock:
            if not self._is_pending(session) or not await self.is_awaiting_data():
                return None

            if parse_error is not None:
                self._contest = None
                self._cancel_scheduler()
                await self._set_awaiting(False)
                raise ScheduleLoadError(str(parse_error)) from parse_error

            self._contest.schedule = schedule
            self._contest.current_day = 0

            # 既存スケジューラを必ず停止してから新トークンを発行
            self._cancel_scheduler()
            self._token = CancelToken()
            await self._set_awaiting(False)

            return ScheduleLoaded(
                token=self._token,
                day_count=len(schedule),
                last_day=schedule.last_day()
            )

    async def advance_day(self, token: Optional[CancelToken] = None) -> AdvanceOutcome:
        """1日進めて結果を返す（スケジューラのtickから呼び出し）

        Args:
            token: 呼び出し元スケジューラのトークン（現行でなければSTOPPED）

        Returns:
            AdvanceOutcome: BROADCAST / SKIP / ENDED / STOPPED
        """
        async with self._contest_lock:
            contest = self._contest
            if contest is None or contest.current_day is None:
                return AdvanceOutcome.stopped()
            if token is not None and token is not self._token:
                return AdvanceOutcome.stopped()

            contest.current_day += 1
            day = contest.current_day

            content = contest.schedule.get_day(day)
            if content is not None:
                return AdvanceOutcome.broadcast(content)

            last_day = contest.schedule.last_day()
            if last_day is None or day > last_day:
                self._contest = None
                self._cancel_scheduler()
                return AdvanceOutcome.ended(day)

            return AdvanceOutcome.skip(day)

    async def status(self) -> ContestStatus:
        async with self._contest_lock:
            contest = self._contest
            return ContestStatus(
                active=contest is not None,
                awaiting_data=await self.is_awaiting_data(),
                current_day=contest.current_day if contest else None,
                last_day=contest.schedule.last_day() if contest else None
            )
