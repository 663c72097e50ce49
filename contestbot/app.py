# Contest Bot - Main Application
# メインアプリケーションエントリーポイント（コマンド/アップロード受信口・日次スケジューラ）

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Set

from contestbot import logger
from contestbot.error_stages import determine_error_stage
from contestbot.settings import settings
from contestbot.state import AdvanceKind, AdvanceOutcome, ContestDay
from contestbot.store import CancelToken, ContestStore, ScheduleLoadError


# ユーザー向けメッセージ
MSG_AWAITING_DATA = "Awaiting json with contest details."
MSG_ALREADY_RUNNING = "A contest is already running."
MSG_STOPPED = "The contest has been stopped."
MSG_PERMISSION_RETRY = "Could not verify your permissions. Please try again."
MSG_DETAILS_LOADED = "Contest details loaded!"
MSG_LOAD_FAILED = "Failed to load contest details. Please restart the process with /contest start"
MSG_DOWNLOAD_FAILED = "Failed to download attachment. Please restart the process with /contest start"
MSG_CONTEST_ENDED = "The current contest has ended!"

SCHEDULE_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class UploadedFile:
    """受信メッセージの添付ファイル情報"""
    url: str
    content_type: Optional[str]
    filename: str


def select_schedule_attachment(attachments: List[UploadedFile]) -> Optional[UploadedFile]:
    """JSON添付の先頭を選択（charset等のパラメータは無視）"""
    for attachment in attachments:
        if not attachment.content_type:
            continue
        media_type = attachment.content_type.split(";", 1)[0].strip().lower()
        if media_type == SCHEDULE_CONTENT_TYPE:
            return attachment
    return None


async def _notify(event_type: str, channel_id: str, actor: str, text: str) -> None:
    """通知送信（失敗はログのみ・再送なし）"""
    from contestbot import discord

    try:
        await discord.send(channel_id, text)
    except discord.DiscordAPIError as e:
        logger.log_err(event_type, channel_id, actor, text, determine_error_stage(e, event_type), str(e))


async def on_slash(
    store: ContestStore,
    action: Optional[str],
    user_id: str,
    guild_id: str,
    channel_id: str,
) -> Optional[str]:
    """スラッシュコマンド受信ハンドラ（/contest start|stop）

    Returns:
        Optional[str]: 応答メッセージ（権限なしはNoneで無応答）

    Raises:
        ValueError: サブコマンド欠落・未知のサブコマンド（このイベントのみ中断）
    """
    from contestbot import discord

    if not action:
        raise ValueError("Expected sub command option")

    payload_summary = f"/contest {action}"

    # 権限確認（通信失敗は拒否ではなく再試行を促す）
    try:
        allowed = await discord.has_role(guild_id, user_id, settings.discord.permission_role)
    except discord.PermissionCheckError as e:
        logger.log_err("slash", channel_id, user_id, payload_summary, determine_error_stage(e, "slash_command"), str(e))
        return MSG_PERMISSION_RETRY

    if not allowed:
        logger.log_ok("slash", channel_id, user_id, f"{payload_summary} denied")
        return None

    if action == "start":
        created = await store.start_contest()
        status = await store.status()
        logger.log_ok("slash", channel_id, user_id, f"{payload_summary} created={created} {status.summary()}")
        return MSG_AWAITING_DATA if created else MSG_ALREADY_RUNNING

    if action == "stop":
        before = await store.status()
        await store.stop_contest()
        logger.log_ok("slash", channel_id, user_id, f"{payload_summary} was {before.summary()}")
        return MSG_STOPPED

    error = ValueError(f"Unknown sub command: {action}")
    logger.log_err("slash", channel_id, user_id, payload_summary, determine_error_stage(error, "slash_command"), str(error))
    raise error


async def on_upload(
    store: ContestStore,
    channel_id: str,
    user_id: str,
    guild_id: str,
    attachments: List[UploadedFile],
) -> None:
    """添付付きメッセージ受信ハンドラ（スケジュールJSONの読込）

    受信時点のsession番号に対してのみ読込・破棄を行うため、
    ダウンロード中にstop→startされた新しいコンテストには影響しない。
    """
    from contestbot import discord

    if not attachments:
        return
    session = await store.awaiting_session()
    if session is None:
        return

    try:
        allowed = await discord.has_role(guild_id, user_id, settings.discord.permission_role)
    except discord.PermissionCheckError as e:
        logger.log_err("upload", channel_id, user_id, "schedule upload", determine_error_stage(e, "upload"), str(e))
        await _notify("upload", channel_id, user_id, MSG_PERMISSION_RETRY)
        return
    if not allowed:
        return

    attachment = select_schedule_attachment(attachments)
    if attachment is None:
        return

    # ダウンロードはロック外で実行（他ハンドラをブロックしない）
    try:
        raw = await discord.download(attachment.url)
    except discord.DownloadError as e:
        abandoned = await store.abandon_session(session)
        logger.log_err(
            "upload", channel_id, user_id, f"{attachment.filename} abandoned={abandoned}",
            determine_error_stage(e, "upload"), str(e)
        )
        await _notify("upload", channel_id, user_id, MSG_DOWNLOAD_FAILED)
        return

    try:
        loaded = await store.load_schedule(raw, session=session)
    except ScheduleLoadError as e:
        logger.log_err("upload", channel_id, user_id, attachment.filename, determine_error_stage(e, "upload"), str(e))
        await _notify("upload", channel_id, user_id, MSG_LOAD_FAILED)
        return

    if loaded is None:
        # ダウンロード中にstopされた等でゲートが閉じている
        status = await store.status()
        logger.log_ok("upload", channel_id, user_id, f"{attachment.filename} ignored {status.summary()}")
        return

    status = await store.status()
    logger.log_ok(
        "upload", channel_id, user_id,
        f"{attachment.filename} loaded {loaded.day_count} days {status.summary()}"
    )
    await _notify("upload", channel_id, user_id, MSG_DETAILS_LOADED)
    start_day_scheduler(store, loaded.token)


class DayScheduler:
    """日次進行スケジューラ（読込成功ごとに1つ・トークン取り消しで即停止）

    初回tickは起動直後、以降interval秒ごとにadvance_dayを呼び出す。
    """

    def __init__(
        self,
        store: ContestStore,
        token: CancelToken,
        channel_id: Optional[str] = None,
        interval: Optional[float] = None,
    ) -> None:
        self.store = store
        self.token = token
        self.channel_id = channel_id or str(settings.discord.contest_channel)
        self.interval = interval if interval is not None else settings.contest.day_interval_sec
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """バックグラウンドタスクとして起動"""
        if self._task is not None:
            raise RuntimeError("DayScheduler is already running")
        self._task = asyncio.create_task(self.run())
        return self._task

    def stop(self) -> None:
        """スケジューラ停止（次の待機を即座に解除）"""
        self.token.cancel()

    async def run(self) -> None:
        """メインスケジューリングループ"""
        while not self.token.cancelled:
            outcome = await self.store.advance_day(self.token)
            if not await self._handle(outcome):
                break

            # 次のtickまで待機（取り消し時は即終了）
            if await self.token.wait(self.interval):
                break

    async def _handle(self, outcome: AdvanceOutcome) -> bool:
        """tick結果の処理（継続する場合True）"""
        if outcome.kind == AdvanceKind.BROADCAST:
            await self._broadcast(outcome.content)
            return True

        if outcome.kind == AdvanceKind.SKIP:
            logger.log_ok("day_tick", self.channel_id, "scheduler", f"day {outcome.day} skipped (no entry)")
            return True

        if outcome.kind == AdvanceKind.ENDED:
            await self._send_text(MSG_CONTEST_ENDED)
            logger.log_ok("day_tick", self.channel_id, "scheduler", f"contest ended after day {outcome.day - 1}")
            return False

        # STOPPED: 無言で終了
        return False

    async def _broadcast(self, content: ContestDay) -> None:
        from contestbot import discord

        embed = discord.build_day_embed(content)
        try:
            await discord.send_embed(self.channel_id, embed)
            logger.log_ok("day_tick", self.channel_id, "scheduler", f"Day {content.day} broadcast")
        except discord.DiscordAPIError as e:
            logger.log_err("day_tick", self.channel_id, "scheduler", f"Day {content.day}", determine_error_stage(e, "day_tick"), str(e))

    async def _send_text(self, text: str) -> None:
        from contestbot import discord

        try:
            await discord.send(self.channel_id, text)
        except discord.DiscordAPIError as e:
            logger.log_err("day_tick", self.channel_id, "scheduler", text, determine_error_stage(e, "day_tick"), str(e))


# 実行中スケジューラタスクの参照保持（GC防止）
active_schedulers: Set[asyncio.Task] = set()


def start_day_scheduler(store: ContestStore, token: CancelToken) -> DayScheduler:
    """読込成功シグナルからDaySchedulerを起動"""
    scheduler = DayScheduler(store, token)
    task = scheduler.start()
    active_schedulers.add(task)
    task.add_done_callback(active_schedulers.discard)
    return scheduler


async def main() -> None:
    """メインアプリケーション起動"""
    from contestbot.discord import start_contest_client

    print("🚀 Contest Bot 起動開始")
    print(f"⏰ 日次進行間隔: {settings.contest.day_interval_sec}秒")
    print(f"📢 配信チャンネル: {settings.discord.contest_channel}")

    store = ContestStore()
    try:
        await start_contest_client(store)
    except Exception as e:
        print(f"❌ システム起動エラー: {e}")
        import sys
        sys.exit(1)


if __name__ == "__main__":
    print("🎯 アプリケーション開始")
    asyncio.run(main())
