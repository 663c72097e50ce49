# Discord Interface - Discord送受信管理
# 受信: discord.py / 送信・権限確認・添付取得・コマンド登録: httpx REST API

from typing import Any, Dict, Optional

import discord
import httpx
from contestbot import logger
from contestbot.error_stages import determine_error_stage
from contestbot.settings import settings
from contestbot.state import ContestDay
import contestbot.app as app_module


API_BASE = "https://discord.com/api/v10"
MAX_MESSAGE_LENGTH = 2000

# /contest コマンドの定義（type 1 = SUB_COMMAND）
CONTEST_COMMAND = {
    "name": "contest",
    "description": "Base command for contest bot",
    "options": [
        {
            "name": "start",
            "description": "Start a contest with a given json",
            "type": 1
        },
        {
            "name": "stop",
            "description": "Stop the current contest",
            "type": 1
        }
    ]
}


class DiscordAPIError(ValueError):
    """Discord REST API呼び出し失敗"""


class PermissionCheckError(DiscordAPIError):
    """ロール確認が完了できなかった（拒否ではない）"""


class DownloadError(DiscordAPIError):
    """添付ファイルの取得失敗"""


class ContestDiscordClient(discord.Client):
    """コンテストBot Discord受信クライアント"""

    def __init__(self, store):
        # 添付ファイルを受け取るためメッセージ内容Intentを有効化
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True
        intents.guild_messages = True
        super().__init__(intents=intents)
        self.store = store

    async def on_ready(self) -> None:
        """Bot起動完了時の処理"""
        if not self.user:
            raise RuntimeError("Discord client failed to initialize user")
        print(f"Contest Discord Client ready: {self.user}")

        if settings.discord.register_commands:
            try:
                await register_commands()
                print("✅ /contest スラッシュコマンド登録完了 (Global)")
                logger.log_ok("ready", "system", "system", "contest command registered")
            except DiscordAPIError as e:
                print(f"❌ スラッシュコマンド登録エラー: {e}")
                logger.log_err("ready", "system", "system", "contest command registration", determine_error_stage(e, "command_registration"), str(e))

    async def on_message(self, message: discord.Message) -> None:
        """メッセージ受信処理（添付付きのみ対象）"""
        # Bot自身のメッセージは無視
        if message.author.bot:
            return
        if not message.attachments:
            return
        # DMはロール確認ができないため対象外
        if message.guild is None:
            return

        attachments = [
            app_module.UploadedFile(
                url=attachment.url,
                content_type=attachment.content_type,
                filename=attachment.filename
            )
            for attachment in message.attachments
        ]

        # app.pyのon_uploadに委譲
        await app_module.on_upload(
            self.store,
            channel_id=str(message.channel.id),
            user_id=str(message.author.id),
            guild_id=str(message.guild.id),
            attachments=attachments,
        )

    async def on_interaction(self, interaction: discord.Interaction) -> None:
        """スラッシュコマンド受信処理"""
        if interaction.type != discord.InteractionType.application_command:
            return

        # Fail-Fast: インタラクション検証
        if not interaction.data:
            raise ValueError("Interaction data is missing")
        if interaction.data.get("name") != "contest":
            return
        if interaction.guild_id is None:
            return

        options = interaction.data.get("options") or []
        if not options:
            raise ValueError("Expected sub command option")
        action = options[0].get("name")

        # app.pyのon_slashに委譲
        reply = await app_module.on_slash(
            self.store,
            action=action,
            user_id=str(interaction.user.id),
            guild_id=str(interaction.guild_id),
            channel_id=str(interaction.channel_id),
        )

        # 権限なしの場合は応答しない
        if reply is not None:
            await interaction.response.send_message(reply, ephemeral=True)


async def start_contest_client(store) -> None:
    """コンテストクライアント起動"""
    # Fail-Fast: 設定値検証
    if not settings.discord.token:
        raise ValueError("DISCORD_TOKEN is not configured")

    client = ContestDiscordClient(store)
    await client.start(settings.discord.token)


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bot {settings.discord.token}",
        "Content-Type": "application/json"
    }


def build_day_embed(contest_day: ContestDay) -> Dict[str, Any]:
    """日次配信用Embedの構築（タイトル・Version・Hint n）"""
    fields = [{"name": "Version", "value": contest_day.version, "inline": False}]
    fields.extend(
        {"name": name, "value": value, "inline": True}
        for name, value in contest_day.hint_fields()
    )
    return {"title": f"Day {contest_day.day}", "fields": fields}


async def register_commands() -> None:
    """/contest コマンドのグローバル登録"""
    url = f"{API_BASE}/applications/{settings.discord.application_id}/commands"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(url, headers=_headers(), json=CONTEST_COMMAND)
    except httpx.RequestError as e:
        raise DiscordAPIError(f"Failed to register commands: {e}") from e

    if response.status_code not in [200, 201]:
        raise DiscordAPIError(
            f"Discord API error: {response.status_code} - {response.text}"
        )


def _json_body(response, error_cls=DiscordAPIError) -> Dict[str, Any]:
    """2xx応答のJSON本文（JSONオブジェクト以外はerror_clsで送出）"""
    try:
        data = response.json()
    except ValueError as e:
        raise error_cls(f"Discord API returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise error_cls("Discord API returned unexpected JSON body")
    return data


async def _post_message(channel_id: str, payload: Dict[str, Any]) -> str:
    url = f"{API_BASE}/channels/{channel_id}/messages"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(url, headers=_headers(), json=payload)
    except httpx.RequestError as e:
        raise DiscordAPIError(f"Failed to send message: {e}") from e

    if response.status_code != 200:
        raise DiscordAPIError(
            f"Discord API error: {response.status_code} - {response.text}"
        )
    message_id = _json_body(response, DiscordAPIError).get("id")
    if not message_id:
        raise DiscordAPIError("Discord API returned empty message ID")
    return message_id


async def send(channel_id: str, text: str) -> str:
    """Discord REST API: テキストメッセージ送信"""
    # Fail-Fast: パラメータ検証
    if not channel_id:
        raise ValueError("Channel ID cannot be empty")
    if not text:
        raise ValueError("Message text cannot be empty")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValueError(f"Message text too long: {len(text)} characters (max {MAX_MESSAGE_LENGTH})")

    return await _post_message(channel_id, {"content": text})


async def send_embed(channel_id: str, embed: Dict[str, Any]) -> str:
    """Discord REST API: Embedメッセージ送信"""
    if not channel_id:
        raise ValueError("Channel ID cannot be empty")
    if not embed.get("title"):
        raise ValueError("Embed title cannot be empty")

    return await _post_message(channel_id, {"embeds": [embed]})


async def has_role(guild_id: str, user_id: str, role_id: int) -> bool:
    """Discord REST API: メンバーが指定ロールを持つか確認

    Returns:
        bool: ロール保持時True（非メンバーはFalse）

    Raises:
        PermissionCheckError: 通信失敗・想定外のステータス
    """
    if not guild_id or not user_id:
        raise PermissionCheckError("Guild ID and user ID are required for role lookup")

    url = f"{API_BASE}/guilds/{guild_id}/members/{user_id}"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, headers=_headers())
    except httpx.RequestError as e:
        raise PermissionCheckError(f"Failed to retrieve member roles: {e}") from e

    if response.status_code == 404:
        return False
    if response.status_code != 200:
        raise PermissionCheckError(
            f"Member lookup failed: {response.status_code} - {response.text}"
        )

    roles = _json_body(response, PermissionCheckError).get("roles", [])
    return str(role_id) in roles


async def download(url: str, timeout: Optional[float] = 30.0) -> bytes:
    """添付ファイルのダウンロード"""
    if not url:
        raise DownloadError("Attachment URL cannot be empty")

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
    except httpx.RequestError as e:
        raise DownloadError(f"Failed to download attachment: {e}") from e

    if response.status_code != 200:
        raise DownloadError(f"Attachment download failed: {response.status_code}")
    return response.content
