"""エラー段階判定システム（log_err用の段階タグ）"""

from typing import Literal

# エラー段階の型定義
ErrorStage = Literal["settings", "slash", "permission", "download", "parse", "send", "schedule"]


def determine_error_stage(exception: Exception, context: str = "general") -> ErrorStage:
    """例外とコンテキストからエラー段階を判定する

    error_stage ∈ {settings,slash,permission,download,parse,send,schedule}
    の7段階のうち適切な段階を、例外の型・内容とコンテキストから推定します。
    log_errの全呼び出し元はこの関数で段階を決める。

    Args:
        exception: 発生した例外
        context: エラー発生コンテキスト（"slash_command", "command_registration",
            "upload", "day_tick", "settings"）

    Returns:
        ErrorStage: 判定されたエラー段階

    Examples:
        >>> determine_error_stage(ScheduleLoadError("missing key"), "upload")
        "parse"
        >>> determine_error_stage(DiscordAPIError("Discord API error: 500"), "day_tick")
        "send"
    """
    # 型による優先判定（循環importを避けるため遅延import）
    from contestbot.state import ScheduleFormatError
    from contestbot.store import ScheduleLoadError
    from contestbot.discord import DiscordAPIError, PermissionCheckError, DownloadError

    if isinstance(exception, PermissionCheckError):
        return "permission"
    if isinstance(exception, DownloadError):
        return "download"
    if isinstance(exception, (ScheduleFormatError, ScheduleLoadError)):
        return "parse"

    # コンテキスト別の判定
    if context == "settings":
        return "settings"
    elif context in ("slash_command", "command_registration"):
        return "slash"

    # 上記以外のREST失敗は送信段階
    if isinstance(exception, DiscordAPIError):
        return "send"

    error_message = str(exception).lower()

    # 例外メッセージ内容による判定
    if any(keyword in error_message for keyword in ["role", "permission", "member"]):
        return "permission"
    elif any(keyword in error_message for keyword in ["download", "attachment"]):
        return "download"
    elif any(keyword in error_message for keyword in ["json", "parse", "format", "invalid"]):
        return "parse"
    elif any(keyword in error_message for keyword in ["send", "discord", "message", "embed"]):
        return "send"

    # デフォルト: スケジュール段階（日次進行まわりの問題として扱う）
    return "schedule"


def get_all_error_stages() -> list[ErrorStage]:
    """すべてのエラー段階を取得する"""
    return ["settings", "slash", "permission", "download", "parse", "send", "schedule"]


def validate_error_stage(stage: str) -> ErrorStage:
    """エラー段階の妥当性を検証する

    Raises:
        ValueError: 無効なエラー段階が指定された場合
    """
    valid_stages = get_all_error_stages()
    if stage not in valid_stages:
        raise ValueError(f"Invalid error_stage: {stage}. Must be one of {valid_stages}")
    return stage  # type: ignore
