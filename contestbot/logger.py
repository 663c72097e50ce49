# Logger - コンテスト運用ログ（JSONL）
# 1行1イベント: ts,event_type,channel,actor,payload_summary,result,error_stage,error_detail
# 配信失敗などユーザーに見えない失敗はここにのみ残る

import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional

import orjson
from zoneinfo import ZoneInfo

from contestbot.error_stages import validate_error_stage
from contestbot.settings import settings


# イベント種別
#   slash    : /contest start|stop の受付
#   upload   : スケジュールJSON添付の受信・読込
#   day_tick : DaySchedulerの1tick（配信・欠番・終了）
#   ready    : Gateway接続完了・コマンド登録
EventType = Literal["slash", "upload", "day_tick", "ready"]

SUMMARY_MAX_LENGTH = 80

# DaySchedulerとGatewayハンドラが同時に書き込むため
_log_lock = threading.Lock()


def _log_path() -> Path:
    log_path = Path(settings.logging.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return log_path


def _timestamp() -> str:
    """設定タイムゾーン（TZ）でのISO8601タイムスタンプ"""
    return datetime.now(ZoneInfo(settings.environment.timezone)).isoformat()


def _summarize(payload_summary: str) -> str:
    """添付ファイル名・コマンド・Day番号などの要約を80字に収める"""
    if len(payload_summary) <= SUMMARY_MAX_LENGTH:
        return payload_summary
    return payload_summary[:SUMMARY_MAX_LENGTH - 3] + "..."


def _append(entry: dict) -> None:
    """1エントリを追記（失敗してもコンテスト進行は止めない）"""
    try:
        line = orjson.dumps(entry).decode("utf-8")
        path = _log_path()
        with _log_lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
    except Exception as e:
        print(f"LOGGER ERROR: Failed to write log entry: {e}", file=sys.stderr)


def _entry(
    event_type: EventType,
    channel: str,
    actor: str,
    payload_summary: str,
    result: str,
    error_stage: Optional[str],
    error_detail: Optional[str],
) -> dict:
    return {
        "ts": _timestamp(),
        "event_type": event_type,
        "channel": channel,
        "actor": actor,
        "payload_summary": _summarize(payload_summary),
        "result": result,
        "error_stage": error_stage,
        "error_detail": error_detail
    }


def log_ok(event_type: EventType, channel: str, actor: str, payload_summary: str) -> None:
    """状態遷移・配信成功の記録

    例: slash "/contest start created=True active=True awaiting_data=True ..."
        day_tick "Day 3 broadcast" / "day 4 skipped (no entry)"

    Args:
        event_type: slash|upload|day_tick|ready
        channel: 発生元チャンネルID（起動時はsystem）
        actor: 操作ユーザーID、またはscheduler|system
        payload_summary: コマンド・添付ファイル名・Day番号などの要約
    """
    try:
        entry = _entry(event_type, channel, actor, payload_summary, "ok", None, None)
    except Exception as e:
        print(f"LOGGER ERROR: Failed to build log entry: {e}", file=sys.stderr)
        return
    _append(entry)


def log_err(
    event_type: EventType,
    channel: str,
    actor: str,
    payload_summary: str,
    error_stage: str,
    error_detail: str
) -> None:
    """失敗の記録（再送・ユーザー通知の有無とは独立）

    Args:
        event_type: slash|upload|day_tick|ready
        channel: 発生元チャンネルID（起動時はsystem）
        actor: 操作ユーザーID、またはscheduler|system
        payload_summary: コマンド・添付ファイル名・Day番号などの要約
        error_stage: determine_error_stageの判定結果
            （settings|slash|permission|download|parse|send|schedule）
        error_detail: 例外メッセージ

    Raises:
        ValueError: error_stageが未定義の段階（呼び出し側の誤り）
    """
    stage = validate_error_stage(error_stage)
    try:
        entry = _entry(event_type, channel, actor, payload_summary, "error", stage, error_detail)
    except Exception as e:
        print(f"LOGGER ERROR: Failed to build log entry: {e}", file=sys.stderr)
        return
    _append(entry)
