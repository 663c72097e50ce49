# Settings Management - 設定一元管理
# Fail-Fast原則: 設定エラーは即座にプロセス終了

import os
import sys
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from dotenv import load_dotenv


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def fail_fast(message: str) -> None:
    """設定エラー時の即座終了"""
    print(f"FATAL CONFIG ERROR: {message}", file=sys.stderr)
    sys.exit(1)


def get_required_env(key: str) -> str:
    """必須環境変数の取得（欠落時は即座終了）"""
    value = os.getenv(key)
    if value is None or value == "":
        fail_fast(f"Required environment variable '{key}' is not set")
    return value


def get_optional_env(key: str, default: str) -> str:
    """任意環境変数の取得（未設定時はデフォルト値）"""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        fail_fast(f"Environment variable '{key}' must be an integer, got: {value}")


def get_required_int(key: str) -> int:
    """必須整数環境変数の取得（型変換失敗時は即座終了）"""
    return _parse_int(key, get_required_env(key))


def get_optional_int(key: str, default: int) -> int:
    """任意整数環境変数の取得"""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return _parse_int(key, value)


def get_optional_bool(key: str, default: bool) -> bool:
    """任意真偽値環境変数の取得（true/false, 1/0, yes/no, on/off）"""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    fail_fast(f"Environment variable '{key}' must be a boolean, got: {value}")


def validate_snowflake(key: str, value: int) -> int:
    """Discord ID（正の整数）の検証"""
    if value <= 0:
        fail_fast(f"Environment variable '{key}' must be a positive Discord ID, got: {value}")
    return value


def validate_timezone(key: str, value: str) -> str:
    """IANAタイムゾーン名の検証（:/etc/localtime 等のPOSIX形式は不可）"""
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        fail_fast(f"Environment variable '{key}' must be an IANA time zone name, got: {value}")
    return value


def validate_interval(key: str, value: int) -> int:
    """tick間隔（秒）の範囲検証"""
    if value <= 0:
        fail_fast(f"Environment variable '{key}' must be a positive number of seconds, got: {value}")
    return value


@dataclass(frozen=True)
class EnvironmentConfig:
    """環境設定"""
    timezone: str


@dataclass(frozen=True)
class DiscordConfig:
    """Discord設定"""
    token: str
    application_id: int
    permission_role: int
    contest_channel: int
    register_commands: bool


@dataclass(frozen=True)
class ContestConfig:
    """コンテスト進行設定"""
    day_interval_sec: int


@dataclass(frozen=True)
class LoggingConfig:
    """ログ設定"""
    log_file: str


@dataclass(frozen=True)
class Settings:
    """全設定の統合"""
    environment: EnvironmentConfig
    discord: DiscordConfig
    contest: ContestConfig
    logging: LoggingConfig


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    """設定の読み込みと検証（Fail-Fast）"""
    # .envファイルの読み込み（既存の環境変数は上書きしない）
    load_dotenv(dotenv_path)

    # Discord設定（ID類は正の整数のみ許可）
    discord_config = DiscordConfig(
        token=get_required_env("DISCORD_TOKEN"),
        application_id=validate_snowflake("APPLICATION_ID", get_required_int("APPLICATION_ID")),
        permission_role=validate_snowflake("PERMISSION_ROLE", get_required_int("PERMISSION_ROLE")),
        contest_channel=validate_snowflake("CONTEST_CHANNEL", get_required_int("CONTEST_CHANNEL")),
        register_commands=get_optional_bool("REGISTER_COMMANDS", False)
    )

    # コンテスト設定（1日あたりの進行間隔）
    contest_config = ContestConfig(
        day_interval_sec=validate_interval("DAY_INTERVAL_SEC", get_optional_int("DAY_INTERVAL_SEC", 30))
    )

    # ログ設定
    logging_config = LoggingConfig(
        log_file=get_optional_env("LOG_FILE", "logs/contest.log")
    )

    # 環境設定
    environment_config = EnvironmentConfig(
        timezone=validate_timezone("TZ", get_optional_env("TZ", "UTC"))
    )

    return Settings(
        environment=environment_config,
        discord=discord_config,
        contest=contest_config,
        logging=logging_config
    )


# グローバル設定インスタンス（初回読み込み時に検証）
settings = load_settings()
