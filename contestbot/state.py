# State Management - コンテスト状態モデル
# ContestDay / ContestSchedule / Contest の型定義とスケジュール解析

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import orjson


# day / species は0〜255の小さな整数
MAX_SMALL_INT = 255


class ScheduleFormatError(ValueError):
    """スケジュールJSONの構造不正"""


class AdvanceKind(Enum):
    """advance_dayの結果種別"""
    BROADCAST = "broadcast"  # 当日の内容を配信
    SKIP = "skip"            # 欠番の日（配信なし・継続）
    ENDED = "ended"          # 最終日を超過（コンテスト終了）
    STOPPED = "stopped"      # コンテスト不在（無言で終了）


@dataclass(frozen=True)
class ContestDay:
    """1日分の配信単位"""
    day: int
    species: int
    version: str
    hints: Tuple[str, ...]

    def hint_fields(self) -> List[Tuple[str, str]]:
        """ヒントを「Hint 1」「Hint 2」…のフィールドに変換（入力順）"""
        return [(f"Hint {i}", hint) for i, hint in enumerate(self.hints, start=1)]


@dataclass(frozen=True)
class ContestSchedule:
    """ContestDayの順序付き集合（再読込時は丸ごと置換）"""
    days: Tuple[ContestDay, ...] = ()

    def get_day(self, day: int) -> Optional[ContestDay]:
        """day一致の最初のエントリを返す（重複dayは先頭優先）"""
        for contest_day in self.days:
            if contest_day.day == day:
                return contest_day
        return None

    def last_day(self) -> Optional[int]:
        """スケジュール中の最大day（空ならNone）"""
        if not self.days:
            return None
        return max(contest_day.day for contest_day in self.days)

    def __len__(self) -> int:
        return len(self.days)


@dataclass
class Contest:
    """唯一の可変セッション

    current_day:
        None  -> データ未読込
        0     -> 読込済み・未配信（day 0 自体は配信されない）
        n     -> 最後に進めた日

    session: start_contestごとに採番される番号（stop→start後の旧アップロード判別用）
    """
    session: int = 0
    current_day: Optional[int] = None
    schedule: ContestSchedule = field(default_factory=ContestSchedule)


@dataclass(frozen=True)
class AdvanceOutcome:
    """advance_dayの結果"""
    kind: AdvanceKind
    day: Optional[int] = None
    content: Optional[ContestDay] = None

    @classmethod
    def broadcast(cls, content: ContestDay) -> "AdvanceOutcome":
        return cls(AdvanceKind.BROADCAST, content.day, content)

    @classmethod
    def skip(cls, day: int) -> "AdvanceOutcome":
        return cls(AdvanceKind.SKIP, day)

    @classmethod
    def ended(cls, day: int) -> "AdvanceOutcome":
        return cls(AdvanceKind.ENDED, day)

    @classmethod
    def stopped(cls) -> "AdvanceOutcome":
        return cls(AdvanceKind.STOPPED)


def _require_small_int(entry: dict, key: str, index: int) -> int:
    value = entry.get(key)
    # boolはintのサブクラスなので明示的に除外
    if isinstance(value, bool) or not isinstance(value, int):
        raise ScheduleFormatError(f"Entry {index}: '{key}' must be an integer")
    if not 0 <= value <= MAX_SMALL_INT:
        raise ScheduleFormatError(f"Entry {index}: '{key}' must be between 0 and {MAX_SMALL_INT}, got: {value}")
    return value


def _parse_day(entry: object, index: int) -> ContestDay:
    """1エントリの構造検証"""
    if not isinstance(entry, dict):
        raise ScheduleFormatError(f"Entry {index} must be an object")

    for key in ("day", "species", "version", "hints"):
        if key not in entry:
            raise ScheduleFormatError(f"Entry {index}: missing required key '{key}'")

    version = entry["version"]
    if not isinstance(version, str):
        raise ScheduleFormatError(f"Entry {index}: 'version' must be a string")

    hints = entry["hints"]
    if not isinstance(hints, list) or not all(isinstance(hint, str) for hint in hints):
        raise ScheduleFormatError(f"Entry {index}: 'hints' must be an array of strings")

    return ContestDay(
        day=_require_small_int(entry, "day", index),
        species=_require_small_int(entry, "species", index),
        version=version,
        hints=tuple(hints)
    )


def parse_schedule(raw: bytes) -> ContestSchedule:
    """アップロードされたJSONをContestScheduleに変換

    Args:
        raw: 添付ファイルのバイト列（日オブジェクトのJSON配列）

    Returns:
        ContestSchedule: 入力順を保持したスケジュール

    Raises:
        ScheduleFormatError: JSON不正または構造不正
    """
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise ScheduleFormatError(f"Invalid JSON: {e}") from e

    if not isinstance(data, list):
        raise ScheduleFormatError("Schedule must be a JSON array of day objects")

    return ContestSchedule(days=tuple(_parse_day(entry, i) for i, entry in enumerate(data)))
