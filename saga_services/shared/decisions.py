"""
Shared — 業務判断の戦略 (Decision Strategy)

在庫引き当て・支払い・出荷の成否は外部システム次第なので、
判断は差し替え可能な関数として各ハンドラに注入する。
本番ではランダム (成功率つき) のシミュレーション、テストでは結果を固定する。

どの判断も Succeeded か Failed のどちらか一方だけを返す。
"""

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Succeeded:
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Failed:
    reason: str


Decision = Succeeded | Failed
Strategy = Callable[..., Decision]


def random_strategy(
    success_rate: float,
    failure_reason: str,
    details: Callable[[random.Random], dict[str, Any]] | None = None,
    rng: random.Random | None = None,
) -> Strategy:
    """success_rate の確率で成功する判断関数を返す。"""
    rng = rng or random.Random()

    def decide(*_args: Any) -> Decision:
        if rng.random() < success_rate:
            return Succeeded(details(rng) if details else {})
        return Failed(failure_reason)

    return decide


def always_succeed(**details: Any) -> Strategy:
    return lambda *_args: Succeeded(dict(details))


def always_fail(reason: str) -> Strategy:
    return lambda *_args: Failed(reason)


def random_token(rng: random.Random, length: int = 10) -> str:
    alphabet = "abcdefghijklmnopqrstuvwxyz0123456789"
    return "".join(rng.choice(alphabet) for _ in range(length))
