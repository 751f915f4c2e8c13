"""
Risk Management - leverage and position sizing for emitted signals.

Sizing is a pure function of the signal's levels and the configured
risk budget:

    stop_distance_pct = |entry - stop_loss| / entry
    leverage          = min(max_leverage, risk_pct / stop_distance_pct)
    position_size     = portfolio_value * risk_pct * leverage

Order placement is out of scope; ``build_order_params`` only describes the
order a signal implies.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from src.core.config import RiskConfig
from src.core.logger import get_logger

logger = get_logger("risk_manager")


@dataclass
class PositionSizeResult:
    """Result of position sizing calculation."""
    stop_distance_pct: float = 0.0
    leverage: float = 0.0
    position_size: float = 0.0
    risk_amount: float = 0.0
    risk_reward_ratio: float = 0.0
    allowed: bool = False
    reward_risk_ok: bool = False
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_position_size(
    entry: float,
    stop_loss: float,
    take_profit: Optional[float],
    *,
    risk_pct: float,
    portfolio_value: float,
    max_leverage: float = 20.0,
    min_reward_risk: float = 2.0,
) -> PositionSizeResult:
    result = PositionSizeResult()
    if entry is None or entry <= 0:
        result.reason = f"Entry price must be positive (got {entry})"
        return result

    stop_distance = abs(entry - stop_loss) / entry
    result.stop_distance_pct = stop_distance
    if stop_distance <= 0:
        result.reason = "Stop loss equals entry; stop distance is zero"
        return result

    result.leverage = min(float(max_leverage), risk_pct / stop_distance)
    result.position_size = portfolio_value * risk_pct * result.leverage
    result.risk_amount = portfolio_value * risk_pct
    if take_profit is not None:
        result.risk_reward_ratio = abs(take_profit - entry) / abs(entry - stop_loss)
    result.reward_risk_ok = result.risk_reward_ratio >= min_reward_risk
    result.allowed = True
    result.reason = "OK" if result.reward_risk_ok else (
        f"Reward:risk {result.risk_reward_ratio:.2f} below 1:{min_reward_risk:g}"
    )
    return result


class RiskManager:
    """Applies the configured risk budget to signal levels."""

    def __init__(self, config: Optional[RiskConfig] = None):
        self.config = config or RiskConfig()

    def size_signal(self, entry: float, stop_loss: float, take_profit1: Optional[float]) -> PositionSizeResult:
        cfg = self.config
        result = calculate_position_size(
            entry,
            stop_loss,
            take_profit1,
            risk_pct=cfg.risk_pct,
            portfolio_value=cfg.portfolio_value,
            max_leverage=cfg.max_leverage,
            min_reward_risk=cfg.min_reward_risk,
        )
        if not result.allowed:
            logger.warning("Degenerate signal levels", entry=entry, stop_loss=stop_loss, reason=result.reason)
        elif not result.reward_risk_ok:
            logger.warning(
                "Signal below minimum reward:risk",
                entry=entry,
                stop_loss=stop_loss,
                take_profit=take_profit1,
                ratio=round(result.risk_reward_ratio, 2),
            )
        return result

    @staticmethod
    def build_order_params(signal: Any, sizing: PositionSizeResult) -> Dict[str, Any]:
        """Market order description for a signal. Nothing is sent anywhere."""
        direction = getattr(signal.direction, "value", signal.direction)
        entry = float(signal.entry_price)
        quantity = sizing.position_size / entry if entry > 0 else 0.0
        params = {
            "symbol": signal.symbol,
            "side": "BUY" if direction == "LONG" else "SELL",
            "type": "MARKET",
            "quantity": round(quantity, 8),
            "leverage": round(sizing.leverage, 2),
            "stop_loss": signal.stop_loss,
            "take_profit": signal.take_profit1,
        }
        logger.info("Order scaffold built", **params)
        return {
            "status": "SCAFFOLD",
            "message": "Order execution is not enabled; parameters only",
            "params": params,
        }

    @staticmethod
    def get_positions() -> Dict[str, Any]:
        return {
            "status": "SCAFFOLD",
            "message": "Position tracking is not enabled",
            "positions": [],
        }
