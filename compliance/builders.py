"""Pure constructors for the four sections of an ACE (aspiration, capability,
execution, outcome) compliance record."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.money import HUNDRED, ZERO
from core.types import OrderSide, Signal

EXECUTION_PENDING = 'PENDING'
WIN_THRESHOLD_PCT = Decimal('0.1')


def _pct_text(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return f"{value * HUNDRED:.2f}%"


def build_aspiration(signal: Signal, entry_price: Decimal, stop_loss: Decimal, strategy: str,
                     time_horizon: str = '1-3 days') -> Dict[str, Any]:
    target = signal.target_price
    target_profit = (abs(target - entry_price) / entry_price) if target is not None else None
    max_loss = abs(entry_price - stop_loss) / entry_price
    risk_reward = None
    if target is not None and entry_price != stop_loss:
        risk_reward = abs(target - entry_price) / abs(entry_price - stop_loss)
    return {
        'strategy': strategy,
        'target_profit': _pct_text(target_profit),
        'max_loss': _pct_text(max_loss),
        'time_horizon': time_horizon,
        'risk_reward_ratio': f"{risk_reward:.2f}" if risk_reward is not None else None,
    }


def build_capability(signal: Signal, risk: Dict[str, Any], data_quality: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        'signals': [{
            'type': 'combined',
            'signal_type': signal.signal_type.value,
            'confidence': signal.confidence,
            'indicators': signal.indicators,
            'reason': signal.reason,
        }],
        'risk_assessment': {
            'position_size': risk.get('position_size'),
            'position_value': risk.get('position_value'),
            'violations': list(risk.get('violations') or []),
            'warnings': list(risk.get('warnings') or []),
            'leverage': risk.get('leverage'),
            'exposure': risk.get('exposure'),
        },
        'data_quality': data_quality or {},
    }


def build_execution(decision: str, side: OrderSide, entry_price: Optional[Decimal], stop_loss: Optional[Decimal],
                    target: Optional[Decimal], size: Decimal, timestamp: datetime, reason: str = '',
                    status: str = EXECUTION_PENDING, trade_id: Optional[int] = None,
                    order_id: Optional[str] = None, message: Optional[str] = None) -> Dict[str, Any]:
    return {
        'decision': decision,
        'side': side.value,
        'status': status,
        'actual_entry': entry_price,
        'actual_stop_loss': stop_loss,
        'actual_target': target,
        'size': size,
        'trade_id': trade_id,
        'order_id': order_id,
        'timestamp': timestamp.isoformat(),
        'reason': reason,
        'message': message,
    }


def classify_result(pnl_pct: Decimal) -> str:
    if pnl_pct > WIN_THRESHOLD_PCT:
        return 'WIN'
    if pnl_pct < -WIN_THRESHOLD_PCT:
        return 'LOSS'
    return 'BREAKEVEN'


def format_duration(start: datetime, end: datetime) -> str:
    hours = Decimal(str((end - start).total_seconds())) / Decimal('3600')
    if hours < 24:
        return f"{hours:.1f} hours"
    return f"{hours / 24:.1f} days"


def build_outcome(side: OrderSide, entry_price: Decimal, exit_price: Decimal, qty: Decimal,
                  entry_time: datetime, exit_time: datetime, entry_fee: Decimal = ZERO,
                  entry_tax: Decimal = ZERO, exit_fee: Decimal = ZERO, exit_tax: Decimal = ZERO,
                  exit_reason: str = '') -> Dict[str, Any]:
    if side is OrderSide.BUY:
        gross = (exit_price - entry_price) * qty
    else:
        gross = (entry_price - exit_price) * qty
    fees = entry_fee + exit_fee
    taxes = entry_tax + exit_tax
    realized = gross - fees - taxes
    invested = entry_price * qty + entry_fee + entry_tax
    pnl_pct = realized / invested * HUNDRED if invested > ZERO else ZERO
    return {
        'exit_price': exit_price,
        'gross_pnl': gross,
        'fees': fees,
        'taxes': taxes,
        'realized_pnl': realized,
        'pnl_pct': f"{pnl_pct:.2f}",
        'result': classify_result(pnl_pct),
        'duration': format_duration(entry_time, exit_time),
        'exit_reason': exit_reason,
        'exit_time': exit_time.isoformat(),
    }


def violations_summary(violations: List[str]) -> str:
    return '; '.join(violations) if violations else 'approved'
