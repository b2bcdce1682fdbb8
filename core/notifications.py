"""Human-readable alert texts for the volume bot."""

from datetime import datetime, timezone
from typing import Optional

from core.models import ActivePosition, Candle, Side, TradeResult, VenuePosition


def _side_label(side: Side) -> str:
    return "📈 LONG" if side == Side.BUY else "📉 SHORT"


def _hhmm(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


class NotificationFormatter:
    """Builds alert texts for one symbol."""

    def __init__(self, symbol: str, trade_size_usd: float, stop_loss_points: float):
        self.symbol = symbol
        self.trade_size_usd = trade_size_usd
        self.stop_loss_points = stop_loss_points

    def volume_spike(self, completed: Candle, previous: Optional[Candle], replaced: bool = False) -> str:
        ratio = completed.volume / previous.volume if previous and previous.volume > 0 else 0.0
        move_pct = (completed.close - completed.open) / completed.open * 100 if completed.open else 0.0
        title = "VOLUME SIGNAL REPLACED" if replaced else "VOLUME SPIKE"
        lines = [
            f"<b>📢 {title} {self.symbol}</b>",
            f"Candle: {_hhmm(completed.timestamp)} ({'🟢' if completed.is_green else '🔴'})",
            f"Volume: {completed.volume:,.2f} ({ratio:.2f}x)",
        ]
        if previous is not None:
            lines.append(f"Previous volume: {previous.volume:,.2f}")
        lines.append(f"Close: {completed.close}")
        lines.append(f"Move: {move_pct:+.2f}%")
        return "\n".join(lines)

    def order_placed(
        self,
        position: ActivePosition,
        signal_candle: Candle,
        confirming_candle: Candle,
        simulated: bool = False,
    ) -> str:
        tp = position.planned_take_profit or 0.0
        sl = position.planned_stop_loss or 0.0
        extreme = (
            min(signal_candle.low, confirming_candle.low)
            if position.side == Side.BUY
            else max(signal_candle.high, confirming_candle.high)
        )
        notional = position.entry_price * position.qty if position.qty else self.trade_size_usd
        reward = abs(tp - position.entry_price) / position.entry_price * notional if position.entry_price else 0.0
        risk = abs(sl - position.entry_price) / position.entry_price * notional if position.entry_price else 0.0
        title = "SIGNAL (not submitted)" if simulated else "LIMIT ORDER PLACED"
        return "\n".join([
            f"<b>🎯 {title} {self.symbol}</b>",
            _side_label(position.side),
            f"Order ID: {position.order_id or '-'}",
            f"Order price: {position.entry_price}",
            f"Qty: {position.qty}",
            f"Take profit: {tp:.2f}",
            f"Stop loss: {sl:.2f} ({self.stop_loss_points} pts beyond {extreme})",
            f"Potential profit: ${reward:.2f}",
            f"Max loss: ${risk:.2f}",
        ])

    def order_filled(self, position: ActivePosition) -> str:
        return "\n".join([
            f"<b>✅ ORDER FILLED {self.symbol}</b>",
            _side_label(position.side),
            f"Order ID: {position.order_id}",
            f"Entry: {position.entry_price}",
            f"Take profit: {position.planned_take_profit}",
            f"Stop loss: {position.planned_stop_loss}",
        ])

    def order_cancelled(self, position: ActivePosition, status: str) -> str:
        return (
            f"<b>❌ ORDER {status.upper()} {self.symbol}</b>\n"
            f"Order ID: {position.order_id}\n"
            f"Price: {position.entry_price}"
        )

    def position_closed(self, result: TradeResult) -> str:
        pnl_usd = result.pnl_usd if result.qty else result.pnl_pct / 100 * self.trade_size_usd
        emoji = "🟢" if result.pnl_points >= 0 else "🔴"
        return "\n".join([
            f"<b>🔄 POSITION CLOSED {self.symbol}</b>",
            _side_label(result.side),
            f"Entry: {result.entry_price}",
            f"Exit: {result.exit_price}",
            f"PnL: {emoji} {result.pnl_points:+.2f} pts ({result.pnl_pct:+.2f}%) ${pnl_usd:+.2f}",
            f"Reason: {result.exit_reason}",
        ])

    def trailing_activated(self, stop_price: float, price: float) -> str:
        return (
            f"<b>🎯 TRAILING ACTIVE {self.symbol}</b>\n"
            f"Take profit removed, stop {stop_price:.2f} (price {price:.2f})"
        )

    def trailing_moved(self, stop_price: float, distance: float, price: float) -> str:
        return (
            f"📈 Trailing stop moved to {stop_price:.2f} "
            f"({distance} pts from {price:.2f}) for {self.symbol}"
        )

    def position_adopted(self, venue: VenuePosition, take_profit: Optional[float], stop_loss: Optional[float], trailing: bool) -> str:
        side = venue.position_side or Side.BUY
        return "\n".join([
            f"<b>🔁 POSITION ADOPTED {self.symbol}</b>",
            _side_label(side),
            f"Size: {venue.size}",
            f"Avg price: {venue.avg_price}",
            f"Take profit: {take_profit if take_profit else '-'}",
            f"Stop loss: {stop_loss if stop_loss else '-'}",
            f"Trailing: {'yes' if trailing else 'no'}",
        ])

    def danger_close(self, candle: Candle, threshold: float) -> str:
        return (
            f"<b>🚨 ANOMALOUS VOLUME {self.symbol}</b>\n"
            f"Candle {_hhmm(candle.timestamp)} volume {candle.volume:,.2f} >= {threshold:,.0f}\n"
            f"Closing position"
        )

    def bot_started(self, mode: str, interval: str, volume_threshold: float, has_position: bool) -> str:
        return "\n".join([
            f"<b>🚀 BOT STARTED {self.symbol}</b>",
            f"Mode: {mode}",
            f"Interval: {interval}",
            f"Volume threshold: {volume_threshold:,.0f}",
            f"Position: {'adopted' if has_position else 'none'}",
            f"Time: {_hhmm(datetime.now(timezone.utc))}",
        ])

    def bot_stopped(self, has_position: bool) -> str:
        return (
            f"<b>🛑 BOT STOPPED {self.symbol}</b>\n"
            f"Open position left on exchange: {'yes' if has_position else 'no'}"
        )
