"""
Order Reconciler

Folds raw fills into a consolidated order: total filled amount,
volume-weighted average price, fees per currency, earliest date and status.

Every function here is pure. Nothing is mutated in place; each fold returns a
new ConsolidatedOrder, so one order can be updated from a REST history call
and a live fill stream without shared state.

Invariants:
    - amount_filled == sum of fill amounts
    - average_price == sum(price * amount) / sum(amount), exact Decimal math
    - order id, symbol and side agree across all fills
    - a fill whose trade_id was already folded is ignored
    - amount_filled never exceeds a known requested amount
    - the result does not depend on the order fills arrive in

Usage:
    order = open_order("123", "BTC-USD", OrderSide.BUY, amount=Decimal("2"))
    order = fold(order, fill)
    orders = group_by_order(history)
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Optional

from core.errors import IntegrityError
from core.schemas import ConsolidatedOrder, OrderSide, OrderStatus, RawFill


# Exchange-reported states that override anything derived from fills
TERMINAL_REPORTED_STATUSES = (OrderStatus.CANCELED, OrderStatus.ERROR, OrderStatus.UNKNOWN)


def open_order(
    order_id: str,
    symbol: str,
    side: OrderSide,
    amount: Optional[Decimal] = None,
    price: Optional[Decimal] = None,
    order_date: Optional[datetime] = None,
    reported_status: Optional[OrderStatus] = None,
    message: Optional[str] = None
) -> ConsolidatedOrder:
    """
    Seed an order with no fills, e.g. from a placement response.

    Example:
        >>> order = open_order("42", "BTC-USD", OrderSide.BUY, Decimal("2"), Decimal("100"))
        >>> order.status
        <OrderStatus.PENDING: 'pending'>
    """
    order = ConsolidatedOrder(
        order_id=order_id,
        symbol=symbol,
        side=side,
        amount=amount,
        price=price,
        order_date=order_date,
        reported_status=reported_status,
        message=message,
    )
    return order.model_copy(update={"status": derive_status(order)})


def derive_status(order: ConsolidatedOrder) -> OrderStatus:
    """Consolidated status from the reported state and the filled amount."""
    if order.reported_status in TERMINAL_REPORTED_STATUSES:
        return order.reported_status

    if order.amount_filled == 0:
        return OrderStatus.PENDING

    if order.amount is None or order.amount_filled == order.amount:
        return OrderStatus.FILLED

    return OrderStatus.FILLED_PARTIALLY


def _earliest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return min(current, candidate)


def fold(existing: Optional[ConsolidatedOrder], fill: RawFill) -> ConsolidatedOrder:
    """
    Fold one fill into an order.

    Args:
        existing: Order state so far, or None for the first fill
        fill: Exchange-reported fill

    Returns:
        New ConsolidatedOrder including the fill

    Raises:
        IntegrityError: If the fill belongs to another order, symbol or side,
                        or would push the filled amount past the requested one
    """
    if existing is None:
        existing = open_order(fill.order_id, fill.symbol, fill.side)

    if fill.order_id != existing.order_id:
        raise IntegrityError(f"Fill for order {fill.order_id} folded into order {existing.order_id}", raw=fill)
    if fill.symbol != existing.symbol:
        raise IntegrityError(
            f"Fill symbol {fill.symbol} does not match order {existing.order_id} symbol {existing.symbol}",
            raw=fill
        )
    if fill.side != existing.side:
        raise IntegrityError(
            f"Fill side {fill.side.value} does not match order {existing.order_id} side {existing.side.value}",
            raw=fill
        )

    if fill.trade_id is not None and fill.trade_id in existing.trade_ids:
        return existing

    amount_filled = existing.amount_filled + fill.amount
    if existing.amount is not None and amount_filled > existing.amount:
        raise IntegrityError(
            f"Order {existing.order_id} overfilled: {amount_filled} of {existing.amount}",
            raw=fill
        )

    total_cost = existing.total_cost + fill.price * fill.amount
    average_price = total_cost / amount_filled if amount_filled > 0 else Decimal("0")

    fees = dict(existing.fees)
    if fill.fee:
        currency = fill.fee_currency or ""
        fees[currency] = fees.get(currency, Decimal("0")) + fill.fee

    trade_ids = set(existing.trade_ids)
    if fill.trade_id is not None:
        trade_ids.add(fill.trade_id)

    folded = existing.model_copy(update={
        "amount_filled": amount_filled,
        "total_cost": total_cost,
        "average_price": average_price,
        "fees": fees,
        "trade_ids": trade_ids,
        "order_date": _earliest(existing.order_date, fill.timestamp),
    })
    return folded.model_copy(update={"status": derive_status(folded)})


def fold_all(fills: Iterable[RawFill], order: Optional[ConsolidatedOrder] = None) -> Optional[ConsolidatedOrder]:
    """
    Fold a batch of fills for one order.

    Returns the seed order unchanged for an empty batch (None if there is no seed).
    """
    for fill in fills:
        order = fold(order, fill)
    return order


def mark_reported_status(
    order: ConsolidatedOrder,
    status: OrderStatus,
    message: Optional[str] = None
) -> ConsolidatedOrder:
    """
    Record the state the exchange reports for the order.

    Canceled, error and unknown override the fill-derived status; pending,
    partial and filled reports defer to the fills actually seen.
    """
    update = {"reported_status": status}
    if message is not None:
        update["message"] = message

    marked = order.model_copy(update=update)
    return marked.model_copy(update={"status": derive_status(marked)})


def group_by_order(fills: Iterable[RawFill]) -> Dict[str, ConsolidatedOrder]:
    """
    Fold a mixed trade history into one order per order id.

    Requested amounts are unknown for such records, so every order with a
    fill is reported as filled.
    """
    orders: Dict[str, ConsolidatedOrder] = {}
    for fill in fills:
        orders[fill.order_id] = fold(orders.get(fill.order_id), fill)
    return orders
