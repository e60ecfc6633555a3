from __future__ import annotations

import logging
import os
import random
import time
from typing import Any, Callable, Iterable

from hedge_bot.config import BotConfig, SimulatorConfig
from hedge_bot.models import (
    Action,
    FailedOrder,
    FailureKind,
    FilledOrder,
    PendingOrder,
    PriceQuote,
    TradingDecision,
)
from hedge_bot.pricing import clamp

LOGGER = logging.getLogger("hedge_bot")


class SubmissionError(RuntimeError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def validate_decision(decision: TradingDecision, leg_ids: Iterable[str]) -> str:
    """Return an empty string for a well-formed decision, else the rejection reason."""
    if decision.leg_id not in set(leg_ids):
        return f"unknown leg {decision.leg_id!r}"
    if decision.action == Action.HOLD:
        return ""
    if not (0.0 < decision.price < 1.0):
        return f"price {decision.price} outside (0, 1)"
    if decision.size <= 0:
        return f"non-positive size {decision.size}"
    return ""


class BaseExecutor:
    def preflight(self) -> None:
        return

    def submit(self, decision: TradingDecision) -> str:
        raise NotImplementedError

    def cancel(self, order_id: str) -> bool:
        raise NotImplementedError

    def list_active(self) -> list[tuple[str, str]]:
        raise NotImplementedError


class SimulatedExchange(BaseExecutor):
    """
    In-memory exchange with delayed, probabilistic resolution.

    Orders wait `fill_delay_ms`, then roll for failure (invalid price,
    rejection, illiquidity) before rolling for a fill. Fills only count
    toward positions after `position_delay_ms`.
    """

    def __init__(
        self,
        config: SimulatorConfig,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.rng = rng if rng is not None else random.Random(config.seed)
        self.clock = clock
        self.pending: dict[str, PendingOrder] = {}
        self.filled: list[FilledOrder] = []
        self.failed: list[FailedOrder] = []
        self.quotes: dict[str, PriceQuote] = {}
        self._next_id = 0

    def update_quotes(self, quotes: dict[str, PriceQuote]) -> None:
        self.quotes.update(quotes)

    def _new_order_id(self) -> str:
        self._next_id += 1
        return f"sim-{self._next_id}"

    def fill_probability(self, price: float, ask: float) -> float:
        probability = self.config.fill_probability
        distance = abs(price - ask)
        if distance > 0.02:
            probability *= 0.5
        elif distance < 0.005:
            probability *= 1.2
        return clamp(probability, 0.30, 0.95)

    def submit(self, decision: TradingDecision, retry_count: int = 0) -> str:
        problem = validate_decision(decision, self.quotes.keys())
        if problem:
            raise SubmissionError(problem)
        if not decision.adds_risk:
            raise SubmissionError(f"action {decision.action.value} is not an order")
        ask = self.quotes[decision.leg_id].ask
        order = PendingOrder(
            order_id=self._new_order_id(),
            decision=decision,
            submitted_at=self.clock(),
            fill_probability=self.fill_probability(decision.price, ask),
            retry_count=retry_count,
        )
        self.pending[order.order_id] = order
        LOGGER.info(
            "sim order_submitted id=%s leg=%s price=%.4f size=%.2f fill_p=%.2f retry=%s",
            order.order_id,
            decision.leg_id,
            decision.price,
            decision.size,
            order.fill_probability,
            retry_count,
        )
        return order.order_id

    def cancel(self, order_id: str) -> bool:
        return self.pending.pop(order_id, None) is not None

    def list_active(self) -> list[tuple[str, str]]:
        return [(order.order_id, order.leg_id) for order in self.pending.values()]

    def has_pending(self, leg_id: str) -> bool:
        return any(order.leg_id == leg_id for order in self.pending.values())

    def _fail(self, order: PendingOrder, kind: FailureKind, detail: str, now: float) -> FailedOrder:
        retryable = kind != FailureKind.INVALID_PRICE and order.retry_count < self.config.max_retries
        failed = FailedOrder(
            order_id=order.order_id,
            decision=order.decision,
            kind=kind,
            detail=detail,
            failed_at=now,
            retry_count=order.retry_count,
            retryable=retryable,
        )
        self.failed.append(failed)
        LOGGER.warning(
            "sim order_failed id=%s leg=%s reason=%s retryable=%s",
            order.order_id,
            order.leg_id,
            failed.reason,
            retryable,
        )
        return failed

    def _resolve(self, order: PendingOrder, now: float) -> FilledOrder | FailedOrder:
        cfg = self.config
        decision = order.decision
        quote = self.quotes.get(decision.leg_id)
        ask = quote.ask if quote else decision.price

        distance = abs(decision.price - ask)
        if distance > cfg.invalid_price_distance and self.rng.random() < cfg.invalid_price_probability:
            return self._fail(
                order,
                FailureKind.INVALID_PRICE,
                f"price {decision.price:.4f} too far from market {ask:.4f}",
                now,
            )
        if self.rng.random() < cfg.rejection_probability:
            return self._fail(order, FailureKind.REJECTED, "order rejected by exchange", now)
        if decision.size > cfg.illiquid_size and self.rng.random() < cfg.illiquid_probability:
            return self._fail(
                order,
                FailureKind.INSUFFICIENT_LIQUIDITY,
                f"size {decision.size:.0f} exceeds available liquidity",
                now,
            )
        if self.rng.random() >= order.fill_probability:
            return self._fail(order, FailureKind.EXPIRED, "order not filled before expiry", now)

        slippage = 0.0
        if cfg.enable_slippage and cfg.max_slippage > 0:
            slippage = self.rng.uniform(-cfg.max_slippage, cfg.max_slippage)
        filled = FilledOrder(
            order_id=order.order_id,
            decision=decision,
            filled_price=clamp(decision.price + slippage, 0.01, 0.99),
            filled_size=decision.size,
            submitted_at=order.submitted_at,
            filled_at=now,
            retry_count=order.retry_count,
        )
        self.filled.append(filled)
        LOGGER.info(
            "sim order_filled id=%s leg=%s price=%.4f size=%.2f",
            filled.order_id,
            filled.leg_id,
            filled.filled_price,
            filled.filled_size,
        )
        return filled

    def resolve_pending(self, force: bool = False) -> list[FilledOrder | FailedOrder]:
        now = self.clock()
        delay = self.config.fill_delay_ms / 1000.0
        due = [order for order in self.pending.values() if force or now - order.submitted_at >= delay]
        due.sort(key=lambda order: order.submitted_at)
        resolved: list[FilledOrder | FailedOrder] = []
        for order in due:
            del self.pending[order.order_id]
            resolved.append(self._resolve(order, now))
        return resolved

    def retry_candidates(self) -> list[FailedOrder]:
        now = self.clock()
        delay = self.config.retry_delay_ms / 1000.0
        out: list[FailedOrder] = []
        for failed in self.failed:
            if failed.retried or not failed.retryable:
                continue
            if failed.retry_count >= self.config.max_retries:
                continue
            if now - failed.failed_at < delay:
                continue
            out.append(failed)
        return out

    def positions(self) -> dict[str, float]:
        now = self.clock()
        delay = self.config.position_delay_ms / 1000.0
        sizes: dict[str, float] = {leg_id: 0.0 for leg_id in self.quotes}
        for fill in self.filled:
            if now - fill.filled_at >= delay:
                sizes[fill.leg_id] = sizes.get(fill.leg_id, 0.0) + fill.filled_size
        return sizes

    def filled_totals(self) -> dict[str, tuple[float, float]]:
        """Per-leg (size, cost) over every fill, visible or not."""
        totals: dict[str, tuple[float, float]] = {}
        for fill in self.filled:
            size, cost = totals.get(fill.leg_id, (0.0, 0.0))
            totals[fill.leg_id] = (size + fill.filled_size, cost + fill.cost)
        return totals

    def spent(self) -> float:
        return sum(fill.cost for fill in self.filled)

    def reserve_cost(self, decision: TradingDecision) -> float:
        """Worst-case fill cost of a decision, slippage included."""
        price = decision.price
        if self.config.enable_slippage and self.config.max_slippage > 0:
            price = clamp(price + self.config.max_slippage, 0.01, 0.99)
        return price * decision.size

    def pending_cost(self) -> float:
        return sum(self.reserve_cost(order.decision) for order in self.pending.values())


class LiveExecutor(BaseExecutor):
    def __init__(self, config: BotConfig) -> None:
        self.config = config
        self.client = None
        self._bootstrap_done = False
        self._preflight_done = False
        self._signer_address = ""
        self._funder_address = ""
        self._signature_type = -1
        self._orders: dict[str, str] = {}

    @property
    def owner_address(self) -> str:
        return self._funder_address or self.config.poly_proxy_address.strip()

    @staticmethod
    def _normalize_address(address: str) -> str:
        return address.strip().lower()

    @staticmethod
    def _api_creds_from_env() -> dict[str, str] | None:
        key = (os.getenv("POLY_API_KEY") or os.getenv("CLOB_API_KEY") or "").strip()
        secret = (os.getenv("POLY_API_SECRET") or os.getenv("CLOB_API_SECRET") or "").strip()
        passphrase = (os.getenv("POLY_API_PASSPHRASE") or os.getenv("CLOB_API_PASSPHRASE") or "").strip()
        if key and secret and passphrase:
            return {"key": key, "secret": secret, "passphrase": passphrase}
        return None

    @staticmethod
    def _exception_payload(exc: Exception) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": exc.__class__.__name__,
            "error": str(exc),
        }
        for field in ("status_code", "error_msg"):
            if hasattr(exc, field):
                payload[field] = getattr(exc, field)
        return payload

    @staticmethod
    def _derive_api_creds_with_retry(client: Any, attempts: int = 4) -> Any:
        last_exc: Exception | None = None
        for attempt in range(max(1, attempts)):
            try:
                return client.create_or_derive_api_creds()
            except Exception as exc:  # pragma: no cover - live path
                last_exc = exc
                if attempt + 1 < attempts:
                    time.sleep(0.4 * (attempt + 1))
        if last_exc is not None:
            raise last_exc
        return None

    @classmethod
    def _pick_ci(cls, payload: dict[str, Any] | None, *keys: str) -> Any:
        if not isinstance(payload, dict):
            return None
        lowered = {str(k).lower(): v for k, v in payload.items()}
        for key in keys:
            if key.lower() in lowered:
                return lowered[key.lower()]
        for nested_key in ("order", "data", "result"):
            nested = lowered.get(nested_key)
            if isinstance(nested, dict):
                found = cls._pick_ci(nested, *keys)
                if found is not None:
                    return found
        return None

    @classmethod
    def _extract_order_id(cls, payload: dict[str, Any] | None) -> str:
        raw = cls._pick_ci(payload, "orderID", "orderId", "id")
        return str(raw) if raw else ""

    def _infer_signature_type(self, signer_address: str, funder_address: str) -> int:
        if self.config.poly_signature_type is not None:
            return int(self.config.poly_signature_type)
        if self._normalize_address(funder_address) != self._normalize_address(signer_address):
            # Proxy wallet funds the orders.
            return 1
        return 0

    def _bootstrap_client(self) -> None:
        if self._bootstrap_done:
            return
        if not self.config.poly_private_key:
            raise RuntimeError("Missing POLY_PRIVATE_KEY for live mode")

        from eth_account import Account
        from py_clob_client.client import ClobClient as PyClobClient

        signer_address = Account.from_key(self.config.poly_private_key).address
        funder_address = self.config.poly_proxy_address.strip() or signer_address
        signature_type = self._infer_signature_type(signer_address, funder_address)

        self.client = PyClobClient(
            host=self.config.clob_url,
            key=self.config.poly_private_key,
            chain_id=self.config.poly_chain_id,
            signature_type=signature_type,
            funder=funder_address,
        )
        self._signer_address = signer_address
        self._funder_address = funder_address
        self._signature_type = signature_type
        LOGGER.info(
            "live_auth signer=%s funder=%s signature_type=%s",
            self._signer_address,
            self._funder_address,
            self._signature_type,
        )
        try:
            creds = self._derive_api_creds_with_retry(self.client)
        except Exception as exc:
            creds = self._api_creds_from_env()
            if creds is None:
                raise RuntimeError(
                    "Unable to derive API credentials. "
                    f"signer={self._signer_address} funder={self._funder_address} "
                    f"error={self._exception_payload(exc)}"
                ) from exc
            LOGGER.warning("Using CLOB API creds from environment fallback after derive failure")
        if creds is None:
            raise RuntimeError("Unable to derive API credentials from wallet key")
        if isinstance(creds, dict):
            from py_clob_client.clob_types import ApiCreds

            creds = ApiCreds(api_key=creds["key"], api_secret=creds["secret"], api_passphrase=creds["passphrase"])
        self.client.set_api_creds(creds)
        self._bootstrap_done = True

    def preflight(self) -> None:
        self._bootstrap_client()
        if self._preflight_done:
            return
        last_exc: Exception | None = None
        for attempt in range(3):
            try:
                self.client.get_api_keys()
                self._preflight_done = True
                return
            except Exception as exc:  # pragma: no cover - live path
                last_exc = exc
                if attempt < 2:
                    time.sleep(0.6 * (attempt + 1))
        if last_exc is not None:
            raise RuntimeError(
                "Live auth preflight failed. Check POLY_PRIVATE_KEY/POLY_PROXY_ADDRESS. "
                f"error={self._exception_payload(last_exc)}"
            ) from last_exc

    def submit(self, decision: TradingDecision) -> str:
        if not decision.adds_risk:
            raise SubmissionError(f"action {decision.action.value} is not an order")
        self.preflight()
        from py_clob_client.clob_types import OrderArgs, OrderType

        try:
            order_args = OrderArgs(
                price=float(decision.price),
                size=float(decision.size),
                side="BUY",
                token_id=decision.leg_id,
            )
            signed_order = self.client.create_order(order_args)
            response = self.client.post_order(signed_order, OrderType.GTC)
        except Exception as exc:  # pragma: no cover - live path
            raise SubmissionError(str(self._exception_payload(exc))) from exc

        payload = response if isinstance(response, dict) else {}
        if payload.get("success") is False or payload.get("errorMsg"):
            raise SubmissionError(str(payload.get("errorMsg") or "order not accepted"))
        order_id = self._extract_order_id(payload)
        if not order_id:
            raise SubmissionError("order response carried no order id")
        self._orders[order_id] = decision.leg_id
        LOGGER.info(
            "live order_submitted id=%s leg=%s price=%.4f size=%.2f",
            order_id,
            decision.leg_id,
            decision.price,
            decision.size,
        )
        return order_id

    def cancel(self, order_id: str) -> bool:
        self._bootstrap_client()
        try:
            self.client.cancel(order_id)
        except Exception as exc:  # pragma: no cover - live path
            LOGGER.warning("live cancel_failed id=%s error=%s", order_id, exc)
            return False
        self._orders.pop(order_id, None)
        return True

    def list_active(self) -> list[tuple[str, str]]:
        self._bootstrap_client()
        try:
            orders = self.client.get_orders()
        except Exception as exc:  # pragma: no cover - live path
            LOGGER.warning("live list_active_failed error=%s", exc)
            return [(order_id, leg_id) for order_id, leg_id in self._orders.items()]
        active: list[tuple[str, str]] = []
        for item in orders or []:
            if not isinstance(item, dict):
                continue
            order_id = str(item.get("id") or "")
            leg_id = str(item.get("asset_id") or "")
            if order_id and leg_id:
                active.append((order_id, leg_id))
        self._orders = dict(active)
        return active
