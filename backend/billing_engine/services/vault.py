"""
Vault and tokenization manager.

Manages what sits behind a subscription's vault token: network
tokenization, the automatic card updater, and customer card replacement.
Card fields on Subscription are written here; status changes go through
SubscriptionLifecycle.
"""
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from billing_engine.core.config import BillingConfig
from billing_engine.core.exceptions import (
    BillingError,
    GatewayDeclineError,
    NotFoundError,
    StateConflictError,
    TokenizationIneligibleError,
    ValidationError,
)
from billing_engine.models import Subscription
from billing_engine.services.card_utils import (
    add_months,
    card_brand_from_number,
    digits_only,
    parse_expiry,
)
from billing_engine.services.gateway import CardDetails, GatewayResponse, NMIGateway
from billing_engine.services.lifecycle import ACTIVE, CANCELED, PAST_DUE, SubscriptionLifecycle
from billing_engine.services.transaction_processor import new_order_id

logger = logging.getLogger(__name__)

TRACKED_STATUSES = (ACTIVE, PAST_DUE)


@dataclass
class NetworkToken:
    network_token: str
    cryptogram: str


@dataclass
class CredentialRefreshResult:
    """Card updater outcome. updated=False means no newer card was on file."""

    updated: bool
    last_four: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    brand: Optional[str] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_card_near_expiration(
    exp_month: Optional[int],
    exp_year: Optional[int],
    months_ahead: int = 2,
    today: Optional[date] = None,
) -> bool:
    """True when the card's expiry month starts within ``months_ahead`` months (or has passed)."""
    if not exp_month or not exp_year:
        return False
    today = today or datetime.utcnow().date()
    horizon = add_months(datetime(today.year, today.month, today.day), months_ahead).date()
    return date(exp_year, exp_month, 1) <= horizon


class VaultManager:
    """Card-on-file maintenance for subscriptions."""

    def __init__(
        self,
        db: Session,
        gateway: NMIGateway,
        config: BillingConfig,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.lifecycle = SubscriptionLifecycle(db)

    def is_eligible_for_network_tokens(self, card_brand: Optional[str], card_bin: Optional[str]) -> bool:
        brand = (card_brand or "").lower()
        issuer_bin = card_bin or ""
        if brand not in self.config.network_token_brands:
            return False
        return not any(issuer_bin.startswith(b) for b in self.config.network_token_unsupported_bins)

    def is_card_near_expiration(
        self,
        exp_month: Optional[int],
        exp_year: Optional[int],
        months_ahead: Optional[int] = None,
        today: Optional[date] = None,
    ) -> bool:
        if months_ahead is None:
            months_ahead = self.config.card_expiry_lookahead_months
        return is_card_near_expiration(exp_month, exp_year, months_ahead, today or self.clock().date())

    # Network tokens

    def enable_network_tokenization(self, subscription_id) -> NetworkToken:
        """
        Request a network token for a subscription's vaulted card.

        Raises:
            NotFoundError: Unknown subscription
            StateConflictError: No vault token on file
            TokenizationIneligibleError: Brand or BIN not supported
            GatewayDeclineError: Gateway refused the request
        """
        subscription = self._get_subscription(subscription_id)
        if not subscription.vault_token:
            raise StateConflictError("No vault token found for subscription")
        if not self.is_eligible_for_network_tokens(subscription.card_brand, subscription.card_bin):
            raise TokenizationIneligibleError(
                "Card not eligible for network tokenization",
                data={"card_brand": subscription.card_brand},
            )

        logger.info(f"Enabling network tokenization for subscription {subscription.id}")
        reply = self.gateway.enable_network_token(subscription.vault_token)
        if not reply.approved:
            raise GatewayDeclineError(
                reply.response_text or "Network tokenization failed",
                data={"response_code": reply.response_code},
            )

        subscription.network_token_enabled = True
        subscription.network_token = reply.network_token or None
        self.db.commit()

        logger.info(f"Network tokenization enabled for subscription {subscription.id}")
        return NetworkToken(network_token=reply.network_token, cryptogram=reply.token_cryptogram)

    def batch_enable_network_tokens(self) -> Dict[str, Any]:
        """Tokenize every eligible active subscription that is not tokenized yet."""
        candidates = (
            self.db.query(Subscription)
            .filter(
                Subscription.status == ACTIVE,
                Subscription.network_token_enabled.is_(False),
                Subscription.vault_token.isnot(None),
            )
            .all()
        )
        eligible = [
            s for s in candidates if self.is_eligible_for_network_tokens(s.card_brand, s.card_bin)
        ]
        logger.info(f"Found {len(eligible)} eligible subscriptions for network tokenization")

        results = []
        for index, subscription in enumerate(eligible):
            if index:
                self.sleep(self.config.inter_charge_delay_seconds)
            try:
                self.enable_network_tokenization(subscription.id)
                results.append({"subscription_id": str(subscription.id), "status": "enabled"})
            except BillingError as e:
                self.db.rollback()
                logger.error(f"Network tokenization failed for subscription {subscription.id}: {e}")
                results.append(
                    {"subscription_id": str(subscription.id), "status": "error", "message": e.message}
                )

        return {
            "summary": {
                "eligible": len(eligible),
                "enabled": sum(1 for r in results if r["status"] == "enabled"),
                "errors": sum(1 for r in results if r["status"] == "error"),
            },
            "results": results,
        }

    # Card updater

    def request_credential_refresh(self, subscription: Subscription) -> CredentialRefreshResult:
        """
        Ask the automatic card updater for newer card data.

        "No update available" is a normal outcome, not an error.

        Raises:
            GatewayDeclineError: Gateway refused the refresh request
        """
        reply = self.gateway.refresh_credential(subscription.vault_token)
        if reply.approved:
            return self._refresh_result(reply)
        if reply.no_update_available:
            return CredentialRefreshResult(updated=False, message="No card update available")
        raise GatewayDeclineError(
            reply.response_text or "Card update request failed",
            data={"response_code": reply.response_code},
        )

    def run_card_updater(
        self,
        subscription_ids: Optional[Iterable] = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        Sweep subscriptions through the automatic card updater.

        Without explicit ids, picks active and past-due subscriptions whose
        card is near expiry, that are past due, or all of them when forced.
        One failure never aborts the sweep.
        """
        if subscription_ids:
            ids = list(subscription_ids)
            found = {
                s.id: s for s in self.db.query(Subscription).filter(Subscription.id.in_(ids)).all()
            }
            targets = [(sid, found.get(sid)) for sid in ids]
        else:
            tracked = (
                self.db.query(Subscription)
                .filter(
                    Subscription.status.in_(TRACKED_STATUSES),
                    Subscription.auto_card_updater_enabled.is_(True),
                )
                .all()
            )
            targets = [
                (s.id, s)
                for s in tracked
                if force
                or s.status == PAST_DUE
                or self.is_card_near_expiration(s.card_exp_month, s.card_exp_year)
            ]

        logger.info(f"Running card updater for {len(targets)} subscriptions")

        results: List[Dict[str, Any]] = []
        for index, (subscription_id, subscription) in enumerate(targets):
            if subscription is None or not subscription.vault_token:
                results.append(
                    {
                        "subscription_id": str(subscription_id),
                        "status": "error",
                        "message": "Invalid subscription or missing vault token",
                    }
                )
                continue

            if index:
                self.sleep(self.config.card_updater_delay_seconds)

            try:
                refresh = self.request_credential_refresh(subscription)
                if refresh.updated:
                    self._apply_refresh(subscription, refresh)
                    results.append(
                        {
                            "subscription_id": str(subscription.id),
                            "status": "updated",
                            "updated_card": {
                                "last_four": refresh.last_four,
                                "exp_month": refresh.exp_month,
                                "exp_year": refresh.exp_year,
                            },
                        }
                    )
                else:
                    results.append(
                        {
                            "subscription_id": str(subscription.id),
                            "status": "no_update",
                            "message": refresh.message,
                        }
                    )
            except BillingError as e:
                self.db.rollback()
                logger.error(f"Card update failed for subscription {subscription.id}: {e}")
                results.append(
                    {"subscription_id": str(subscription.id), "status": "error", "message": e.message}
                )

        summary = {
            "total": len(targets),
            "updated": sum(1 for r in results if r["status"] == "updated"),
            "no_update": sum(1 for r in results if r["status"] == "no_update"),
            "errors": sum(1 for r in results if r["status"] == "error"),
        }
        logger.info(
            f"Card updater complete: {summary['updated']} updated, "
            f"{summary['no_update']} no update, {summary['errors']} errors"
        )
        return {"summary": summary, "results": results}

    def update_card(self, subscription_id, card: CardDetails) -> Subscription:
        """
        Replace the card behind a subscription's vault token (customer-initiated).

        Raises:
            ValidationError: Bad card data
            NotFoundError: Unknown subscription
            StateConflictError: Canceled or tokenless subscription
            GatewayDeclineError: Gateway rejected the new card
        """
        number = digits_only(card.number)
        if len(number) < 12 or len(number) > 19:
            raise ValidationError("Card number must be 12-19 digits")
        card.number = number
        try:
            exp_month, exp_year = parse_expiry(card.exp)
        except ValueError as e:
            raise ValidationError(str(e))

        subscription = self._get_subscription(subscription_id, lock=True)
        if subscription.status == CANCELED:
            raise StateConflictError("Canceled subscriptions cannot be updated")
        if not subscription.vault_token:
            raise StateConflictError("No vault token found for subscription")

        order_id = new_order_id("CUP")
        logger.info(
            f"Updating card for subscription {subscription.id} order={order_id} card=****{card.last_four}"
        )
        reply = self.gateway.update_vault_customer(subscription.vault_token, card, order_id)
        if not reply.approved:
            raise GatewayDeclineError(
                reply.response_text or "Card update failed",
                data={"order_id": order_id, "response_code": reply.response_code},
            )

        now = self.clock()
        subscription.card_last_four = card.last_four
        subscription.card_brand = card_brand_from_number(number)
        subscription.card_bin = card.bin
        subscription.card_exp_month = exp_month
        subscription.card_exp_year = exp_year
        subscription.card_updated_at = now
        self.lifecycle.record_credential_update(subscription, now)
        self.db.commit()
        self.db.refresh(subscription)
        return subscription

    # Reports

    def tokenization_status(self) -> Dict[str, Any]:
        subscriptions = self._tracked_subscriptions()
        brands = Counter(s.card_brand for s in subscriptions)
        updated = [s.card_updated_at for s in subscriptions if s.card_updated_at]
        return {
            "total_subscriptions": len(subscriptions),
            "network_tokens_enabled": sum(1 for s in subscriptions if s.network_token_enabled),
            "auto_updater_enabled": sum(1 for s in subscriptions if s.auto_card_updater_enabled),
            "cards_near_expiration": sum(
                1 for s in subscriptions if self.is_card_near_expiration(s.card_exp_month, s.card_exp_year)
            ),
            "by_card_brand": {b: brands.get(b, 0) for b in ("visa", "mastercard", "amex", "discover")},
            "last_updater_run": max(updated).isoformat() if updated else None,
        }

    def expiration_report(self, months_ahead: int = 3) -> Dict[str, Any]:
        if months_ahead < 0:
            raise ValidationError("months_ahead must not be negative")

        subscriptions = self._tracked_subscriptions()
        expiring = [
            s
            for s in subscriptions
            if self.is_card_near_expiration(s.card_exp_month, s.card_exp_year, months_ahead)
        ]

        by_month: Dict[str, int] = {}
        by_brand: Dict[str, int] = {}
        for s in expiring:
            key = f"{s.card_exp_year}-{s.card_exp_month:02d}"
            by_month[key] = by_month.get(key, 0) + 1
            brand = s.card_brand or "unknown"
            by_brand[brand] = by_brand.get(brand, 0) + 1

        return {
            "report": {
                "total_active_subscriptions": len(subscriptions),
                "cards_expiring_soon": len(expiring),
                "months_ahead": months_ahead,
                "by_month": by_month,
                "by_brand": by_brand,
            },
            "expiring_subscriptions": [
                {
                    "id": str(s.id),
                    "customer_id": str(s.customer_id),
                    "card_last_four": s.card_last_four,
                    "card_brand": s.card_brand,
                    "exp_month": s.card_exp_month,
                    "exp_year": s.card_exp_year,
                }
                for s in expiring
            ],
        }

    # Helpers

    def _get_subscription(self, subscription_id, lock: bool = False) -> Subscription:
        query = self.db.query(Subscription).filter(Subscription.id == subscription_id)
        if lock:
            query = query.with_for_update()
        subscription = query.first()
        if subscription is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    def _tracked_subscriptions(self) -> List[Subscription]:
        return self.db.query(Subscription).filter(Subscription.status.in_(TRACKED_STATUSES)).all()

    def _refresh_result(self, reply: GatewayResponse) -> CredentialRefreshResult:
        exp_month = exp_year = None
        if reply.cc_exp:
            try:
                exp_month, exp_year = parse_expiry(reply.cc_exp)
            except ValueError:
                logger.warning(f"Card updater returned unparseable expiry {reply.cc_exp!r}")
        number = digits_only(reply.cc_number)
        return CredentialRefreshResult(
            updated=True,
            last_four=number[-4:] or None,
            exp_month=exp_month,
            exp_year=exp_year,
            brand=(reply.cc_type or "").lower() or None,
            message="Card information updated",
        )

    def _apply_refresh(self, subscription: Subscription, refresh: CredentialRefreshResult) -> None:
        now = self.clock()
        subscription.card_last_four = refresh.last_four or subscription.card_last_four
        subscription.card_exp_month = refresh.exp_month or subscription.card_exp_month
        subscription.card_exp_year = refresh.exp_year or subscription.card_exp_year
        subscription.card_brand = refresh.brand or subscription.card_brand
        subscription.card_updated_at = now
        if subscription.status == PAST_DUE:
            self.lifecycle.record_credential_update(subscription, now)
        self.db.commit()
        logger.info(f"Card updated for subscription {subscription.id}")
