"""
Transaction processor.

Executes single charge attempts against the gateway:
- charge_initial: CIT sale that vaults the card and opens the subscription
- charge_recurring: MIT sale against the vault token, with retry handling
- resolve_reconciliation: close out attempts whose outcome was unknown

Every gateway reply is persisted as a Transaction in the same commit as the
subscription change it causes.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from billing_engine.core.config import BillingConfig
from billing_engine.core.exceptions import (
    GatewayDeclineError,
    GatewayUnavailableError,
    NotFoundError,
    StateConflictError,
    ValidationError,
    VaultTokenMissingError,
)
from billing_engine.db.base import run_in_transaction
from billing_engine.models import (
    Customer,
    Plan,
    ReconciliationItem,
    Subscription,
    Transaction,
)
from billing_engine.services.card_utils import (
    card_brand_from_number,
    digits_only,
    parse_expiry,
)
from billing_engine.services.decline_classifier import DeclineClassification, classify
from billing_engine.services.descriptor_policy import DescriptorPolicy, validate_base
from billing_engine.services.gateway import CardDetails, GatewayResponse, NMIGateway
from billing_engine.services.insights import (
    DeclineEvent,
    InsightPublisher,
    NullInsightPublisher,
    retry_stage_for,
)
from billing_engine.services.lifecycle import ACTIVE, CANCELED, SubscriptionLifecycle
from billing_engine.services.retry_scheduler import RetryDecision, RetryScheduler

logger = logging.getLogger(__name__)

# Reconciliation note for an approved CIT that created no subscription
NO_VAULT_TOKEN = "no_vault_token"


def new_order_id(prefix: str) -> str:
    """Unique per attempt, so a duplicate submission is distinguishable at the gateway."""
    return f"{prefix}-{uuid.uuid4()}"


@dataclass
class CustomerIdentity:
    email: str
    name: str


@dataclass
class RetryContext:
    """Context handed over by the retry run for a scheduled attempt."""

    attempt: int
    descriptor_suffix: str = ""


@dataclass
class ChargeResult:
    """Outcome of one charge attempt."""

    transaction: Transaction
    subscription: Optional[Subscription] = None
    classification: Optional[DeclineClassification] = None
    decision: Optional[RetryDecision] = None
    reconciliation: Optional[ReconciliationItem] = None

    @property
    def outcome(self) -> str:
        return self.transaction.status

    @property
    def approved(self) -> bool:
        return self.transaction.status == "approved"

    @property
    def message(self) -> str:
        if self.approved:
            return "Payment processed successfully"
        return self.transaction.response_text or "Payment declined"

    def to_dict(self) -> Dict[str, Any]:
        txn = self.transaction
        data: Dict[str, Any] = {
            "transaction": {
                "id": str(txn.id),
                "order_id": txn.order_id,
                "gateway_transaction_id": txn.gateway_transaction_id,
                "status": txn.status,
                "amount": txn.amount,
                "auth_code": txn.auth_code,
                "response_code": txn.response_code,
                "response_text": txn.response_text,
                "descriptor": txn.descriptor,
                "retry_attempt": txn.retry_attempt,
                "subscription_id": str(txn.subscription_id) if txn.subscription_id else None,
            },
        }
        if self.subscription is not None:
            sub = self.subscription
            data["subscription"] = {
                "id": str(sub.id),
                "status": sub.status,
                "retries": sub.retries,
                "next_bill_at": sub.next_bill_at.isoformat() if sub.next_bill_at else None,
            }
        if self.classification is not None:
            data["decline_category"] = self.classification.category
            data["decline_analysis"] = self.classification.to_dict()
        if not self.approved:
            retry_at = self.decision.retry_at if self.decision else None
            data["retry_scheduled"] = bool(self.decision and self.decision.will_retry)
            data["next_retry_at"] = retry_at.isoformat() if retry_at else None
        if self.decision is not None:
            data["retry_decision"] = self.decision.to_dict()
        return data

    def raise_for_decline(self) -> "ChargeResult":
        """Raise GatewayDeclineError unless the charge was approved."""
        if self.approved:
            return self
        raise GatewayDeclineError(
            self.message,
            transaction=self.transaction,
            classification=self.classification,
            decision=self.decision,
            data=self.to_dict(),
        )


class TransactionProcessor:
    """Runs CIT and MIT charges and records their outcome."""

    def __init__(
        self,
        db: Session,
        gateway: NMIGateway,
        config: BillingConfig,
        publisher: Optional[InsightPublisher] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.publisher = publisher or NullInsightPublisher()
        self.clock = clock
        self.descriptors = DescriptorPolicy(config)
        self.scheduler = RetryScheduler(config, self.descriptors)
        self.lifecycle = SubscriptionLifecycle(db)

    # CIT

    def charge_initial(self, identity: CustomerIdentity, plan_id, card: CardDetails) -> ChargeResult:
        """
        First charge for a new subscription (customer-initiated).

        Vaults the card with the sale. The subscription is created only when
        the sale is approved and the gateway returned a vault token.

        Raises:
            ValidationError: Missing/invalid customer, plan or card data
            GatewayUnavailableError: Outcome unknown; queued for reconciliation
            VaultTokenMissingError: Approved without a vault token; queued for reconciliation
            StoreError: The outcome could not be persisted
        """
        plan = self._validate_initial(identity, plan_id, card)
        customer = self._resolve_customer(identity)

        order_id = new_order_id("CIT")
        descriptor = self.descriptors.build(0)
        card_brand = card_brand_from_number(card.number)
        exp_month, exp_year = parse_expiry(card.exp)

        logger.info(
            f"Processing CIT charge order={order_id} customer={customer.id} "
            f"plan={plan.id} card=****{card.last_four}"
        )

        try:
            reply = self.gateway.create_vault_customer(
                card=card,
                amount=plan.amount,
                order_id=order_id,
                descriptor=descriptor,
                email=identity.email,
                name=identity.name,
                customer_ref=str(customer.id),
            )
        except GatewayUnavailableError as e:
            self._record_unknown_outcome(
                e,
                order_id=order_id,
                customer_id=customer.id,
                subscription_id=None,
                amount=plan.amount,
                initiator="customer",
                recurring="initial",
                descriptor=descriptor,
                retry_attempt=0,
                issuer_bin=card.bin,
            )
            raise

        classification = None if reply.approved else classify(reply.response_code, reply.response_text)

        def work(db: Session) -> ChargeResult:
            txn = self._build_transaction(
                reply,
                order_id=order_id,
                customer_id=customer.id,
                subscription_id=None,
                amount=plan.amount,
                initiator="customer",
                recurring="initial",
                descriptor=descriptor,
                retry_attempt=0,
                issuer_bin=card.bin,
                classification=classification,
            )
            db.add(txn)

            subscription = None
            if reply.approved and reply.vault_token:
                subscription = Subscription(
                    id=uuid.uuid4(),
                    customer_id=customer.id,
                    plan_id=plan.id,
                    amount=plan.amount,
                    interval=plan.interval,
                    vault_token=reply.vault_token,
                    card_last_four=card.last_four,
                    card_brand=card_brand,
                    card_bin=card.bin,
                    card_exp_month=exp_month,
                    card_exp_year=exp_year,
                    auto_card_updater_enabled=True,
                    network_token_enabled=False,
                )
                self.lifecycle.open(subscription, self.clock())
                db.add(subscription)
                # Parent rows first: the models declare no relationships to order inserts by
                db.flush()
                txn.subscription_id = subscription.id
                return ChargeResult(transaction=txn, subscription=subscription)

            item = None
            if reply.approved:
                db.flush()
                item = ReconciliationItem(
                    id=uuid.uuid4(),
                    transaction_id=txn.id,
                    subscription_id=None,
                    order_id=order_id,
                    status="pending",
                    note=NO_VAULT_TOKEN,
                )
                db.add(item)
            return ChargeResult(transaction=txn, classification=classification, reconciliation=item)

        result = run_in_transaction(self.db, work, f"CIT transaction {order_id}")

        if result.subscription is not None:
            logger.info(f"CIT approved order={order_id}; subscription {result.subscription.id} created")
        elif result.reconciliation is not None:
            item = result.reconciliation
            logger.error(
                f"CIT approved order={order_id} but no vault token returned; "
                f"reconciliation item {item.id} opened"
            )
            data = result.to_dict()
            data.update(
                {
                    "order_id": order_id,
                    "reconciliation_id": str(item.id),
                    "requires_reconciliation": True,
                }
            )
            raise VaultTokenMissingError(
                "Payment approved but no vault token was returned",
                order_id=order_id,
                data=data,
            )
        else:
            logger.info(f"CIT declined order={order_id}: {reply.response_code} {reply.response_text}")
            self._publish_decline(result.transaction, card_brand)

        return result

    # MIT

    def charge_recurring(
        self,
        subscription_id,
        retry_context: Optional[RetryContext] = None,
        force_descriptor: Optional[str] = None,
    ) -> ChargeResult:
        """
        Recurring charge against the stored vault token (merchant-initiated).

        Raises:
            NotFoundError: Unknown subscription
            StateConflictError: Not active, paused, tokenless or awaiting reconciliation
            GatewayUnavailableError: Outcome unknown; queued for reconciliation
            StoreError: The outcome could not be persisted
        """
        subscription = self._lock_subscription(subscription_id)
        self._check_chargeable(subscription)

        order_id = new_order_id("MIT")
        retry_attempt = subscription.retries
        descriptor = self._descriptor_for(subscription, retry_context, force_descriptor)

        logger.info(
            f"Processing MIT charge order={order_id} subscription={subscription.id} "
            f"retry_attempt={retry_attempt} descriptor={descriptor!r}"
        )

        try:
            reply = self.gateway.charge(
                vault_token=subscription.vault_token,
                amount=subscription.amount,
                order_id=order_id,
                descriptor=descriptor,
                customer_ref=str(subscription.customer_id),
                initiator="merchant",
                recurring="subsequent",
            )
        except GatewayUnavailableError as e:
            self._record_unknown_outcome(
                e,
                order_id=order_id,
                customer_id=subscription.customer_id,
                subscription_id=subscription.id,
                amount=subscription.amount,
                initiator="merchant",
                recurring="subsequent",
                descriptor=descriptor,
                retry_attempt=retry_attempt,
                issuer_bin=subscription.card_bin,
            )
            raise

        classification = None if reply.approved else classify(reply.response_code, reply.response_text)

        def work(db: Session) -> ChargeResult:
            now = self.clock()
            txn = self._build_transaction(
                reply,
                order_id=order_id,
                customer_id=subscription.customer_id,
                subscription_id=subscription.id,
                amount=subscription.amount,
                initiator="merchant",
                recurring="subsequent",
                descriptor=descriptor,
                retry_attempt=retry_attempt,
                issuer_bin=subscription.card_bin,
                classification=classification,
            )
            db.add(txn)

            if reply.approved:
                self.lifecycle.record_success(subscription, now)
                return ChargeResult(transaction=txn, subscription=subscription)

            decision = self.scheduler.decide(subscription, classification, reply.response_code, now)
            self.lifecycle.record_decline(subscription, decision, now)
            return ChargeResult(
                transaction=txn,
                subscription=subscription,
                classification=classification,
                decision=decision,
            )

        result = run_in_transaction(self.db, work, f"MIT transaction {order_id}")

        if result.approved:
            logger.info(f"MIT approved order={order_id} subscription={subscription.id}")
        else:
            logger.info(
                f"MIT declined order={order_id} subscription={subscription.id}: "
                f"{reply.response_code} {reply.response_text} -> {result.decision.action}"
            )
            self._publish_decline(result.transaction, subscription.card_brand)

        return result

    def manual_retry(self, subscription_id, force_descriptor: Optional[str] = None) -> ChargeResult:
        """Operator-triggered charge outside the schedule."""
        logger.info(f"Manual retry requested for subscription {subscription_id}")
        return self.charge_recurring(subscription_id, force_descriptor=force_descriptor)

    # Reconciliation

    def list_pending_reconciliations(self) -> List[ReconciliationItem]:
        return (
            self.db.query(ReconciliationItem)
            .filter(ReconciliationItem.status == "pending")
            .order_by(ReconciliationItem.created_at)
            .all()
        )

    def resolve_reconciliation(self, item_id, charged: bool, note: Optional[str] = None) -> ReconciliationItem:
        """
        Close a reconciliation item once the real gateway outcome is known.

        charged=True applies the success transition (the customer paid);
        charged=False only releases the subscription for the next run.
        A subscription canceled in the meantime stays canceled; the item is
        still closed so the confirmed charge is on record.
        """
        item = self.db.query(ReconciliationItem).filter(ReconciliationItem.id == item_id).first()
        if item is None:
            raise NotFoundError(f"Reconciliation item not found: {item_id}")
        if item.status != "pending":
            raise StateConflictError("Reconciliation item is already resolved")

        now = self.clock()
        subscription = None
        if item.subscription_id is not None:
            subscription = self._lock_subscription(item.subscription_id)

        if charged and subscription is not None:
            if subscription.status == CANCELED:
                logger.warning(
                    f"Order {item.order_id} confirmed charged after subscription "
                    f"{subscription.id} was canceled; subscription left canceled"
                )
            else:
                self.lifecycle.record_success(subscription, now)

        item.status = "resolved"
        item.resolution = "charged" if charged else "not_charged"
        if note is not None:
            item.note = note
        item.resolved_at = now
        self.db.commit()

        logger.info(f"Reconciliation {item.id} for order {item.order_id} resolved as {item.resolution}")
        return item

    # Helpers

    def _validate_initial(self, identity: CustomerIdentity, plan_id, card: CardDetails) -> Plan:
        if not identity.email or "@" not in identity.email:
            raise ValidationError("A valid customer email is required")
        if not identity.name or not identity.name.strip():
            raise ValidationError("Customer name is required")

        number = digits_only(card.number)
        if len(number) < 12 or len(number) > 19:
            raise ValidationError("Card number must be 12-19 digits")
        card.number = number
        try:
            parse_expiry(card.exp)
        except ValueError as e:
            raise ValidationError(str(e))

        plan = self.db.query(Plan).filter(Plan.id == plan_id).first()
        if plan is None or not plan.is_active:
            raise ValidationError("Invalid plan ID")
        if plan.interval not in ("monthly", "yearly"):
            raise ValidationError(f"Plan has unsupported interval: {plan.interval}")
        return plan

    def _resolve_customer(self, identity: CustomerIdentity) -> Customer:
        email = identity.email.strip().lower()
        customer = self.db.query(Customer).filter(Customer.email == email).first()
        if customer is None:
            customer = Customer(email=email, name=identity.name.strip())
            self.db.add(customer)
            self.db.commit()
            self.db.refresh(customer)
            logger.info(f"Created customer {customer.id}")
        return customer

    def _lock_subscription(self, subscription_id) -> Subscription:
        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .with_for_update()
            .first()
        )
        if subscription is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    def _check_chargeable(self, subscription: Subscription) -> None:
        if subscription.status != ACTIVE:
            raise StateConflictError(f"Subscription is not active (status={subscription.status})")
        if subscription.paused_at is not None:
            raise StateConflictError("Subscription is paused")
        if not subscription.vault_token:
            raise StateConflictError("No vault token found for subscription")

        pending = (
            self.db.query(ReconciliationItem.id)
            .filter(
                ReconciliationItem.subscription_id == subscription.id,
                ReconciliationItem.status == "pending",
            )
            .first()
        )
        if pending is not None:
            raise StateConflictError("Subscription has an unreconciled charge attempt")

    def _descriptor_for(
        self,
        subscription: Subscription,
        retry_context: Optional[RetryContext],
        force_descriptor: Optional[str],
    ) -> str:
        if force_descriptor:
            return validate_base(force_descriptor)
        if retry_context is not None:
            return self.descriptors.compose(retry_context.descriptor_suffix or "")

        category = None
        if subscription.retries > 0:
            last = (
                self.db.query(Transaction.decline_category)
                .filter(
                    Transaction.subscription_id == subscription.id,
                    Transaction.status != "approved",
                )
                .order_by(Transaction.created_at.desc())
                .first()
            )
            category = last[0] if last else None
        return self.descriptors.build(subscription.retries, category, subscription.card_brand)

    def _build_transaction(
        self,
        reply: GatewayResponse,
        classification: Optional[DeclineClassification],
        **fields,
    ) -> Transaction:
        return Transaction(
            id=uuid.uuid4(),
            gateway_transaction_id=reply.transaction_id or None,
            status=reply.transaction_status,
            response_code=reply.response_code or reply.response,
            response_text=reply.response_text,
            auth_code=reply.auth_code or None,
            decline_category=classification.category if classification else None,
            created_at=self.clock(),
            **fields,
        )

    def _record_unknown_outcome(self, error: GatewayUnavailableError, **fields) -> None:
        """Persist an error transaction and open a reconciliation item. Subscription state is untouched."""

        def work(db: Session) -> ReconciliationItem:
            txn = Transaction(
                id=uuid.uuid4(),
                status="error",
                response_code=None,
                response_text=error.message,
                decline_category=None,
                created_at=self.clock(),
                **fields,
            )
            db.add(txn)
            db.flush()
            item = ReconciliationItem(
                id=uuid.uuid4(),
                transaction_id=txn.id,
                subscription_id=fields.get("subscription_id"),
                order_id=fields["order_id"],
                status="pending",
            )
            db.add(item)
            return item

        item = run_in_transaction(self.db, work, f"unknown-outcome transaction {fields['order_id']}")
        logger.error(
            f"Gateway outcome unknown for order {fields['order_id']}; "
            f"reconciliation item {item.id} opened"
        )
        error.data.update(
            {
                "order_id": fields["order_id"],
                "reconciliation_id": str(item.id),
                "requires_reconciliation": True,
            }
        )

    def _publish_decline(self, txn: Transaction, card_brand: Optional[str]) -> None:
        try:
            self.publisher.publish(
                DeclineEvent(
                    day=txn.created_at.date().isoformat(),
                    response_code=txn.response_code or "",
                    response_text=txn.response_text or "",
                    card_brand=card_brand or "unknown",
                    retry_stage=retry_stage_for(txn.retry_attempt),
                )
            )
        except Exception as e:
            logger.warning(f"Decline insight for order {txn.order_id} not published: {e}")
