"""
Payment gateway adapter (NMI Direct Post API).

Requests and replies are both form-encoded key/value pairs. Replies are
decoded once, by decode_gateway_response, into a typed GatewayResponse;
nothing downstream looks at raw keys. ``response == "1"`` is the only success
signal, so absent or malformed bodies read as failures.

Transport failures (timeouts, connection errors, 5xx) raise
GatewayUnavailableError because the outcome of the charge is unknown.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import parse_qs

import httpx

from billing_engine.core.config import Settings
from billing_engine.core.exceptions import GatewayUnavailableError

logger = logging.getLogger(__name__)

RESPONSE_APPROVED = "1"
RESPONSE_DECLINED = "2"
RESPONSE_ERROR = "3"

NO_UPDATE_MARKER = "no update available"


@dataclass
class CardDetails:
    """Raw card data. Lives only for the duration of a CIT request."""

    number: str
    exp: str  # MMYY
    cvv: str = ""
    zip: str = ""

    @property
    def last_four(self) -> str:
        return self.number[-4:]

    @property
    def bin(self) -> str:
        return self.number[:6]

    def __repr__(self):
        return f"<CardDetails(last_four={self.last_four}, exp={self.exp})>"


@dataclass
class GatewayResponse:
    """Typed view of a gateway reply."""

    response: str
    response_text: str = ""
    response_code: str = ""
    auth_code: str = ""
    transaction_id: str = ""
    order_id: str = ""
    vault_token: str = ""
    network_token: str = ""
    token_cryptogram: str = ""
    cc_number: str = ""
    cc_exp: str = ""
    cc_type: str = ""
    raw: Dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def approved(self) -> bool:
        return self.response == RESPONSE_APPROVED

    @property
    def declined(self) -> bool:
        return not self.approved

    @property
    def transaction_status(self) -> str:
        """Transaction.status for this reply: approved, declined or error."""
        if self.approved:
            return "approved"
        if self.response == RESPONSE_DECLINED:
            return "declined"
        return "error"

    @property
    def no_update_available(self) -> bool:
        return NO_UPDATE_MARKER in self.response_text.lower()


def decode_gateway_response(body: Optional[str]) -> GatewayResponse:
    """
    Decode a form-encoded gateway reply.

    Unknown keys are kept in ``raw`` only. A body without a ``response`` key
    decodes to an error reply rather than raising.
    """
    parsed = parse_qs(body or "", keep_blank_values=True)
    values = {key: items[0] for key, items in parsed.items() if items}

    response = values.get("response", "").strip()
    if response not in (RESPONSE_APPROVED, RESPONSE_DECLINED, RESPONSE_ERROR):
        logger.warning(f"Malformed gateway reply (response={response!r})")
        response = RESPONSE_ERROR
        values.setdefault("responsetext", "Malformed gateway response")

    return GatewayResponse(
        response=response,
        response_text=values.get("responsetext", ""),
        response_code=values.get("response_code", ""),
        auth_code=values.get("authcode", ""),
        transaction_id=values.get("transactionid", ""),
        order_id=values.get("orderid", ""),
        vault_token=values.get("customer_vault_id", ""),
        network_token=values.get("network_token", ""),
        token_cryptogram=values.get("token_cryptogram", ""),
        cc_number=values.get("cc_number", ""),
        cc_exp=values.get("cc_exp", ""),
        cc_type=values.get("cc_type", ""),
        raw=values,
    )


def format_amount(amount: int) -> str:
    """Minor units to the gateway's decimal string (1999 -> '19.99')."""
    return f"{amount // 100}.{amount % 100:02d}"


class NMIGateway:
    """
    Card-vault gateway client.

    Connects to the NMI transact endpoint with a security key (or legacy
    username/password) and returns decoded GatewayResponse objects.
    """

    def __init__(
        self,
        api_url: str,
        security_key: str = "",
        username: str = "",
        password: str = "",
        currency: str = "USD",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the gateway client.

        Args:
            api_url: transact.php endpoint
            security_key: Gateway API security key (preferred)
            username: Legacy username, used when no security key is set
            password: Legacy password
            currency: ISO currency code sent with charges
            timeout: Request timeout in seconds
            client: Pre-built httpx client (tests inject a MockTransport one)
        """
        self.api_url = api_url
        self.security_key = security_key
        self.username = username
        self.password = password
        self.currency = currency
        self.client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, s: Settings) -> "NMIGateway":
        return cls(
            api_url=s.nmi_api_url,
            security_key=s.nmi_security_key,
            username=s.nmi_username,
            password=s.nmi_password,
            currency=s.currency,
            timeout=s.nmi_timeout_seconds,
        )

    def _credentials(self) -> Dict[str, str]:
        if self.security_key:
            return {"security_key": self.security_key}
        return {"username": self.username, "password": self.password}

    def _post(self, params: Dict[str, str], order_id: Optional[str] = None) -> GatewayResponse:
        payload = {**self._credentials(), **{k: v for k, v in params.items() if v is not None}}
        start_time = time.time()

        try:
            response = self.client.post(
                self.api_url,
                data=payload,
                headers={"User-Agent": "RecurringBillingEngine/1.0"},
            )
        except httpx.TimeoutException as e:
            logger.error(f"Gateway timeout (order={order_id}): {e}")
            raise GatewayUnavailableError(
                "Payment gateway timed out", order_id=order_id, timed_out=True
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Gateway transport error (order={order_id}): {e}")
            raise GatewayUnavailableError(
                f"Payment gateway unreachable: {e}", order_id=order_id
            ) from e

        if response.status_code >= 500:
            logger.error(f"Gateway returned HTTP {response.status_code} (order={order_id})")
            raise GatewayUnavailableError(
                f"Payment gateway error: HTTP {response.status_code}", order_id=order_id
            )

        decoded = decode_gateway_response(response.text)
        logger.info(
            f"Gateway reply order={order_id} response={decoded.response} "
            f"code={decoded.response_code} in {time.time() - start_time:.2f}s"
        )
        return decoded

    def create_vault_customer(
        self,
        card: CardDetails,
        amount: int,
        order_id: str,
        descriptor: str,
        email: str,
        name: str,
        customer_ref: str,
    ) -> GatewayResponse:
        """CIT sale that also stores the card in the customer vault."""
        first_name, _, last_name = name.partition(" ")
        return self._post(
            {
                "type": "sale",
                "amount": format_amount(amount),
                "currency": self.currency,
                "payment": "creditcard",
                "orderid": order_id,
                "ccnumber": card.number,
                "ccexp": card.exp,
                "cvv": card.cvv,
                "zip": card.zip,
                "customer_vault": "add_customer",
                "first_name": first_name or name,
                "last_name": last_name,
                "email": email,
                "initiator": "customer",
                "recurring": "initial",
                "descriptor": descriptor,
                "customer_id": customer_ref,
            },
            order_id=order_id,
        )

    def charge(
        self,
        vault_token: str,
        amount: int,
        order_id: str,
        descriptor: str,
        customer_ref: str,
        initiator: str = "merchant",
        recurring: str = "subsequent",
    ) -> GatewayResponse:
        """MIT sale against a stored vault token. Raw card data is never sent."""
        return self._post(
            {
                "type": "sale",
                "amount": format_amount(amount),
                "currency": self.currency,
                "orderid": order_id,
                "customer_vault_id": vault_token,
                "initiator": initiator,
                "recurring": recurring,
                "descriptor": descriptor,
                "customer_id": customer_ref,
            },
            order_id=order_id,
        )

    def update_vault_customer(self, vault_token: str, card: CardDetails, order_id: str) -> GatewayResponse:
        """Replace the card behind a vault token (customer-initiated)."""
        return self._post(
            {
                "customer_vault": "update_customer",
                "customer_vault_id": vault_token,
                "ccnumber": card.number,
                "ccexp": card.exp,
                "cvv": card.cvv,
                "zip": card.zip,
                "initiator": "customer",
                "orderid": order_id,
            },
            order_id=order_id,
        )

    def refresh_credential(self, vault_token: str) -> GatewayResponse:
        """Ask the automatic card updater for newer card data."""
        return self._post(
            {
                "customer_vault": "update_customer",
                "customer_vault_id": vault_token,
                "auto_update": "enabled",
                "update_reason": "expiration_check",
            }
        )

    def enable_network_token(self, vault_token: str) -> GatewayResponse:
        """Request a network token for a vault entry."""
        return self._post(
            {
                "customer_vault": "update_customer",
                "customer_vault_id": vault_token,
                "network_tokenization": "enabled",
                "token_type": "network",
            }
        )

    def close(self) -> None:
        self.client.close()
