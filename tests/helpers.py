"""Shared test helpers for JWS authentication and processor webhooks."""

from __future__ import annotations

import base64
import json
from typing import Any
from unittest.mock import AsyncMock

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from joserfc import jws
from joserfc.jwk import OctKey, OKPKey

WEBHOOK_SECRET = "whsec_test_0123456789abcdef0123456789abcdef"

CARD = {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030}


def generate_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Ed25519 keypair -> (private_key, 'ed25519:<base64_pub>')."""
    private_key = Ed25519PrivateKey.generate()
    pub_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    public_key = f"ed25519:{base64.b64encode(pub_bytes).decode()}"
    return private_key, public_key


def make_jws_token(
    private_key: Ed25519PrivateKey,
    agent_id: str,
    payload: dict[str, Any],
) -> str:
    """Create a real JWS compact token signed by the given key."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA", "kid": agent_id}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def make_webhook_token(
    event_id: str,
    event_type: str,
    data: dict[str, Any],
    secret: str = WEBHOOK_SECRET,
) -> str:
    """Sign a processor event the way the processor delivers it (HS256 JWS)."""
    key = OctKey.import_key(secret)
    event = {"id": event_id, "type": event_type, "data": data}
    payload_bytes = json.dumps(event, separators=(",", ":")).encode()
    return jws.serialize_compact({"alg": "HS256"}, payload_bytes, key, algorithms=["HS256"])


def tamper_jws(token: str) -> str:
    """Alter the payload of a JWS after signing (creates invalid signature)."""
    parts = token.split(".")
    payload_bytes = base64.urlsafe_b64decode(parts[1] + "==")
    payload = json.loads(payload_bytes)
    payload["_tampered"] = True
    new_payload = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()
    return f"{parts[0]}.{new_payload}.{parts[2]}"


def make_config_yaml(
    db_path: str,
    operator_id: str = "a-operator",
    log_directory: str = "data/logs",
) -> str:
    """A complete service configuration pointing at the given database file."""
    return f"""\
service:
  name: "job-board"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_directory}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  verify_jws_path: "/agents/verify-jws"
  timeout_seconds: 10
payment_processor:
  base_url: "https://processor.test"
  api_key: "sk_test_key"
  webhook_secret: "{WEBHOOK_SECRET}"
  currency: "usd"
  timeout_seconds: 10
  authorize_path: "/v1/payment_intents"
  capture_path: "/v1/payment_intents/{{hold_id}}/capture"
  transfer_path: "/v1/transfers"
  refund_path: "/v1/refunds"
  setup_intent_path: "/v1/setup_intents"
  confirm_setup_intent_path: "/v1/setup_intents/{{setup_intent_id}}/confirm"
  detach_payment_method_path: "/v1/payment_methods/{{method_id}}/detach"
retry:
  max_attempts: 3
  base_delay_seconds: 0
  max_delay_seconds: 0
escrow:
  fee_rate: "0.10"
  min_payment_amount: "10.00"
  max_payment_amount: "10000.00"
cancellation:
  max_refund_rounds: 3
platform:
  agent_id: "{operator_id}"
request:
  max_body_size: 1048576
limits:
  max_title_length: 200
  max_description_length: 10000
  max_tasks_per_job: 50
  max_message_length: 2000
  max_dispute_description_length: 5000
events:
  queue_size: 100
  keepalive_seconds: 15
"""


def processor_mock() -> AsyncMock:
    """Processor double whose calls succeed and settle synchronously."""
    processor = AsyncMock()
    processor.authorize = AsyncMock(
        side_effect=lambda amount, method, customer, job_id, key: {
            "id": f"pi_{job_id}",
            "status": "requires_capture",
        }
    )
    processor.capture = AsyncMock(
        side_effect=lambda hold_id, amount, key: {"id": f"ch_{hold_id}", "status": "succeeded"}
    )
    processor.transfer = AsyncMock(
        side_effect=lambda amount, destination, job_id, key: {
            "id": f"tr_{key}",
            "status": "paid",
        }
    )
    processor.refund = AsyncMock(
        side_effect=lambda hold_id, amount, job_id, key: {"id": f"re_{key}", "status": "succeeded"}
    )
    processor.create_setup_intent = AsyncMock(
        side_effect=lambda customer, token, key: {
            "id": f"seti_{customer}_{token}",
            "payment_method": f"pm_{customer}_{token}",
            "status": "succeeded",
            "card": CARD,
        }
    )
    processor.confirm_setup_intent = AsyncMock(
        side_effect=lambda setup_intent_id, key: {
            "id": setup_intent_id,
            "status": "succeeded",
            "card": CARD,
        }
    )
    processor.detach_payment_method = AsyncMock(return_value={"status": "detached"})
    processor.close = AsyncMock()
    return processor
