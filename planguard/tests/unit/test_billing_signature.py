from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest

from planguard.core.errors import ConfigurationError, SignatureInvalidError, ValidationError
from planguard.services.billing_events import (
    BillingEventProcessor,
    ProviderEvent,
    build_billing_signature,
    invoice_subscription_id,
    lock_key,
    parse_event,
    verify_signature,
)
from planguard.tests.utils.billing import format_signature_header


SECRET = "whsec_unit"


def _payload() -> bytes:
    return json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {"subscription": "sub_1"}}}).encode()


def test_build_billing_signature_matches_hmac() -> None:
    payload = b'{"event":"test"}'
    expected = hmac.new(SECRET.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_billing_signature(SECRET, payload) == expected


def test_plain_hex_signature_is_accepted() -> None:
    payload = _payload()
    verify_signature(payload, build_billing_signature(SECRET, payload), SECRET, tolerance_s=300)


def test_timestamped_signature_is_accepted_within_tolerance() -> None:
    payload = _payload()
    header = format_signature_header(SECRET, payload, int(time.time()) - 60)

    verify_signature(payload, header, SECRET, tolerance_s=300)


def test_timestamped_signature_with_rotated_secret_candidates() -> None:
    payload = _payload()
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    stale = build_billing_signature("whsec_old", signed)
    current = build_billing_signature(SECRET, signed)

    verify_signature(payload, f"t={timestamp},v1={stale},v1={current}", SECRET, tolerance_s=300)


def test_timestamped_signature_outside_tolerance_is_rejected() -> None:
    payload = _payload()
    header = format_signature_header(SECRET, payload, int(time.time()) - 600)

    with pytest.raises(SignatureInvalidError):
        verify_signature(payload, header, SECRET, tolerance_s=300)


def test_zero_tolerance_skips_timestamp_check() -> None:
    payload = _payload()
    header = format_signature_header(SECRET, payload, 1_000_000)

    verify_signature(payload, header, SECRET, tolerance_s=0)


@pytest.mark.parametrize("header", [None, "", "deadbeef", "t=abc,v1=00", "t=1773576000", "t=1773576000,v1=00"])
def test_bad_signatures_are_rejected(header: str | None) -> None:
    with pytest.raises(SignatureInvalidError):
        verify_signature(_payload(), header, SECRET, tolerance_s=300)


def test_tampered_payload_is_rejected() -> None:
    payload = _payload()
    header = format_signature_header(SECRET, payload, int(time.time()))

    with pytest.raises(SignatureInvalidError):
        verify_signature(payload + b" ", header, SECRET, tolerance_s=300)


def test_non_utf8_payload_with_provider_header_is_rejected() -> None:
    payload = b"\xff\xfe"
    header = format_signature_header(SECRET, payload, int(time.time()))

    with pytest.raises(SignatureInvalidError):
        verify_signature(payload, header, SECRET, tolerance_s=300)


def test_processor_without_secret_is_a_configuration_error() -> None:
    processor = BillingEventProcessor(secret="")
    payload = _payload()

    with pytest.raises(ConfigurationError):
        processor.verify(payload, build_billing_signature("", payload))


def test_verified_but_malformed_payload_is_validation_error() -> None:
    processor = BillingEventProcessor(secret=SECRET)
    payload = b"not json"

    with pytest.raises(ValidationError) as excinfo:
        processor.verify(payload, build_billing_signature(SECRET, payload))
    assert excinfo.value.code == "INVALID_PAYLOAD"


def test_parse_event_requires_id_and_type() -> None:
    with pytest.raises(ValidationError):
        parse_event(b'{"type": "invoice.paid"}')
    with pytest.raises(ValidationError):
        parse_event(b"[1, 2]")

    event = parse_event(_payload())
    assert event.id == "evt_1"
    assert event.data == {"subscription": "sub_1"}


def test_invoice_subscription_reference_sources() -> None:
    assert invoice_subscription_id({"metadata": {"subscription_id": "sub_meta"}, "subscription": "sub_x"}) == "sub_meta"
    assert invoice_subscription_id({"subscription": {"id": "sub_obj"}}) == "sub_obj"
    assert (
        invoice_subscription_id({"parent": {"subscription_details": {"subscription": "sub_parent"}}})
        == "sub_parent"
    )
    assert invoice_subscription_id({}) is None


def test_lock_key_groups_events_by_subscription() -> None:
    checkout = ProviderEvent("evt_a", "checkout.session.completed", {"subscription": "sub_1"})
    updated = ProviderEvent("evt_b", "customer.subscription.updated", {"id": "sub_1"})
    invoice = ProviderEvent("evt_c", "invoice.paid", {"subscription": "sub_1"})
    other = ProviderEvent("evt_d", "product.created", {"id": "prod_1"})

    assert lock_key(checkout) == lock_key(updated) == lock_key(invoice) == "sub:sub_1"
    assert lock_key(other) == "evt:evt_d"
