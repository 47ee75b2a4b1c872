"""Unit tests for the delivery state machine and phone helpers."""

import pytest

from survey_jobs.delivery import (
    TERMINAL_STATUSES,
    can_transition,
    is_terminal,
    sources_for,
)
from survey_jobs.models import DeliveryStatus
from survey_jobs.utils import hash_phone_number, is_valid_e164, mask_phone_number


@pytest.mark.parametrize(
    "current,target",
    [
        ("pending", "queued"),
        ("queued", "sent"),
        ("queued", "failed"),
        ("sent", "delivered"),
        ("sent", "responded"),
        ("delivered", "responded"),
        ("failed", "sent"),
        ("failed", "undeliverable"),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        ("responded", "sent"),
        ("undeliverable", "sent"),
        ("delivered", "sent"),
        ("pending", "sent"),
        ("sent", "queued"),
    ],
)
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {DeliveryStatus.UNDELIVERABLE, DeliveryStatus.RESPONDED}
    assert is_terminal("responded")
    assert not is_terminal("failed")


def test_sources_for_responded():
    assert set(sources_for(DeliveryStatus.RESPONDED)) == {
        DeliveryStatus.SENT,
        DeliveryStatus.DELIVERED,
    }


@pytest.mark.parametrize("phone", ["+5511999999999", "+14155552671", "+12"])
def test_valid_e164(phone):
    assert is_valid_e164(phone)


@pytest.mark.parametrize("phone", ["5511999999999", "+0511999999999", "+55 11 99999", "", "+1234567890123456"])
def test_invalid_e164(phone):
    assert not is_valid_e164(phone)


def test_hash_phone_number_is_stable():
    assert hash_phone_number("+5511999999999") == hash_phone_number("+5511999999999")
    assert hash_phone_number("+5511999999999") != hash_phone_number("+5511999999998")
    assert len(hash_phone_number("+5511999999999")) == 64


def test_mask_phone_number():
    assert mask_phone_number("+5511999999999") == "+55*******9999"
    assert mask_phone_number("+123") == "****"
