from __future__ import annotations

from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    PENDING_SIGNATURE = "pending_signature"
    SIGNED = "signed"
    RESERVED = "reserved"
    PICKED_UP = "picked_up"
    RETURNED = "returned"
    CANCELED = "canceled"


class OrderAction(str, Enum):
    SIGN = "sign"
    CONFIRM_PICKUP = "confirm_pickup"
    CONFIRM_RETURN = "confirm_return"
    CANCEL = "cancel"


class OrderTransitionError(ValueError):
    pass


STATUS_ALIASES = {
    "draft": OrderStatus.PENDING_SIGNATURE.value,
}
STATUS_LABELS = {
    OrderStatus.PENDING_SIGNATURE: "Aguardando assinatura",
    OrderStatus.SIGNED: "Assinado",
    OrderStatus.RESERVED: "Reservado",
    OrderStatus.PICKED_UP: "Retirado",
    OrderStatus.RETURNED: "Devolvido",
    OrderStatus.CANCELED: "Cancelado",
}
TERMINAL_STATES = {OrderStatus.RETURNED, OrderStatus.CANCELED}
EDITABLE_STATES = {OrderStatus.PENDING_SIGNATURE, OrderStatus.SIGNED, OrderStatus.RESERVED}
INITIAL_STATES = {OrderStatus.PENDING_SIGNATURE, OrderStatus.RESERVED}

# Orders in these states hold stock for every day of their range.
COMMITTING_STATES = {OrderStatus.RESERVED, OrderStatus.SIGNED, OrderStatus.PICKED_UP}
# Orders shown on the timeline and the "upcoming" lists.
SCHEDULED_STATES = COMMITTING_STATES | {OrderStatus.PENDING_SIGNATURE}

# SIGN is resolved against the fulfillment type, see _resolve_sign_target.
STATE_TRANSITIONS = {
    OrderStatus.PENDING_SIGNATURE: {
        OrderAction.SIGN: OrderStatus.RESERVED,
        OrderAction.CANCEL: OrderStatus.CANCELED,
    },
    OrderStatus.RESERVED: {
        OrderAction.SIGN: OrderStatus.SIGNED,
        OrderAction.CONFIRM_PICKUP: OrderStatus.PICKED_UP,
        OrderAction.CANCEL: OrderStatus.CANCELED,
    },
    OrderStatus.SIGNED: {
        OrderAction.CONFIRM_PICKUP: OrderStatus.PICKED_UP,
        OrderAction.CANCEL: OrderStatus.CANCELED,
    },
    OrderStatus.PICKED_UP: {
        OrderAction.CONFIRM_RETURN: OrderStatus.RETURNED,
        OrderAction.CANCEL: OrderStatus.CANCELED,
    },
    OrderStatus.RETURNED: {},
    OrderStatus.CANCELED: {},
}


def normalize_status(raw: str | OrderStatus | None) -> OrderStatus:
    if isinstance(raw, OrderStatus):
        return raw
    value = (raw or OrderStatus.PENDING_SIGNATURE.value).strip().lower()
    value = STATUS_ALIASES.get(value, value)
    try:
        return OrderStatus(value)
    except ValueError as exc:
        raise OrderTransitionError(f"Unknown order status: {raw}") from exc


def normalize_action(raw: str | OrderAction) -> OrderAction:
    if isinstance(raw, OrderAction):
        return raw
    try:
        return OrderAction((raw or "").strip().lower())
    except ValueError as exc:
        raise OrderTransitionError(f"Unknown order action: {raw}") from exc


def status_values(states) -> list[str]:
    return sorted(state.value for state in states)


def is_terminal(status: str | OrderStatus | None) -> bool:
    return normalize_status(status) in TERMINAL_STATES


def is_editable(status: str | OrderStatus | None) -> bool:
    return normalize_status(status) in EDITABLE_STATES


def available_actions(status: str | OrderStatus | None, signed: bool = False) -> list[str]:
    current = normalize_status(status)
    actions = []
    for action in STATE_TRANSITIONS[current]:
        if action == OrderAction.SIGN and signed:
            continue
        actions.append(action.value)
    return actions


def _resolve_sign_target(current: OrderStatus, fulfillment_type: str | None) -> OrderStatus:
    if (fulfillment_type or "").strip().lower() == "immediate":
        return OrderStatus.PICKED_UP
    return STATE_TRANSITIONS[current][OrderAction.SIGN]


def next_status(
    status: str | OrderStatus | None,
    action: str | OrderAction,
    *,
    fulfillment_type: str | None = None,
    signed: bool = False,
) -> OrderStatus:
    """
    Resolve the status an order moves to when ``action`` is applied.

    Raises OrderTransitionError when the action is not legal from ``status``.
    Nothing is mutated here.
    """
    current = normalize_status(status)
    wanted = normalize_action(action)
    if current in TERMINAL_STATES:
        raise OrderTransitionError(f"Order is {current.value}; no further changes are allowed.")
    if wanted not in STATE_TRANSITIONS[current]:
        raise OrderTransitionError(f"Invalid state transition: {current.value} -> {wanted.value}")
    if wanted == OrderAction.SIGN:
        if signed:
            raise OrderTransitionError("Contract has already been signed.")
        return _resolve_sign_target(current, fulfillment_type)
    return STATE_TRANSITIONS[current][wanted]


def apply_transition(
    order,
    action: str | OrderAction,
    *,
    now: datetime | None = None,
    signature_image: str | None = None,
    signer_ip: str | None = None,
    signer_user_agent: str | None = None,
) -> OrderStatus:
    """
    Move ``order`` to its next status and stamp the matching timestamps.

    ``order`` is any object exposing the Order column attributes. The target is
    computed before anything is written, so a rejected action leaves the order
    untouched.
    """
    wanted = normalize_action(action)
    target = next_status(
        order.Status,
        wanted,
        fulfillment_type=order.FulfillmentType,
        signed=order.SignedAt is not None,
    )
    if wanted == OrderAction.SIGN and not (signature_image or "").strip():
        raise OrderTransitionError("A signature image is required to sign the contract.")

    stamp = now or datetime.now()
    if wanted == OrderAction.SIGN:
        order.SignedAt = stamp
        order.SignatureImage = signature_image
        order.SignerIp = signer_ip
        order.SignerUserAgent = signer_user_agent
        if target == OrderStatus.PICKED_UP:
            order.PickedUpAt = stamp
    elif wanted == OrderAction.CONFIRM_PICKUP:
        order.PickedUpAt = stamp
    elif wanted == OrderAction.CONFIRM_RETURN:
        order.ReturnedAt = stamp
        if order.PickedUpAt is None:
            order.PickedUpAt = stamp
    elif wanted == OrderAction.CANCEL:
        order.CanceledAt = stamp

    order.Status = target.value
    return target
