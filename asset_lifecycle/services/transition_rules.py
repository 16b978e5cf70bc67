from __future__ import annotations

from enum import Enum

from services.asset_errors import ValidationError


class AssetType(str, Enum):
    LAPTOP = "laptop"
    HEADSETS = "headsets"
    DONGLE = "dongle"


class AssetState(str, Enum):
    # No persisted row for (user, date, assetType) means this state.
    READY_FOR_COLLECTION = "ready_for_collection"
    COLLECTED = "collected"
    NOT_COLLECTED = "not_collected"
    RETURNED = "returned"
    NOT_RETURNED = "not_returned"
    LOST = "lost"


ASSET_TYPES = [item.value for item in AssetType]

BOOK_IN_STATES = {AssetState.COLLECTED, AssetState.NOT_COLLECTED}
BOOK_OUT_STATES = {AssetState.RETURNED, AssetState.NOT_RETURNED, AssetState.LOST}
BOOK_IN_PRECURSORS = {AssetState.READY_FOR_COLLECTION, AssetState.COLLECTED, AssetState.NOT_COLLECTED}
FOUND_PRECURSORS = {AssetState.NOT_RETURNED, AssetState.LOST}
LOSS_CLEARING_STATES = {AssetState.RETURNED, AssetState.COLLECTED}


def parse_asset_type(raw: str | AssetType | None) -> AssetType:
    value = str(getattr(raw, "value", raw) or "").strip().lower()
    try:
        return AssetType(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown asset type: {value or '<empty>'}. Expected one of {', '.join(ASSET_TYPES)}.") from exc


def parse_state(raw: str | AssetState | None) -> AssetState:
    if raw is None:
        return AssetState.READY_FOR_COLLECTION
    value = str(getattr(raw, "value", raw)).strip().lower()
    try:
        return AssetState(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown asset state: {value}") from exc


def validate_book_in(current: AssetState, requested: str | AssetState) -> AssetState:
    target = parse_state(requested)
    if target not in BOOK_IN_STATES:
        raise ValidationError(f"Book in status must be collected or not_collected, got {target.value}")
    if current not in BOOK_IN_PRECURSORS:
        raise ValidationError(f"Cannot book in asset in current state: {current.value}")
    return target


def validate_book_out(current: AssetState, requested: str | AssetState) -> AssetState:
    target = parse_state(requested)
    if target not in BOOK_OUT_STATES:
        raise ValidationError(f"Book out status must be returned, not_returned or lost, got {target.value}")
    if current != AssetState.COLLECTED:
        raise ValidationError("Asset must be collected before it can be booked out")
    return target


def validate_mark_found(current: AssetState) -> AssetState:
    if current not in FOUND_PRECURSORS:
        raise ValidationError("Asset is not in a lost/unreturned state")
    return AssetState.RETURNED


def clears_loss_record(state: AssetState) -> bool:
    return state in LOSS_CLEARING_STATES


def is_booked_out(state: AssetState) -> bool:
    return state in BOOK_OUT_STATES
