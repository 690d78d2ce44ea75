"""Positional relay configuration.

Every device carries exactly four relay slots. Slot ``i`` is the one called
``relay{i+1}`` in telemetry and in control messages, so the order of the
stored list is part of the wire contract and must never be rearranged.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Sequence

from pydantic import BaseModel

RELAY_KEYS = ("relay1", "relay2", "relay3", "relay4")
RELAY_COUNT = len(RELAY_KEYS)


class RelaySlot(BaseModel):
    name: str
    pin: Optional[int] = None
    state: bool = False


class RelayBank:
    """Fixed-size ordered mapping ``relay1..relay4 -> RelaySlot``."""

    __slots__ = ("_slots",)

    def __init__(self, slots: Iterable[RelaySlot | Mapping[str, Any]]):
        parsed = tuple(s if isinstance(s, RelaySlot) else RelaySlot.model_validate(s) for s in slots)
        if len(parsed) != RELAY_COUNT:
            raise ValueError(f"expected exactly {RELAY_COUNT} relay slots, got {len(parsed)}")
        self._slots = parsed

    @classmethod
    def default(cls) -> "RelayBank":
        return cls(RelaySlot(name=f"Relay {i + 1}") for i in range(RELAY_COUNT))

    @classmethod
    def load(cls, raw: Optional[Sequence[Any]]) -> "RelayBank":
        """Build from stored/request JSON; an empty or missing list gets default slots."""
        if not raw:
            return cls.default()
        return cls(raw)

    @classmethod
    def coerce(cls, raw: Optional[Sequence[Any]]) -> "RelayBank":
        """Like ``load`` but pads a short list with default slots and drops extras.

        Used for rows written before the four-slot rule was enforced. Existing
        slots keep their position.
        """
        raw = list(raw or ())
        slots = [s if isinstance(s, RelaySlot) else RelaySlot.model_validate(s) for s in raw[:RELAY_COUNT]]
        slots += [RelaySlot(name=f"Relay {i + 1}") for i in range(len(slots), RELAY_COUNT)]
        return cls(slots)

    def __getitem__(self, key: int | str) -> RelaySlot:
        if isinstance(key, str):
            key = RELAY_KEYS.index(key)
        return self._slots[key]

    def __iter__(self):
        return iter(self._slots)

    def __len__(self) -> int:
        return RELAY_COUNT

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RelayBank) and self._slots == other._slots

    @property
    def relay1(self) -> RelaySlot:
        return self._slots[0]

    @property
    def relay2(self) -> RelaySlot:
        return self._slots[1]

    @property
    def relay3(self) -> RelaySlot:
        return self._slots[2]

    @property
    def relay4(self) -> RelaySlot:
        return self._slots[3]

    def states(self) -> dict[str, bool]:
        return {key: slot.state for key, slot in zip(RELAY_KEYS, self._slots)}

    def with_states(self, states: Mapping[str, bool]) -> "RelayBank":
        """Copy of the bank with the given per-slot states applied."""
        return RelayBank(
            slot.model_copy(update={"state": bool(states[key])}) if key in states else slot
            for key, slot in zip(RELAY_KEYS, self._slots)
        )

    def to_json(self) -> list[dict[str, Any]]:
        return [slot.model_dump() for slot in self._slots]


def resolve_effective_state(relays: Optional[Sequence[Any]], intent: Mapping[str, Optional[bool]]) -> dict[str, bool]:
    """Merge an explicit control intent over the stored relay states.

    A key present in ``intent`` with a non-None value wins; otherwise the
    stored slot's state is used, and a missing slot resolves to False.
    Always returns all four keys.
    """
    relays = list(relays or ())
    effective: dict[str, bool] = {}
    for i, key in enumerate(RELAY_KEYS):
        requested = intent.get(key)
        if requested is not None:
            effective[key] = bool(requested)
        elif i < len(relays):
            effective[key] = bool(_slot_state(relays[i]))
        else:
            effective[key] = False
    return effective


def _slot_state(slot: Any) -> bool:
    if isinstance(slot, RelaySlot):
        return slot.state
    if isinstance(slot, Mapping):
        return bool(slot.get("state") or False)
    return bool(getattr(slot, "state", False))
