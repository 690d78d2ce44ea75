"""Tests for positional relay handling."""

import itertools

import pytest

from smarthome.relays import RELAY_KEYS, RelayBank, RelaySlot, resolve_effective_state


def _stored(*states):
    return [{"name": f"Relay {i + 1}", "pin": i, "state": s} for i, s in enumerate(states)]


class TestResolveEffectiveState:

    def test_example_scenario(self):
        """Stored [T,F,F,F] with {relay3: true} commands [T,F,T,F]."""
        result = resolve_effective_state(_stored(True, False, False, False), {"relay3": True})
        assert result == {"relay1": True, "relay2": False, "relay3": True, "relay4": False}

    def test_absent_fields_keep_stored_state_not_false(self):
        result = resolve_effective_state(_stored(True, True, True, True), {"relay2": False})
        assert result == {"relay1": True, "relay2": False, "relay3": True, "relay4": True}

    def test_none_counts_as_absent(self):
        result = resolve_effective_state(_stored(True, False, False, False), {"relay1": None})
        assert result["relay1"] is True

    @pytest.mark.parametrize("stored", [None, [], _stored(True), _stored(True, True, False, True, True)])
    def test_total_for_any_stored_shape(self, stored):
        result = resolve_effective_state(stored, {})
        assert list(result) == list(RELAY_KEYS)
        assert all(isinstance(v, bool) for v in result.values())

    def test_missing_slots_resolve_false(self):
        result = resolve_effective_state(_stored(True), {})
        assert result == {"relay1": True, "relay2": False, "relay3": False, "relay4": False}

    def test_override_always_wins(self):
        stored = _stored(True, False, True, False)
        for values in itertools.product([True, False, None], repeat=4):
            intent = {k: v for k, v in zip(RELAY_KEYS, values) if v is not None}
            result = resolve_effective_state(stored, intent)
            for key, value in intent.items():
                assert result[key] is value

    def test_accepts_relay_slot_objects(self):
        slots = [RelaySlot(name="a", state=True)] * 4
        assert all(resolve_effective_state(slots, {}).values())


class TestRelayBank:

    def test_rejects_wrong_slot_count(self):
        with pytest.raises(ValueError):
            RelayBank(_stored(True, False, False))

    def test_empty_config_gets_defaults(self):
        bank = RelayBank.load([])
        assert [s.name for s in bank] == ["Relay 1", "Relay 2", "Relay 3", "Relay 4"]
        assert not any(bank.states().values())

    def test_named_accessors_follow_position(self):
        bank = RelayBank(_stored(False, True, False, True))
        assert bank.relay2.state is True
        assert bank.relay4.pin == 3
        assert bank["relay3"] is bank[2]

    def test_with_states_keeps_names_and_pins(self):
        bank = RelayBank(_stored(False, False, False, False))
        updated = bank.with_states({"relay1": True, "relay3": True})
        assert updated.states() == {"relay1": True, "relay2": False, "relay3": True, "relay4": False}
        assert [s.pin for s in updated] == [0, 1, 2, 3]
        assert bank.relay1.state is False

    def test_coerce_pads_without_reordering(self):
        bank = RelayBank.coerce(_stored(True, False))
        assert len(bank) == 4
        assert bank.relay1.state is True
        assert bank.relay3.name == "Relay 3"
