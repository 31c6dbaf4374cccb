"""
Tests for patch validation and request models.

Run: python -m pytest tests/test_models.py -v
"""

import pytest
from pydantic import ValidationError

from floor_analytics.models.telemetry import (
    AnalyticsRequest,
    LiveMachineData,
    MachinePatch,
    ProductionOrderPatch,
    SyncRequest,
    parse_patch,
)


class TestPatches:

    def test_camel_and_snake_case_are_accepted(self):
        camel = MachinePatch.model_validate({"lineSpeed": 12.5, "lengthCounter": 100})
        snake = MachinePatch.model_validate({"line_speed": 12.5, "length_counter": 100})
        assert camel.to_columns() == snake.to_columns() == {"line_speed": 12.5, "length_counter": 100}

    def test_unknown_key_is_rejected(self):
        with pytest.raises(ValidationError):
            MachinePatch.model_validate({"lineSpeed": 1, "colour": "red"})

    def test_invalid_status_is_rejected(self):
        with pytest.raises(ValidationError):
            MachinePatch.model_validate({"status": "exploded"})

    def test_negative_speed_is_rejected(self):
        with pytest.raises(ValidationError):
            MachinePatch.model_validate({"lineSpeed": -1})

    def test_only_sent_fields_become_columns(self):
        patch = MachinePatch.model_validate({"status": "running", "operatorName": None})
        assert patch.to_columns() == {"status": "running", "operator_name": None}

    def test_tagged_union_dispatch(self):
        machine = parse_patch({"entity": "machine", "status": "idle"})
        order = parse_patch({"entity": "production_order", "targetLength": 5000})
        assert isinstance(machine, MachinePatch)
        assert isinstance(order, ProductionOrderPatch)
        assert order.to_columns() == {"target_length": 5000}

    def test_unknown_entity_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_patch({"entity": "alarm", "status": "idle"})

    def test_order_status_is_closed(self):
        with pytest.raises(ValidationError):
            ProductionOrderPatch.model_validate({"status": "archived"})


class TestRequests:

    def test_analytics_defaults(self):
        request = AnalyticsRequest()
        assert request.range == "today"
        assert request.area == "all"

    def test_analytics_area_must_be_known(self):
        with pytest.raises(ValidationError):
            AnalyticsRequest(area="painting")

    def test_analytics_camel_case_body(self):
        request = AnalyticsRequest.model_validate({"range": "shift", "shiftDate": "2025-03-10", "shiftNumber": 2})
        assert request.shift_number == 2

    def test_sync_request_window_bounds(self):
        assert SyncRequest.model_validate({"windowMinutes": 15}).window_minutes == 15
        with pytest.raises(ValidationError):
            SyncRequest(window_minutes=0)


class TestLiveMachineData:

    def test_from_machine_row(self):
        live = LiveMachineData.from_machine_row({"status": "running", "line_speed": None, "target_speed": "80"})
        assert live.line_speed == 0.0
        assert live.target_speed == 80.0
        assert live.produced_length_ok is None
