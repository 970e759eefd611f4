"""Tests for model records and the registry."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from spreadsplit.model import ModelNotFoundError, ModelRecord, ModelRegistry


def make_record(model_id: str, age_days: int = 0, mse: float = 16.0) -> ModelRecord:
    return ModelRecord(
        weights={"bias": 500.0, "gutter_candidate_weight": 12.5},
        training_size=40,
        validation_mse=mse,
        trained_at=datetime(2026, 1, 10, tzinfo=timezone.utc) - timedelta(days=age_days),
        model_id=model_id,
    )


class TestModelRecord:
    """Immutable weight sets."""

    def test_requires_bias(self):
        """A record without a bias is rejected."""
        with pytest.raises(ValueError, match="bias"):
            ModelRecord(weights={"gutter_candidate_weight": 1.0}, training_size=1, validation_mse=0.0)

    def test_weights_read_only(self):
        """Weights cannot be changed after training."""
        record = make_record("a")
        with pytest.raises(TypeError):
            record.weights["bias"] = 0.0

    def test_rmse(self):
        """RMSE is the square root of the validation MSE."""
        assert make_record("a", mse=16.0).validation_rmse == 4.0

    def test_dict_round_trip(self):
        """A stored record rebuilds identically."""
        record = make_record("a")
        restored = ModelRecord.from_dict(json.loads(json.dumps(record.to_dict())))
        assert restored == record

    def test_generated_ids_unique(self):
        """New records get distinct ids."""
        a = ModelRecord(weights={"bias": 500.0}, training_size=1, validation_mse=0.0)
        b = ModelRecord(weights={"bias": 500.0}, training_size=1, validation_mse=0.0)
        assert a.model_id != b.model_id


class TestModelRegistry:
    """Directory-backed storage with an active pointer."""

    def test_empty_registry(self, tmp_path):
        """A fresh registry has no active model."""
        registry = ModelRegistry(tmp_path / "models")
        assert registry.active() is None
        assert registry.active_id() is None
        assert registry.list_records() == []

    def test_save_activates_by_default(self, tmp_path):
        """Saving makes the new record active."""
        registry = ModelRegistry(tmp_path)
        registry.save(make_record("first"))
        assert registry.active_id() == "first"
        assert registry.active() == make_record("first")

    def test_save_without_activation(self, tmp_path):
        """A record can be stored without replacing the active one."""
        registry = ModelRegistry(tmp_path)
        registry.save(make_record("first"))
        registry.save(make_record("second"), activate=False)
        assert registry.active_id() == "first"
        assert registry.load("second").model_id == "second"

    def test_records_are_never_overwritten(self, tmp_path):
        """Saving an existing id fails."""
        registry = ModelRegistry(tmp_path)
        registry.save(make_record("first"))
        with pytest.raises(FileExistsError):
            registry.save(make_record("first", mse=1.0))

    def test_list_newest_first(self, tmp_path):
        """Records are listed by training time, newest first."""
        registry = ModelRegistry(tmp_path)
        registry.save(make_record("old", age_days=5))
        registry.save(make_record("new", age_days=0))
        registry.save(make_record("mid", age_days=2))
        assert [r.model_id for r in registry.list_records()] == ["new", "mid", "old"]

    def test_activate_earlier_record(self, tmp_path):
        """Any stored record can be made active again."""
        registry = ModelRegistry(tmp_path)
        registry.save(make_record("first"))
        registry.save(make_record("second"))
        registry.activate("first")
        assert registry.active().model_id == "first"

    def test_activate_unknown(self, tmp_path):
        """Activating a missing record fails and keeps the old pointer."""
        registry = ModelRegistry(tmp_path)
        registry.save(make_record("first"))
        with pytest.raises(ModelNotFoundError):
            registry.activate("missing")
        assert registry.active_id() == "first"

    def test_load_unknown(self, tmp_path):
        """Loading a missing record fails."""
        with pytest.raises(ModelNotFoundError):
            ModelRegistry(tmp_path).load("missing")
