"""Tests for model registry, session construction and signature checks."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from fruitlens.config import Settings
from fruitlens.ml.errors import ModelLoadError
from fruitlens.ml.model_manager import (
    FRUITS_CLASSIFIER,
    MODEL_REGISTRY,
    build_providers,
    build_session_options,
    check_signature,
    get_spec,
    load_session,
    resolve_model_path,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/fruitlens_test_models",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _make_session(
    input_shape: list[object] | None = None,
    output_shape: list[object] | None = None,
    input_type: str = "tensor(float)",
) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [
        SimpleNamespace(name="input_1", shape=input_shape or ["N", 150, 150, 3], type=input_type)
    ]
    session.get_outputs.return_value = [SimpleNamespace(name="dense_2", shape=output_shape or ["N", 6])]
    return session


def _write_model(tmp_path: Path, content: bytes = b"onnx-bytes") -> Path:
    model_file = tmp_path / "FruitsClassifier.onnx"
    model_file.write_bytes(content)
    return model_file


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = get_spec("fruits_classifier")
        assert spec is FRUITS_CLASSIFIER
        assert spec.filename == "FruitsClassifier.onnx"

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            get_spec("totally_fake_model")

    def test_fruit_labels_in_training_order(self) -> None:
        assert FRUITS_CLASSIFIER.labels == ("Apple", "Banana", "Lemon", "Onion", "Potato", "Watermelon")
        assert FRUITS_CLASSIFIER.num_classes == 6

    def test_input_shape_is_batched_nhwc(self) -> None:
        assert FRUITS_CLASSIFIER.input_shape == (1, 150, 150, 3)

    def test_registry_entries_keyed_by_name(self) -> None:
        for name, spec in MODEL_REGISTRY.items():
            assert spec.name == name

    def test_resolve_model_path(self) -> None:
        settings = _make_settings(models_dir="/opt/fruitlens/models")
        path = resolve_model_path(settings, FRUITS_CLASSIFIER)
        assert path == Path("/opt/fruitlens/models/FruitsClassifier.onnx")


# ---------------------------------------------------------------------------
# Provider and session option tests
# ---------------------------------------------------------------------------


class TestSessionConfiguration:
    def test_provider_building_cpu(self) -> None:
        assert build_providers(_make_settings(device="cpu")) == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        providers = build_providers(_make_settings(device="cuda", gpu_mem_limit=1024))
        assert len(providers) == 2
        provider_name, provider_opts = providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert provider_opts["gpu_mem_limit"] == 1024
        assert providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        providers = build_providers(_make_settings(device="openvino"))
        assert len(providers) == 2
        provider_name, _provider_opts = providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert providers[1] == "CPUExecutionProvider"

    def test_session_options_use_thread_settings(self) -> None:
        opts = build_session_options(_make_settings(intra_op_threads=3, inter_op_threads=2))
        assert opts.intra_op_num_threads == 3
        assert opts.inter_op_num_threads == 2


# ---------------------------------------------------------------------------
# load_session tests
# ---------------------------------------------------------------------------


class TestLoadSession:
    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ModelLoadError, match="not found"):
            load_session(tmp_path / "missing.onnx", _make_settings())

    def test_empty_file_raises(self, tmp_path: Path) -> None:
        model_file = _write_model(tmp_path, b"")
        with pytest.raises(ModelLoadError, match="empty"):
            load_session(model_file, _make_settings())

    @patch("fruitlens.ml.model_manager.InferenceSession")
    def test_engine_failure_is_wrapped(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        model_file = _write_model(tmp_path)
        mock_session_cls.side_effect = RuntimeError("INVALID_PROTOBUF")

        with pytest.raises(ModelLoadError, match="INVALID_PROTOBUF") as excinfo:
            load_session(model_file, _make_settings())
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    @patch("fruitlens.ml.model_manager.InferenceSession")
    def test_creates_session_from_path(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        model_file = _write_model(tmp_path)
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        session = load_session(model_file, _make_settings())

        assert session is mock_session
        args, kwargs = mock_session_cls.call_args
        assert args == (str(model_file),)
        assert kwargs["providers"] == ["CPUExecutionProvider"]

    def test_real_engine_rejects_garbage(self, tmp_path: Path) -> None:
        model_file = _write_model(tmp_path, b"this is not a model")
        with pytest.raises(ModelLoadError):
            load_session(model_file, _make_settings())


# ---------------------------------------------------------------------------
# check_signature tests
# ---------------------------------------------------------------------------


class TestCheckSignature:
    def test_returns_io_names(self) -> None:
        assert check_signature(_make_session(), FRUITS_CLASSIFIER) == ("input_1", "dense_2")

    def test_accepts_fixed_batch_dimension(self) -> None:
        session = _make_session(input_shape=[1, 150, 150, 3], output_shape=[1, 6])
        assert check_signature(session, FRUITS_CLASSIFIER) == ("input_1", "dense_2")

    def test_rejects_wrong_input_size(self) -> None:
        session = _make_session(input_shape=["N", 224, 224, 3])
        with pytest.raises(ModelLoadError, match="input shape"):
            check_signature(session, FRUITS_CLASSIFIER)

    def test_rejects_channels_first_input(self) -> None:
        session = _make_session(input_shape=["N", 3, 150, 150])
        with pytest.raises(ModelLoadError, match="input shape"):
            check_signature(session, FRUITS_CLASSIFIER)

    def test_rejects_non_float_input(self) -> None:
        session = _make_session(input_type="tensor(uint8)")
        with pytest.raises(ModelLoadError, match="tensor\\(uint8\\)"):
            check_signature(session, FRUITS_CLASSIFIER)

    def test_rejects_label_count_mismatch(self) -> None:
        session = _make_session(output_shape=["N", 5])
        with pytest.raises(ModelLoadError, match="6 labels"):
            check_signature(session, FRUITS_CLASSIFIER)

    def test_rejects_multiple_outputs(self) -> None:
        session = _make_session()
        session.get_outputs.return_value = [
            SimpleNamespace(name="a", shape=["N", 6]),
            SimpleNamespace(name="b", shape=["N", 6]),
        ]
        with pytest.raises(ModelLoadError, match="exactly one"):
            check_signature(session, FRUITS_CLASSIFIER)
