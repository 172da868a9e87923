import os

import pytest

from boltllama.engine.adapters.base import BaseAdapter
from boltllama.engine.adapters.transformers import TransformersAdapter
from boltllama.engine.errors import ModelNotFoundError
from boltllama.engine.registry import (
    ModelRegistry,
    default_models_dir,
    describe_model_file,
    get_adapter,
    list_backends,
    register_adapter,
)


def _touch(path, size=4):
    path.write_bytes(b"\0" * size)
    return path


def test_get_adapter_default_backend():
    assert "transformers" in list_backends()
    assert isinstance(get_adapter("transformers"), TransformersAdapter)


def test_get_adapter_unknown_backend():
    with pytest.raises(ValueError, match="Unknown backend"):
        get_adapter("llama-cpp-magic")


def test_register_adapter():
    class _Dummy(TransformersAdapter):
        pass

    register_adapter("dummy-test", _Dummy)
    try:
        adapter = get_adapter("dummy-test")
        assert isinstance(adapter, BaseAdapter)
        assert isinstance(adapter, _Dummy)
    finally:
        from boltllama.engine import registry

        registry._ADAPTER_REGISTRY.pop("dummy-test", None)


def test_describe_model_file_parses_name(tmp_path):
    path = _touch(tmp_path / "deepseek-coder-6.7b-instruct.Q4_K_M.gguf", size=10)
    info = describe_model_file(str(path))
    assert info.name == "deepseek-coder-6.7b-instruct.Q4_K_M.gguf"
    assert info.size == 10
    assert info.parameters == "6.7B"
    assert info.quantization == "Q4_K_M"
    assert info.format == "gguf"


def test_describe_model_file_without_hints(tmp_path):
    path = _touch(tmp_path / "tiny.gguf")
    info = describe_model_file(str(path))
    assert info.parameters is None
    assert info.quantization is None


def test_list_models_filters_and_sorts(tmp_path):
    _touch(tmp_path / "b-13B.Q8_0.gguf")
    _touch(tmp_path / "a-7b.gguf")
    _touch(tmp_path / "notes.txt")
    (tmp_path / "dir.gguf").mkdir()

    registry = ModelRegistry(str(tmp_path))
    names = [m.name for m in registry.list_models()]
    assert names == ["a-7b.gguf", "b-13B.Q8_0.gguf"]

    as_dict = registry.list_models()[0].to_dict(loaded=True)
    assert as_dict["loaded"] is True
    assert as_dict["path"] == os.path.join(str(tmp_path), "a-7b.gguf")


def test_list_models_missing_dir_is_empty(tmp_path):
    assert ModelRegistry(str(tmp_path / "missing")).list_models() == []


def test_resolve_by_name_stem_and_path(tmp_path):
    path = _touch(tmp_path / "coder-7b.Q4_0.gguf")
    registry = ModelRegistry(str(tmp_path))

    assert registry.resolve("coder-7b.Q4_0.gguf") == str(path)
    assert registry.resolve("coder-7b.Q4_0") == str(path)
    assert registry.resolve(str(path)) == str(path)

    with pytest.raises(ModelNotFoundError):
        registry.resolve("other.gguf")
    with pytest.raises(ModelNotFoundError):
        registry.resolve(str(tmp_path / "other.gguf"))


def test_default_models_dir_env(monkeypatch, tmp_path):
    monkeypatch.setenv("BOLTLLAMA_MODELS_DIR", str(tmp_path))
    assert default_models_dir() == str(tmp_path)
    monkeypatch.delenv("BOLTLLAMA_MODELS_DIR")
    assert default_models_dir().endswith(os.path.join(".bolt-llama", "models"))
