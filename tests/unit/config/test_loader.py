"""
avatar-morphology: unit tests for config loader

Purpose
- Validate deterministic config loading from defaults, TOML and env overrides.

What this test file should cover
- Precedence: env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Secret resolution.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from avatar_morphology.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    resolve_secret,
)


def _write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "avatar_morphology.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_loader_precedence_default_file_env(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        "[streaming]\nbatch_size = 4\nsmoothing_steps = 5\n\n[blending]\nsoftmax_temperature = 3.0\n",
    )
    environ = {
        "AVATAR_MORPH_STREAMING_BATCH_SIZE": "6",
        "AVATAR_MORPH_BLENDING_SOFTMAX_TEMPERATURE": "1.5",
    }

    config = load_config(path, environ=environ)

    assert config["streaming"]["batch_size"] == 6
    assert config["streaming"]["smoothing_steps"] == 5
    assert config["blending"]["softmax_temperature"] == 1.5
    assert config["blending"]["distance_epsilon"] == 0.1
    assert config["observability"]["log_level"] == "INFO"


def test_env_bindings_cover_booleans_and_optional_fields(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "")
    environ = {
        "AVATAR_MORPH_REFINEMENT_ENABLED": "yes",
        "AVATAR_MORPH_REFINEMENT_BASE_URL": "https://refine.example",
        "AVATAR_MORPH_REFINEMENT_API_KEY_ENV": "REFINE_KEY",
        "AVATAR_MORPH_STREAMING_ENABLE_SMOOTHING": "off",
    }

    config = load_config(path, environ=environ)

    assert config["refinement"]["enabled"] is True
    assert config["refinement"]["base_url"] == "https://refine.example"
    assert config["refinement"]["api_key_env"] == "REFINE_KEY"
    assert config["streaming"]["enable_smoothing"] is False


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AVATAR_MORPH_STREAMING_BATCH_SIZE", "many", "must be an integer"),
        ("AVATAR_MORPH_REFINEMENT_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("AVATAR_MORPH_STREAMING_ENABLE_SMOOTHING", "maybe", "must be a boolean"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, name: str, value: str, message: str
) -> None:
    path = _write_config(tmp_path, "")

    with pytest.raises(ConfigLoadError, match=message):
        load_config(path, environ={name: value})


def test_invalid_values_after_overrides_fail_validation(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "")

    with pytest.raises(ConfigValidationError, match="streaming.batch_size"):
        load_config(path, environ={"AVATAR_MORPH_STREAMING_BATCH_SIZE": "0"})


def test_missing_explicit_file_and_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = _write_config(tmp_path, "[streaming\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_missing_default_file_uses_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    assert config["streaming"]["batch_size"] == 8


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_dir = tmp_path / "conf"
    config_dir.mkdir()
    path = _write_config(
        config_dir,
        '[resolution]\nmapping_path = "maps/gender.yaml"\nbone_mapping_path = "../rig/bones.yaml"\n',
    )

    config = load_config(path, environ={})

    assert config["resolution"]["mapping_path"] == (config_dir / "maps/gender.yaml").resolve().as_posix()
    assert config["resolution"]["bone_mapping_path"] == (tmp_path / "rig/bones.yaml").resolve().as_posix()


def test_resolve_secret_reads_the_named_variable(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        '[refinement]\nenabled = true\nbase_url = "https://refine.example"\napi_key_env = "REFINE_KEY"\n',
    )

    config = load_config(path, environ={})

    assert resolve_secret(config, {"REFINE_KEY": "s3cret"}) == "s3cret"
    assert resolve_secret(config, {"REFINE_KEY": "  "}) is None
    assert resolve_secret(config, {}) is None


def test_resolve_secret_without_a_named_variable(tmp_path: Path) -> None:
    config = load_config(_write_config(tmp_path, ""), environ={"REFINE_KEY": "s3cret"})

    assert resolve_secret(config, {"REFINE_KEY": "s3cret"}) is None


def test_undecodable_config_file_is_a_load_error(tmp_path: Path) -> None:
    path = tmp_path / "avatar_morphology.toml"
    path.write_bytes(b"[streaming]\nbatch_size = \xff\n")

    with pytest.raises(ConfigLoadError, match="unable to read"):
        load_config(path, environ={})
