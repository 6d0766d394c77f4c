import pytest

from rmatchd.constants import (
    K_BODY,
    K_DST,
    K_ID,
    K_SRC,
    K_T,
    K_TS,
    K_V,
    RMATCH_VERSION,
    T_CANDIDATE,
    T_REGISTER,
)
from rmatchd.envelope import make_envelope, validate_envelope


def test_validate_accepts_make_envelope() -> None:
    env = make_envelope(T_REGISTER, body="alice")
    validate_envelope(env)


def test_optional_fields_are_omitted() -> None:
    env = make_envelope(T_REGISTER)
    assert K_SRC not in env
    assert K_DST not in env
    assert K_BODY not in env
    validate_envelope(env)


def test_signal_envelope_carries_target_and_sender() -> None:
    env = make_envelope(T_CANDIDATE, src="bob", dst="alice", body={"candidate": "x"})
    assert env[K_SRC] == "bob"
    assert env[K_DST] == "alice"
    validate_envelope(env)


def test_validate_rejects_missing_required_key() -> None:
    env = make_envelope(T_REGISTER, body="alice")
    env.pop(K_TS)
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_wrong_version() -> None:
    env = make_envelope(T_REGISTER, body="alice")
    env[K_V] = RMATCH_VERSION + 1
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_non_integer_keys() -> None:
    env = make_envelope(T_REGISTER, body="alice")
    env["1"] = env.pop(K_T)
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_allows_unknown_extension_keys() -> None:
    env = make_envelope(T_REGISTER, body="alice")
    env[64] = {"future": True}
    validate_envelope(env)


def test_validate_rejects_wrong_field_types() -> None:
    env = make_envelope(T_REGISTER)
    env[K_ID] = "not-bytes"
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_REGISTER)
    env[K_TS] = "not-int"
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_CANDIDATE, dst="alice")
    env[K_DST] = b"alice"
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_CANDIDATE, dst="alice")
    env[K_SRC] = 7
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_rejects_non_map() -> None:
    with pytest.raises(TypeError):
        validate_envelope([1, 2, 3])  # type: ignore[arg-type]
