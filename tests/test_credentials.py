# tests/test_credentials.py
import pytest

from credentials import credentials_for, resolve
from errors import CredentialError, PromptAborted


def no_prompt(prompt):
    raise AssertionError(f"unexpected prompt: {prompt}")


def test_per_device_env_beats_global():
    env = {
        "F5_USER": "global", "F5_PASS": "global-pass",
        "F5_USER_10_1_1_5": "local", "F5_PASS_10_1_1_5": "local-pass",
    }
    bundle = resolve("10.1.1.5", environ=env, ask=no_prompt, ask_secret=no_prompt)
    assert bundle.username == "local"
    assert bundle.secret == "local-pass"
    assert bundle.auth_mode == "password"


def test_global_env_used_without_prompting():
    env = {"F5_USER": "admin", "F5_PASS": "pw"}
    bundle = resolve("10.1.1.6", environ=env, ask=no_prompt, ask_secret=no_prompt)
    assert (bundle.username, bundle.secret) == ("admin", "pw")


def test_prompts_when_env_is_empty():
    bundle = resolve("10.1.1.7", environ={}, ask=lambda p: " admin ", ask_secret=lambda p: "pw")
    assert bundle.username == "admin"
    assert bundle.secret == "pw"


def test_empty_username_aborts():
    with pytest.raises(PromptAborted):
        resolve("10.1.1.7", environ={}, ask=lambda p: "", ask_secret=no_prompt)


def test_empty_password_rejected():
    with pytest.raises(CredentialError):
        resolve("10.1.1.7", environ={"F5_USER": "admin"}, ask=no_prompt, ask_secret=lambda p: "")


def test_key_hint_uses_env_key(tmp_path):
    key = tmp_path / "id_ed25519"
    key.write_text("key")
    env = {"F5_USER": "admin", "F5_SSH_KEY": f'"{key}"'}
    bundle = resolve("10.1.1.8", auth_hint="key", environ=env, ask=no_prompt, ask_secret=no_prompt)
    assert bundle.uses_key
    assert bundle.key_path == str(key)
    assert bundle.secret == ""


def test_missing_key_file_fails_before_connecting(tmp_path):
    env = {"F5_USER": "admin", "F5_SSH_KEY": str(tmp_path / "missing")}
    with pytest.raises(CredentialError):
        resolve("10.1.1.8", auth_hint="key", environ=env, ask=no_prompt, ask_secret=no_prompt)


def test_key_path_prompt_defaults(tmp_path):
    key = tmp_path / "default_key"
    key.write_text("key")
    answers = iter(["admin", ""])
    bundle = resolve("10.1.1.9", auth_hint="key", environ={}, ask=lambda p: next(answers),
                     ask_secret=no_prompt, default_key_path=str(key))
    assert bundle.key_path == str(key)


def test_forced_mode_overrides_hint():
    env = {"F5_AUTH_MODE": "password", "F5_USER": "admin", "F5_PASS": "pw"}
    bundle = resolve("10.1.1.10", auth_hint="key", environ=env, ask=no_prompt, ask_secret=no_prompt)
    assert bundle.auth_mode == "password"


def test_invalid_forced_mode():
    with pytest.raises(CredentialError):
        resolve("10.1.1.10", environ={"F5_AUTH_MODE": "kerberos"}, ask=no_prompt, ask_secret=no_prompt)


def test_per_device_password_beats_global_key(tmp_path):
    env = {"F5_USER": "admin", "F5_SSH_KEY": str(tmp_path / "k"), "F5_PASS_bigip_lab": "pw"}
    bundle = resolve("bigip.lab", environ=env, ask=no_prompt, ask_secret=no_prompt)
    assert bundle.auth_mode == "password"
    assert bundle.secret == "pw"


def test_credentials_cleared_after_use():
    env = {"F5_USER": "admin", "F5_PASS": "pw"}
    with credentials_for("10.1.1.11", environ=env) as bundle:
        assert bundle.secret == "pw"
    assert bundle.secret == ""
    assert bundle.username == ""


def test_repr_masks_secret():
    bundle = resolve("10.1.1.12", environ={"F5_USER": "admin", "F5_PASS": "hunter2"})
    assert "hunter2" not in repr(bundle)
