# tests/conftest.py
import pytest

from credentials import CredentialBundle
from data import DeviceStore


@pytest.fixture
def store(tmp_path):
    return DeviceStore(tmp_path / "devices.json")


@pytest.fixture
def creds():
    return CredentialBundle(username="admin", secret="s3cret")


@pytest.fixture
def key_creds(tmp_path):
    key = tmp_path / "id_rsa"
    key.write_text("key", encoding="utf-8")
    return CredentialBundle(username="admin", key_path=str(key), auth_mode="key")


class FakeSSHClient:
    """Stands in for utils.SSHClient; records commands and answers from a script."""

    def __init__(self, responses=None, fail_on=None):
        self.responses = responses or {}
        self.fail_on = fail_on or {}
        self.commands = []
        self.uploads = []
        self.connects = 0
        self.closed = 0

    def connect(self):
        self.connects += 1

    def execute_command(self, command, timeout=None, check=False):
        self.commands.append(command)
        for needle, error in self.fail_on.items():
            if needle in command:
                raise error
        for needle, output in self.responses.items():
            if needle in command:
                return output
        return ""

    def put_file(self, local_path, remote_path):
        with open(local_path, encoding="utf-8") as handle:
            self.uploads.append((remote_path, handle.read()))

    def close(self):
        self.closed += 1
