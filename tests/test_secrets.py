"""
Tests for the file-backed secret store.
"""

import json
import textwrap
from pathlib import Path

import pytest

from converge.adapters.secrets import FileSecretStore
from converge.core.errors import CollaboratorError


@pytest.fixture
def secrets_dir(tmp_path: Path) -> Path:
    root = tmp_path / "secrets"
    (root / "prod").mkdir(parents=True)
    (root / "prod" / "automation_user.json").write_text(json.dumps({
        "username": "jenkins_automation",
        "private_key": "-----BEGIN KEY-----",
    }))
    (root / "prod" / "credentials.yml").write_text(textwrap.dedent("""\
        github:
          username: git
          private_key: KEYDATA
          passphrase: open-sesame
        artifactory:
          username: ci
          password: s3cr3t
        broken: just a string
        empty:
          username: nobody
    """))
    return root


class TestFileSecretStore:
    def test_single_secret_bag(self, secrets_dir):
        store = FileSecretStore(secrets_dir)
        record = store.get_secret("prod", "automation_user")

        assert record.username == "jenkins_automation"
        assert record.private_key_or_password.get_secret_value() == "-----BEGIN KEY-----"
        assert record.passphrase is None

    def test_item_in_bag(self, secrets_dir):
        store = FileSecretStore(secrets_dir)

        github = store.get_secret("prod", "credentials/github")
        assert github.username == "git"
        assert github.private_key_or_password.get_secret_value() == "KEYDATA"
        assert github.passphrase.get_secret_value() == "open-sesame"

        artifactory = store.get_secret("prod", "credentials/artifactory")
        assert artifactory.private_key_or_password.get_secret_value() == "s3cr3t"

    def test_environment_scoping(self, secrets_dir):
        store = FileSecretStore(secrets_dir)
        with pytest.raises(CollaboratorError, match="environment 'dev'"):
            store.get_secret("dev", "automation_user")

    def test_missing_item(self, secrets_dir):
        with pytest.raises(CollaboratorError, match="'nope' not found"):
            FileSecretStore(secrets_dir).get_secret("prod", "credentials/nope")

    def test_item_not_mapping(self, secrets_dir):
        with pytest.raises(CollaboratorError, match="not a mapping"):
            FileSecretStore(secrets_dir).get_secret("prod", "credentials/broken")

    def test_no_secret_field(self, secrets_dir):
        with pytest.raises(CollaboratorError, match="no key or password"):
            FileSecretStore(secrets_dir).get_secret("prod", "credentials/empty")

    def test_invalid_reference(self, secrets_dir):
        with pytest.raises(CollaboratorError, match="Invalid secret reference"):
            FileSecretStore(secrets_dir).get_secret("prod", ".hidden")

    def test_unreadable_bag(self, secrets_dir):
        (secrets_dir / "prod" / "bad.json").write_text("{not json")
        with pytest.raises(CollaboratorError, match="Cannot read secret bag"):
            FileSecretStore(secrets_dir).get_secret("prod", "bad")

    def test_error_never_contains_value(self, secrets_dir):
        with pytest.raises(CollaboratorError) as excinfo:
            FileSecretStore(secrets_dir).get_secret("prod", "credentials/missing")
        assert "s3cr3t" not in str(excinfo.value)
        assert "KEYDATA" not in str(excinfo.value)
