"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from converge.adapters.base import Collaborators
from converge.adapters.mock import MockInstaller, MockScriptRunner, MockSecretStore
from converge.adapters.templates import JinjaRenderer
from converge.core.persistence.state_store import MemoryStateStore


@pytest.fixture(scope="session")
def rsa_pem() -> str:
    """An unencrypted RSA private key in traditional PEM form."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def other_rsa_pem() -> str:
    """A second, different RSA private key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def collaborators(rsa_pem: str) -> Collaborators:
    """Mock installer/runner, real renderer, secrets for the default desired state."""
    secrets = MockSecretStore()
    secrets.add("automation_user", rsa_pem)
    secrets.add("github", rsa_pem, username="git")
    secrets.add("artifactory", "s3cr3t-pw", username="ci")
    return Collaborators(
        installer=MockInstaller(),
        runner=MockScriptRunner(),
        renderer=JinjaRenderer(),
        secrets=secrets,
    )


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir
