"""
File-backed secret store — per-environment secret bags.

Layout::

    <secrets_dir>/<environment>/<bag>.json   (or .yml / .yaml)

A bag is either a single secret::

    {"username": "deploy", "private_key": "-----BEGIN ...", "passphrase": "..."}

or a mapping of named items, addressed as ``<bag>/<item>``::

    # credentials.yml
    github-deploy: {username: git, private_key: "...", passphrase: "..."}
    artifactory:   {username: ci, password: "..."}

The secret value may be given as ``private_key_or_password``,
``private_key``, ``cli_private_key`` or ``password``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from converge.adapters.base import SecretRecord, SecretStore
from converge.core.errors import CollaboratorError

logger = logging.getLogger(__name__)

_SECRET_FIELDS = ("private_key_or_password", "private_key", "cli_private_key", "password")
_EXTENSIONS = (".json", ".yml", ".yaml")


class FileSecretStore(SecretStore):
    """Reads secret bags from a directory tree."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def get_secret(self, environment: str, bag_id: str) -> SecretRecord:
        bag_name, _, item = bag_id.partition("/")
        data = self._load_bag(environment, bag_name)

        if item:
            if item not in data:
                raise CollaboratorError(f"Secret item '{item}' not found in bag '{bag_name}'")
            data = data[item]
            if not isinstance(data, dict):
                raise CollaboratorError(f"Secret item '{bag_id}' is not a mapping")

        value = next((data[f] for f in _SECRET_FIELDS if data.get(f)), None)
        if value is None:
            raise CollaboratorError(
                f"Secret '{bag_id}' has no key or password "
                f"(expected one of: {', '.join(_SECRET_FIELDS)})"
            )

        logger.debug("Resolved secret %s/%s", environment, bag_id)
        return SecretRecord(
            username=str(data.get("username", "")),
            private_key_or_password=str(value),
            passphrase=str(data["passphrase"]) if data.get("passphrase") else None,
        )

    def _load_bag(self, environment: str, bag_name: str) -> dict[str, Any]:
        if not bag_name or "/" in environment or bag_name.startswith("."):
            raise CollaboratorError(f"Invalid secret reference: {environment}/{bag_name}")

        for ext in _EXTENSIONS:
            path = self._root / environment / f"{bag_name}{ext}"
            if not path.is_file():
                continue
            try:
                raw = path.read_text(encoding="utf-8")
                data = json.loads(raw) if ext == ".json" else yaml.safe_load(raw)
            except (OSError, ValueError, yaml.YAMLError) as e:
                raise CollaboratorError(f"Cannot read secret bag {path}: {e}") from e
            if not isinstance(data, dict):
                raise CollaboratorError(f"Secret bag {path} is not a mapping")
            return data

        raise CollaboratorError(f"Secret bag '{bag_name}' not found for environment '{environment}'")
