"""Registry credentials.

This module handles:
- The credential provider abstraction, keyed by registry host
- Reading Docker's config.json (inline auths, credHelpers, credsStore)
- Querying docker-credential-* helpers

Any failure to find or read credentials means anonymous access.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from steiger.exec import CommandError, run_checked

logger = logging.getLogger(__name__)

# Key Docker uses for Docker Hub in config.json
DOCKER_HUB_KEY = "https://index.docker.io/v1/"

# Hosts that are all Docker Hub
DOCKER_HUB_HOSTS = ("docker.io", "index.docker.io", "registry-1.docker.io")


@dataclass(frozen=True)
class Credentials:
    """Username/password pair (an identity token uses the '<token>' username)."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


class CredentialProvider(Protocol):
    """Source of credentials for a registry host."""

    def get(self, host: str) -> Credentials | None: ...


class AnonymousCredentials:
    """Provider that never returns credentials."""

    def get(self, host: str) -> Credentials | None:
        return None


class StaticCredentials:
    """Fixed credentials per host."""

    def __init__(self, credentials: dict[str, Credentials]) -> None:
        self.credentials = credentials

    def get(self, host: str) -> Credentials | None:
        return self.credentials.get(host)


def config_keys(host: str) -> list[str]:
    """Return the config.json keys that may hold entries for a host."""
    if host in DOCKER_HUB_HOSTS:
        return [DOCKER_HUB_KEY, "docker.io", "index.docker.io"]
    return [host, f"https://{host}", f"http://{host}"]


def decode_auth(value: str) -> Credentials | None:
    """Decode a base64 'user:password' auth entry."""
    try:
        decoded = base64.b64decode(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("Ignoring malformed auth entry in docker config")
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return Credentials(username=username, password=password)


class DockerConfigCredentials:
    """Credentials from the Docker CLI configuration.

    Lookup order per host: credHelpers entry, inline auths entry, then
    the global credsStore.
    """

    def __init__(
        self,
        config_path: Path | None = None,
        command_timeout: float = 60,
    ) -> None:
        if config_path is None:
            config_dir = os.environ.get("DOCKER_CONFIG")
            if config_dir:
                config_path = Path(config_dir) / "config.json"
            else:
                config_path = Path.home() / ".docker" / "config.json"
        self.config_path = config_path
        self.command_timeout = command_timeout
        self._config: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._config is None:
            try:
                self._config = json.loads(self.config_path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                logger.debug("No docker config at %s", self.config_path)
                self._config = {}
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable docker config %s: %s", self.config_path, e)
                self._config = {}
            if not isinstance(self._config, dict):
                self._config = {}
        return self._config

    def from_helper(self, helper: str, server: str) -> Credentials | None:
        """Ask a docker-credential helper for a server's credentials."""
        try:
            result = run_checked(
                [f"docker-credential-{helper}", "get"],
                stdin_data=server,
                timeout=self.command_timeout,
            )
            data = json.loads(result.stdout)
        except CommandError as e:
            logger.info("Credential helper %s has nothing for %s: %s", helper, server, e)
            return None
        except json.JSONDecodeError as e:
            logger.warning("Credential helper %s returned invalid JSON: %s", helper, e)
            return None

        username = data.get("Username", "")
        secret = data.get("Secret", "")
        if not secret:
            return None
        return Credentials(username=username, password=secret)

    def get(self, host: str) -> Credentials | None:
        config = self._load()
        keys = config_keys(host)

        helpers = config.get("credHelpers") or {}
        for key in keys:
            if key in helpers:
                return self.from_helper(helpers[key], key)

        auths = config.get("auths") or {}
        for key in keys:
            entry = auths.get(key)
            if isinstance(entry, dict) and entry.get("auth"):
                return decode_auth(entry["auth"])

        store = config.get("credsStore")
        if store:
            return self.from_helper(store, keys[0])

        return None


__all__ = [
    "AnonymousCredentials",
    "CredentialProvider",
    "Credentials",
    "DockerConfigCredentials",
    "StaticCredentials",
    "config_keys",
    "decode_auth",
]
