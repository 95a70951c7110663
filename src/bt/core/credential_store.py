"""
Credential persistence for bt.

A credential store holds exactly one credential record, the active session.
Two backends are available:

- :class:`FileCredentialStore` keeps the record Fernet-encrypted in
  ``credentials.enc`` under the config directory, with the key in a sibling
  ``.key`` file. Both files are owner-only and written atomically.
- :class:`KeyringCredentialStore` keeps the record in the system keyring.

A missing or unreadable record is reported as
:class:`~bt.core.exceptions.CredentialNotFoundError`, never as a crash.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import keyring
import keyring.errors
from cryptography.fernet import Fernet, InvalidToken

from bt.core.credentials import Credential, credential_from_dict
from bt.core.exceptions import ConfigurationError, CredentialNotFoundError

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Single-record storage for the active credential."""

    @abstractmethod
    def save(self, credential: Credential) -> None:
        """Persist ``credential``, replacing any previous record."""

    @abstractmethod
    def load(self) -> Credential:
        """
        Load the stored credential.

        Raises:
            CredentialNotFoundError: If nothing usable is stored
        """

    @abstractmethod
    def delete(self) -> None:
        """Remove the stored record. Deleting an absent record is not an error."""

    def exists(self) -> bool:
        try:
            self.load()
        except CredentialNotFoundError:
            return False
        return True

    @property
    def description(self) -> str:
        return type(self).__name__


def _atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via a same-directory temp file and rename, mode 0600."""
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        os.chmod(tmp_path, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


class FileCredentialStore(CredentialStore):
    """Encrypted single-file credential store."""

    def __init__(self, config_dir: Path, filename: str = "credentials.enc") -> None:
        self.config_dir = Path(config_dir)
        self.credentials_file = self.config_dir / filename
        self.key_file = self.config_dir / ".key"

    @property
    def description(self) -> str:
        return f"Encrypted local file ({self.credentials_file})"

    def _get_key(self, create: bool) -> bytes | None:
        """Return the encryption key, generating it on first write."""
        if self.key_file.exists():
            return self.key_file.read_bytes().strip()
        if not create:
            return None
        key = Fernet.generate_key()
        _atomic_write(self.key_file, key)
        return key

    def save(self, credential: Credential) -> None:
        key = self._get_key(create=True)
        payload = json.dumps(credential.to_dict()).encode("utf-8")
        try:
            _atomic_write(self.credentials_file, Fernet(key).encrypt(payload))
        except OSError as e:
            raise ConfigurationError(
                f"Failed to store credentials: {e}",
                suggestion=f"Check that {self.config_dir} is writable",
            ) from e

    def load(self) -> Credential:
        if not self.credentials_file.exists():
            raise CredentialNotFoundError("No stored credentials found")

        try:
            key = self._get_key(create=False)
            if key is None:
                raise InvalidToken
            decrypted = Fernet(key).decrypt(self.credentials_file.read_bytes())
            return credential_from_dict(json.loads(decrypted.decode("utf-8")))
        except (InvalidToken, ValueError, OSError) as e:
            # A corrupt record is the same as no record: the user logs in again
            logger.debug("Ignoring unreadable credential file %s: %s", self.credentials_file, e)
            raise CredentialNotFoundError("Stored credentials are unreadable") from e

    def delete(self) -> None:
        self.credentials_file.unlink(missing_ok=True)


class KeyringCredentialStore(CredentialStore):
    """Credential store backed by the system keyring."""

    SERVICE_NAME = "bt"
    ACCOUNT = "default"

    def __init__(self, service_name: str = SERVICE_NAME, account: str = ACCOUNT) -> None:
        self.service_name = service_name
        self.account = account

    @property
    def description(self) -> str:
        return "System keyring"

    def save(self, credential: Credential) -> None:
        try:
            keyring.set_password(self.service_name, self.account, json.dumps(credential.to_dict()))
        except keyring.errors.KeyringError as e:
            raise ConfigurationError(
                f"Failed to store credentials in system keyring: {e}",
                suggestion="Set 'credentials.backend' to 'file' to use encrypted local storage",
            ) from e

    def load(self) -> Credential:
        try:
            record = keyring.get_password(self.service_name, self.account)
        except keyring.errors.KeyringError as e:
            logger.debug("Keyring lookup failed: %s", e)
            raise CredentialNotFoundError("System keyring is unavailable") from e

        if not record:
            raise CredentialNotFoundError("No stored credentials found")
        try:
            return credential_from_dict(json.loads(record))
        except ValueError as e:
            logger.debug("Ignoring unreadable keyring record: %s", e)
            raise CredentialNotFoundError("Stored credentials are unreadable") from e

    def delete(self) -> None:
        try:
            keyring.delete_password(self.service_name, self.account)
        except keyring.errors.PasswordDeleteError:
            pass


def create_credential_store(backend: str, config_dir: Path) -> CredentialStore:
    """
    Create the credential store selected by configuration.

    Args:
        backend: 'file' or 'keyring'
        config_dir: Directory used by the file backend

    Raises:
        ConfigurationError: If the backend is unknown
    """
    if backend == "file":
        return FileCredentialStore(config_dir)
    if backend == "keyring":
        return KeyringCredentialStore()
    raise ConfigurationError(
        f"Unknown credential backend: {backend!r}",
        suggestion="Set 'credentials.backend' to 'file' or 'keyring'",
    )
