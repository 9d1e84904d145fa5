import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from playsync.config import settings
from playsync.models.play import BoardGamePlay
from playsync.schemas.plays import BGGCredential
from playsync.services.bgg.errors import MissingCredentials

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedCredential:
    username: str
    password: str
    source: str  # explicit | play | user | generic

    def __repr__(self) -> str:
        return f"ResolvedCredential(username={self.username!r}, source={self.source!r})"


class CredentialCipher:
    """Symmetric encryption for stored BGG passwords (Fernet tokens)."""

    def __init__(self, key: str) -> None:
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    @classmethod
    def from_settings(cls) -> Optional["CredentialCipher"]:
        if not settings.CREDENTIALS_ENCRYPTION_KEY:
            return None
        return cls(settings.CREDENTIALS_ENCRYPTION_KEY)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise MissingCredentials("stored BGG password cannot be decrypted with the configured key") from e


def _play_credential(play: BoardGamePlay, cipher: Optional[CredentialCipher]) -> Optional[ResolvedCredential]:
    if not (play.outbound_bgg_username and play.outbound_bgg_password_encrypted):
        return None
    if cipher is None:
        logger.warning("Play %s has a stored BGG credential but no encryption key is configured", play.id)
        return None
    return ResolvedCredential(play.outbound_bgg_username, cipher.decrypt(play.outbound_bgg_password_encrypted), "play")


def _user_credential(play: BoardGamePlay, cipher: Optional[CredentialCipher]) -> Optional[ResolvedCredential]:
    user = play.creator
    if user is None or not user.sync_plays_to_bgg:
        return None
    if not (user.bgg_username and user.bgg_password_encrypted):
        return None
    if cipher is None:
        logger.warning("User %s has a stored BGG credential but no encryption key is configured", user.id)
        return None
    return ResolvedCredential(user.bgg_username, cipher.decrypt(user.bgg_password_encrypted), "user")


def resolve_credentials(
    play: BoardGamePlay,
    explicit: Optional[BGGCredential] = None,
    cipher: Optional[CredentialCipher] = None,
    precedence: Optional[str] = None,
) -> ResolvedCredential:
    """
    First available wins:
    1. one-time credential passed with the request
    2./3. play-scoped and user-scoped stored credentials, ordered by BGG_CREDENTIAL_PRECEDENCE
    4. generic service account from configuration
    """
    if explicit is not None:
        return ResolvedCredential(explicit.username, explicit.password, "explicit")

    precedence = precedence or settings.BGG_CREDENTIAL_PRECEDENCE
    stored = (_play_credential, _user_credential) if precedence == "play" else (_user_credential, _play_credential)
    for lookup in stored:
        credential = lookup(play, cipher)
        if credential is not None:
            return credential

    if settings.BGG_GENERIC_USERNAME and settings.BGG_GENERIC_PASSWORD:
        return ResolvedCredential(settings.BGG_GENERIC_USERNAME, settings.BGG_GENERIC_PASSWORD, "generic")

    raise MissingCredentials(f"no BGG credentials available for play {play.id}")
