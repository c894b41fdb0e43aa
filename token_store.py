import json
import logging
import os
import secrets
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from errors import ServerError, TokenIntegrityError
from models import Client, Token, User, utcnow

logger = logging.getLogger(__name__)


def serialize_tokens(tokens: List[Token]) -> List[Dict[str, Any]]:
    """Convert tokens to JSON-ready records with ISO-8601 timestamps"""
    return [token.to_record() for token in tokens]


def deserialize_tokens(records: List[Dict[str, Any]]) -> List[Token]:
    """Rebuild tokens from stored records, skipping records that cannot be parsed"""
    tokens = []
    for index, record in enumerate(records):
        try:
            tokens.append(Token.model_validate(record))
        except ValidationError as e:
            logger.error(f"Discarding unreadable token record #{index}: {e.error_count()} validation error(s)")
    return tokens


def _mask(value: Optional[str]) -> str:
    return f"{value[:8]}..." if value else "<none>"


class TokenStore:
    """
    Durable table of issued tokens.

    Every mutation rewrites the whole token file. All reads and writes of the
    token list happen under a single lock so the evict-then-insert sequence of
    issuance cannot interleave with another request.
    """

    def __init__(self, path: str, clock: Callable[[], datetime] = utcnow):
        self.path = Path(path)
        self.clock = clock
        self._lock = threading.RLock()
        self._tokens: List[Token] = []
        self.load()

    def load(self):
        """Load the token set from disk, starting empty if the file is absent"""
        with self._lock:
            if not self.path.exists():
                self._tokens = []
                return

            try:
                records = json.loads(self.path.read_text(encoding="utf-8"))
                if not isinstance(records, list):
                    raise ValueError("token file must contain a JSON array")
            except (OSError, ValueError) as e:
                corrupt_path = self.path.with_name(self.path.name + ".corrupt")
                logger.error(f"Error loading tokens from {self.path}: {e}; moving it to {corrupt_path}")
                os.replace(self.path, corrupt_path)
                self._tokens = []
                return

            self._tokens = deserialize_tokens(records)
            logger.info(f"Loaded {len(self._tokens)} tokens from {self.path}")

    def _save(self, tokens: List[Token]):
        """Atomically replace the token file with the given set"""
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(serialize_tokens(tokens), f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Error saving tokens to {self.path}: {e}")
            raise ServerError("Unable to persist token state") from e

    def _commit(self, tokens: List[Token]):
        self._save(tokens)
        self._tokens = tokens

    @staticmethod
    def _check_integrity(token: Token):
        if token.access_token_expires_at is None:
            logger.error(f"Stored token {_mask(token.access_token)} has no access token expiry")
            raise TokenIntegrityError("Token must have an expiration date")

    def issue_token(
        self,
        client: Client,
        user: User,
        scope: Optional[str],
        access_token_lifetime: int,
        refresh_token_lifetime: Optional[int] = None,
    ) -> Token:
        """Mint a token pair for (client, user), replacing any token that pair already holds.

        A refresh token is only generated when ``refresh_token_lifetime`` is given.
        """
        now = self.clock()
        token = Token(
            access_token=secrets.token_urlsafe(32),
            access_token_expires_at=now + timedelta(seconds=access_token_lifetime),
            refresh_token=secrets.token_urlsafe(32) if refresh_token_lifetime else None,
            refresh_token_expires_at=(
                now + timedelta(seconds=refresh_token_lifetime) if refresh_token_lifetime else None
            ),
            client_id=client.id,
            user_id=str(user.id),
            scope=scope,
            created_at=now,
        )

        with self._lock:
            remaining = [
                t for t in self._tokens
                if not (t.client_id == client.id and t.user_id == str(user.id))
            ]
            evicted = len(self._tokens) - len(remaining)
            remaining.append(token)
            self._commit(remaining)

        if evicted:
            logger.info(f"Evicted {evicted} existing token(s) for client {client.id} / user {user.id}")
        logger.info(f"Issued token {_mask(token.access_token)} for client {client.id} / user {user.id}")
        return token

    def lookup_access_token(self, access_token: str) -> Optional[Token]:
        """Return the live token for an access token value, or None when unknown or expired"""
        if not access_token:
            return None

        with self._lock:
            token = next((t for t in self._tokens if t.access_token == access_token), None)

        if token is None:
            return None

        self._check_integrity(token)
        if token.is_access_token_expired(self.clock()):
            logger.info(f"Access token {_mask(access_token)} expired at {token.access_token_expires_at.isoformat()}")
            return None
        return token

    def lookup_refresh_token(self, refresh_token: str) -> Optional[Token]:
        """Return the token owning a refresh token; an expired one is evicted and persisted"""
        if not refresh_token:
            return None

        with self._lock:
            token = next((t for t in self._tokens if t.refresh_token == refresh_token), None)
            if token is None:
                return None

            self._check_integrity(token)
            if token.is_refresh_token_expired(self.clock()):
                logger.info(f"Refresh token {_mask(refresh_token)} expired; evicting")
                self._commit([t for t in self._tokens if t.refresh_token != refresh_token])
                return None
            return token

    def revoke(self, refresh_token: str) -> bool:
        """Remove the token owning a refresh token. Revoking an unknown token is not an error."""
        if not refresh_token:
            return False

        with self._lock:
            remaining = [t for t in self._tokens if t.refresh_token != refresh_token]
            if len(remaining) == len(self._tokens):
                return False
            self._commit(remaining)

        logger.info(f"Refresh token revoked: {_mask(refresh_token)}")
        return True

    def revoke_access_token(self, access_token: str) -> bool:
        """Remove the token owning an access token"""
        if not access_token:
            return False

        with self._lock:
            remaining = [t for t in self._tokens if t.access_token != access_token]
            if len(remaining) == len(self._tokens):
                return False
            self._commit(remaining)

        logger.info(f"Access token revoked: {_mask(access_token)}")
        return True

    def purge_expired(self) -> int:
        """Drop tokens whose access token and refresh token are both expired"""
        now = self.clock()
        with self._lock:
            remaining = [
                t for t in self._tokens
                if t.access_token_expires_at is None
                or not t.is_access_token_expired(now)
                or (t.refresh_token is not None and not t.is_refresh_token_expired(now))
            ]
            removed = len(self._tokens) - len(remaining)
            if removed:
                self._commit(remaining)
        return removed

    @staticmethod
    def verify_scope(token: Token, required_scope: Optional[str]) -> bool:
        """A token without scope grants everything; otherwise every required scope must be present"""
        if not token.scope:
            return True
        if not required_scope:
            return True
        token_scopes = set(token.scope.split())
        return all(scope in token_scopes for scope in required_scope.split())

    @property
    def tokens(self) -> List[Token]:
        with self._lock:
            return list(self._tokens)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
