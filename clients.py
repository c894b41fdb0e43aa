import hmac
import logging
from typing import Dict, Iterable, Optional

from config import Config
from models import Client

logger = logging.getLogger(__name__)


class ClientRegistry:
    """Static lookup of the OAuth clients this server knows about"""

    def __init__(self, clients: Iterable[Client]):
        self._clients: Dict[str, Client] = {}
        for client in clients:
            if client.id in self._clients:
                raise ValueError(f"Duplicate client id: {client.id}")
            self._clients[client.id] = client

    @classmethod
    def from_config(cls, config: Config) -> "ClientRegistry":
        """Build the single configured client from environment settings"""
        client = Client(
            id=config.client_id,
            secret=config.client_secret,
            grants=frozenset(config.grants),
            redirect_uris=tuple(config.redirect_uris),
            access_token_lifetime=config.access_token_lifetime,
            refresh_token_lifetime=config.refresh_token_lifetime,
        )
        logger.info(f"Registered client {client.id} with grants {sorted(client.grants)}")
        return cls([client])

    def lookup(self, client_id: Optional[str], secret: Optional[str] = None) -> Optional[Client]:
        """Find a client by id; the secret is only checked when one is supplied"""
        if not client_id:
            return None

        client = self._clients.get(client_id)
        if client is None:
            logger.warning(f"Unknown client: {client_id}")
            return None

        if secret is not None:
            if client.secret is None or not hmac.compare_digest(client.secret.encode(), secret.encode()):
                logger.warning(f"Client secret mismatch for {client_id}")
                return None

        return client

    def is_redirect_uri_allowed(self, client: Client, redirect_uri: str) -> bool:
        return redirect_uri in client.redirect_uris
