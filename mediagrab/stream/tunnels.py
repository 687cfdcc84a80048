"""
Tunnel registry: executable plans parked under short-lived, encrypted tokens.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from mediagrab.processing.plan import TunnelPlan
from mediagrab.utils.crypto_utils import EncryptionHandler, TunnelTokenError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tunnel:
    tunnel_id: str
    plan: TunnelPlan
    expires_at: float


class TunnelRegistry:
    def __init__(self, secret: str, lifespan: int = 90):
        self.lifespan = lifespan
        self._encryption_handler = EncryptionHandler(secret)
        self._tunnels: Dict[str, Tunnel] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tunnels)

    def create(self, plan: TunnelPlan, base_url: str, client_ip: Optional[str] = None) -> str:
        """
        Register ``plan`` and return the URL that executes it.

        Args:
            plan (TunnelPlan): The plan to run when the URL is fetched.
            base_url (str): Public base URL of the service.
            client_ip (str, optional): Bind the token to this address.

        Returns:
            str: ``{base_url}/tunnel?token=...``
        """
        self.prune()
        tunnel_id = secrets.token_urlsafe(16)
        tunnel = Tunnel(tunnel_id=tunnel_id, plan=plan, expires_at=time.time() + self.lifespan)
        with self._lock:
            self._tunnels[tunnel_id] = tunnel
        token = self._encryption_handler.encrypt_data({"id": tunnel_id}, self.lifespan, client_ip)
        logger.debug(f"Tunnel {tunnel_id} created for {plan.kind.value} ({plan.filename})")
        return f"{base_url.rstrip('/')}/tunnel?token={token}"

    def resolve(self, token: str, client_ip: Optional[str] = None) -> TunnelPlan:
        """
        Return the plan behind ``token``.

        Raises:
            TunnelTokenError: If the token is malformed, expired, bound to another address or unknown.
        """
        data = self._encryption_handler.decrypt_data(token, client_ip)
        tunnel_id = data.get("id")
        with self._lock:
            tunnel = self._tunnels.get(tunnel_id)
            if tunnel is not None and tunnel.expires_at < time.time():
                del self._tunnels[tunnel_id]
                tunnel = None
        if tunnel is None:
            raise TunnelTokenError(404, "Tunnel not found")
        return tunnel.plan

    def prune(self, now: Optional[float] = None) -> int:
        """Forget expired tunnels. Returns how many were dropped."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [tunnel_id for tunnel_id, tunnel in self._tunnels.items() if tunnel.expires_at < now]
            for tunnel_id in expired:
                del self._tunnels[tunnel_id]
        return len(expired)
