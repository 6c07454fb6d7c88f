"""
Privy Server Wallet Signer
Custodial signing through Privy's REST API with an authorization key
https://docs.privy.io/

- Resolves a wallet address to its Privy wallet id (cached with a TTL)
- personal_sign over a user operation hash
- eth_sign7702Authorization for wallets that are still plain EOAs

Every request that acts on a wallet carries a privy-authorization-signature:
an ECDSA P-256 signature over the canonical JSON of the request, made with
the server's authorization key. All signing goes through one SignerGate so
the shared credential sees at most one request at a time.
"""

import base64
import json
import logging
from typing import Any, Dict, Optional

import httpx
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from account_abstraction.user_operation import Authorization
from infrastructure.errors import SigningError, ValidationError
from infrastructure.rate_limiter import SignerGate

logger = logging.getLogger("PrivySigner")

AUTH_KEY_PREFIX = "wallet-auth:"


def canonical_json(payload: Any) -> bytes:
    """RFC 8785 style: sorted keys, no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode()


def load_authorization_key(raw_key: str) -> ec.EllipticCurvePrivateKey:
    """Load a ``wallet-auth:<base64 PKCS8 DER>`` P-256 key."""
    if not raw_key:
        raise SigningError("Privy authorization key is not configured")
    body = raw_key[len(AUTH_KEY_PREFIX):] if raw_key.startswith(AUTH_KEY_PREFIX) else raw_key
    try:
        key = serialization.load_der_private_key(base64.b64decode(body), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Invalid Privy authorization key: {e}")
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise SigningError("Privy authorization key must be an EC P-256 key")
    return key


class PrivySigner:
    """Custodial signer backed by Privy server wallets."""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        authorization_key: str,
        store,
        gate: SignerGate,
        api_url: str = "https://api.privy.io",
        wallet_id_ttl: int = 3600,
        http: Optional[httpx.AsyncClient] = None,
    ):
        if not app_id or not app_secret:
            raise SigningError("Privy app id / secret are not configured")
        self.app_id = app_id
        self.api_url = api_url.rstrip("/")
        self.store = store
        self.gate = gate
        self.wallet_id_ttl = wallet_id_ttl
        self.http = http or httpx.AsyncClient(timeout=30.0)
        self._auth_key = load_authorization_key(authorization_key)
        basic = base64.b64encode(f"{app_id}:{app_secret}".encode()).decode()
        self._headers = {
            "Authorization": f"Basic {basic}",
            "privy-app-id": app_id,
            "Content-Type": "application/json",
        }

    # ── Request signing ──

    def authorization_signature(self, method: str, url: str, body: Dict) -> str:
        payload = {
            "version": 1,
            "method": method,
            "url": url,
            "body": body,
            "headers": {"privy-app-id": self.app_id},
        }
        signature = self._auth_key.sign(canonical_json(payload), ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode()

    async def _request(self, method: str, path: str, body: Optional[Dict] = None,
                       params: Optional[Dict] = None, authorize: bool = False) -> Dict:
        url = f"{self.api_url}{path}"
        headers = dict(self._headers)
        content = None
        if body is not None:
            content = canonical_json(body)
            if authorize:
                headers["privy-authorization-signature"] = self.authorization_signature(method, url, body)

        try:
            resp = await self.http.request(method, url, headers=headers, params=params, content=content)
        except httpx.HTTPError as e:
            logger.error(f"[PrivySigner] {method} {path} failed: {e}")
            raise SigningError(f"Privy request failed: {e}")

        if resp.status_code >= 400:
            logger.error(f"[PrivySigner] {method} {path}: {resp.status_code} {resp.text[:300]}")
            raise SigningError(
                f"Privy {method} {path} returned {resp.status_code}",
                {"status": resp.status_code, "body": resp.text[:300]},
            )
        return resp.json()

    # ── Wallet lookup ──

    async def get_wallet_id(self, address: str) -> str:
        """
        Two-step lookup, cached:
        1. POST /v1/users/wallet/address -> user id
        2. GET  /v1/wallets?user_id=...&chain_type=ethereum -> matching wallet
        """
        cache_key = f"privy_wallet:{address.lower()}"
        cached = await self.store.get(cache_key)
        if cached:
            return cached

        user = await self._request("POST", "/v1/users/wallet/address", body={"address": address})
        user_id = user.get("id")
        if not user_id:
            raise SigningError(f"No user ID found for address {address}")

        wallets = await self._request(
            "GET", "/v1/wallets", params={"user_id": user_id, "chain_type": "ethereum"}
        )
        match = next(
            (w for w in wallets.get("data", []) if w.get("address", "").lower() == address.lower()),
            None,
        )
        if match is None:
            raise SigningError(f"No Privy wallet found for address {address}")

        await self.store.set(cache_key, match["id"], ttl=self.wallet_id_ttl)
        return match["id"]

    # ── Signing ──

    async def _rpc(self, wallet_id: str, body: Dict) -> Dict:
        path = f"/v1/wallets/{wallet_id}/rpc"
        return await self.gate.run(lambda: self._request("POST", path, body=body, authorize=True))

    async def sign_user_op_hash(self, wallet_id: str, user_op_hash: str) -> str:
        """personal_sign over the 32-byte hash, as the Nexus validator expects."""
        result = await self._rpc(wallet_id, {
            "method": "personal_sign",
            "params": {"message": user_op_hash, "encoding": "hex"},
        })
        signature = (result.get("data") or {}).get("signature")
        if not signature:
            raise SigningError("Privy personal_sign returned no signature")
        logger.info(f"[PrivySigner] Signed userOp {user_op_hash[:10]}... with wallet {wallet_id}")
        return signature

    async def sign_7702_authorization(self, wallet_id: str, contract_address: str, chain_id: int) -> Authorization:
        result = await self._rpc(wallet_id, {
            "method": "eth_sign7702Authorization",
            "params": {"contract": contract_address, "chain_id": chain_id},
        })
        raw = (result.get("data") or {}).get("authorization")
        if not raw:
            raise SigningError("Privy eth_sign7702Authorization returned no authorization")
        try:
            authorization = Authorization.from_wire(raw)
        except ValidationError as e:
            raise SigningError(f"Malformed authorization from Privy: {e.message}")
        logger.info(f"[PrivySigner] Signed EIP-7702 authorization for wallet {wallet_id}")
        return authorization

    async def close(self):
        await self.http.aclose()
