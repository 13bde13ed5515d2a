"""
Allow-list (DMZ) Sink

Keeps the external access allow-list in step with registered users and
rostered players. Every operation is an idempotent upsert/remove: reaching
the desired end state counts as success even when the server reports the
record was already there (or already gone).

Calls never raise for remote failures; they return an AllowListResult.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import logging

import httpx


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllowListIdentity:
    """A person the allow-list should admit."""
    email: str
    name: str
    university: str
    phone: str

    def to_payload(self) -> Dict[str, str]:
        return {
            "email": self.email,
            "name": self.name,
            "university": self.university,
            "phone": self.phone,
        }


@dataclass(frozen=True)
class AllowListResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PlayerSyncReport:
    """Outcome of syncing one roster's players; never raised, only returned."""
    total: int = 0
    synced: int = 0
    skipped: int = 0
    failures: Optional[List[str]] = None

    @property
    def failed(self) -> int:
        return len(self.failures or [])


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}"


class DmzClient:
    """
    HTTP client for the DMZ user registry.

    POST   {url}  {email, name, university, phone}   add
    DELETE {url}  {email}                            remove
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def upsert(self, identity: AllowListIdentity) -> AllowListResult:
        """Add a user. 409 (already present) is reported as success."""
        if not self.api_key:
            logger.error("[DMZ] API key not configured")
            return AllowListResult(success=False, error="DMZ API key not configured")

        async with self._client() as client:
            try:
                response = await client.post(
                    self.api_url,
                    headers=self._headers(),
                    json=identity.to_payload(),
                )
            except httpx.HTTPError as e:
                logger.error(f"[DMZ] Error adding user {identity.email}: {e}")
                return AllowListResult(success=False, error=str(e) or type(e).__name__)

        if response.status_code == 409:
            logger.info(f"[DMZ] User already exists (409): {identity.email}")
            return AllowListResult(success=True, message="User already exists in DMZ")

        if response.is_error:
            error = _error_message(response)
            logger.error(f"[DMZ] Failed to add user {identity.email}: {error}")
            return AllowListResult(success=False, error=error)

        logger.info(f"[DMZ] User added successfully: {identity.email}")
        return AllowListResult(success=True, message="User added successfully")

    async def remove(self, email: str) -> AllowListResult:
        """Remove a user. 404 (not present) is reported as success."""
        if not self.api_key:
            logger.error("[DMZ] API key not configured")
            return AllowListResult(success=False, error="DMZ API key not configured")

        async with self._client() as client:
            try:
                response = await client.request(
                    "DELETE",
                    self.api_url,
                    headers=self._headers(),
                    json={"email": email},
                )
            except httpx.HTTPError as e:
                logger.error(f"[DMZ] Error removing user {email}: {e}")
                return AllowListResult(success=False, error=str(e) or type(e).__name__)

        if response.status_code == 404:
            logger.info(f"[DMZ] User not present, nothing to remove: {email}")
            return AllowListResult(success=True, message="User not present in DMZ")

        if response.is_error:
            error = _error_message(response)
            logger.error(f"[DMZ] Failed to remove user {email}: {error}")
            return AllowListResult(success=False, error=error)

        logger.info(f"[DMZ] User removed successfully: {email}")
        return AllowListResult(success=True, message="User removed successfully")

    async def swap(self, old_email: str, identity: AllowListIdentity) -> AllowListResult:
        """Replace an entry after an email/university change. The add always runs."""
        removed = await self.remove(old_email)
        if not removed.success:
            logger.info(f"[DMZ] Could not remove old user {old_email}, proceeding to add new user")
        return await self.upsert(identity)

    async def sync_players(
        self,
        players: Iterable[Dict[str, Any]],
        university: str,
    ) -> PlayerSyncReport:
        """
        Add every player of a roster, in parallel.

        Players missing email, name or phone are skipped. One player's
        failure never stops the others and never raises.
        """
        players = list(players or [])
        report = PlayerSyncReport(total=len(players), failures=[])
        if not players:
            logger.info("[DMZ] No players to sync")
            return report

        logger.info(f"[DMZ] Syncing {len(players)} players to DMZ")

        identities: List[AllowListIdentity] = []
        for index, player in enumerate(players):
            if not isinstance(player, dict) or not all(player.get(k) for k in ("email", "name", "phone")):
                logger.warning(f"[DMZ] Skipping player {index + 1} - missing required fields")
                report.skipped += 1
                continue
            identities.append(AllowListIdentity(
                email=str(player["email"]),
                name=str(player["name"]),
                university=university,
                phone=str(player["phone"]),
            ))

        results = await asyncio.gather(
            *(self.upsert(identity) for identity in identities),
            return_exceptions=True,
        )

        for identity, result in zip(identities, results):
            if isinstance(result, BaseException):
                logger.error(f"[DMZ] Failed to sync player {identity.email}: {result}")
                report.failures.append(identity.email)
            elif not result.success:
                report.failures.append(identity.email)
            else:
                report.synced += 1

        logger.info(
            f"[DMZ] Finished syncing {len(players)} players "
            f"(synced={report.synced}, skipped={report.skipped}, failed={report.failed})"
        )
        return report
