from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from notion_relay.pools.base import Outcome, PoolEntry, PoolPolicy, PoolState, RotatingPool

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class Credential(PoolEntry):
    secret: str = ""

    @property
    def preview(self) -> str:
        if len(self.secret) <= 12:
            return "***"
        return f"{self.secret[:6]}...{self.secret[-4:]}"


CredentialVerifier = Callable[[Credential], Awaitable[Outcome]]


def build_credentials(secrets: Iterable[str]) -> list[Credential]:
    credentials: list[Credential] = []
    seen: set[str] = set()
    for raw in secrets:
        secret = raw.strip()
        if not secret or secret in seen:
            continue
        seen.add(secret)
        credentials.append(
            Credential(
                id=f"cookie-{len(credentials) + 1}",
                secret=secret,
                state=PoolState.UNVERIFIED,
            )
        )
    return credentials


class CredentialPool(RotatingPool[Credential]):
    kind = "credential"

    def __init__(
        self,
        credentials: Iterable[Credential],
        policy: PoolPolicy | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            credentials,
            policy or PoolPolicy(failure_threshold=3, cooldown_seconds=300.0),
            **kwargs,
        )

    @property
    def initialized(self) -> bool:
        return self.ever_valid

    async def init(self, verifier: CredentialVerifier | None = None) -> None:
        """Move every unverified credential to a usable or dead state."""
        for credential in list(self._entries):
            if credential.state != PoolState.UNVERIFIED:
                continue
            if verifier is None:
                self.mark(credential.id, PoolState.VALID, reason="configured")
                continue
            outcome = await verifier(credential)
            if outcome == Outcome.AUTH_FAILURE:
                self.mark(credential.id, PoolState.INVALID, reason="verify_rejected")
                continue
            self.mark(credential.id, PoolState.VALID, reason="verified")
            if outcome == Outcome.TRANSIENT_FAILURE:
                self.report_outcome(credential.id, Outcome.TRANSIENT_FAILURE)
        logger.info(
            "credential_pool_initialized total=%d valid=%d initialized=%s",
            len(self),
            self.valid_count(),
            self.initialized,
        )

    def shutdown(self) -> None:
        self.reset_cursor()

    def _describe(self, entry: Credential) -> dict[str, Any]:
        description = super()._describe(entry)
        description["preview"] = entry.preview
        return description
